"""
FastAPI application for the settlement API.

Wires the v1 routers behind CORS, the slowapi limiter and request id
correlation. Also runs the in-process outbox relay, which retries side
effects that failed or were interrupted after an earlier request.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from marketplace.api.limiter import limiter
from marketplace.api.v1 import api_router
from marketplace.cache.redis_client import close_redis_client, get_redis_client
from marketplace.core.config import get_settings
from marketplace.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from marketplace.database.connection import (
    check_database_health,
    close_database_connections,
    get_session_factory,
)
from marketplace.services.side_effects.runner import create_side_effect_runner

configure_logging()
logger = get_logger(__name__)
settings = get_settings()


async def relay_outbox() -> None:
    """Run a relay pass every ``outbox_poll_interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(settings.outbox_poll_interval_seconds)
        try:
            try:
                redis_client = await get_redis_client()
            except RedisConnectionError:
                redis_client = None
            runner = await create_side_effect_runner(get_session_factory(), redis_client)
            await runner.process_due()
        except Exception as e:
            logger.error(
                "Outbox relay pass failed",
                error=str(e),
                error_type=type(e).__name__,
            )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "Application starting",
        environment=settings.environment,
        version=settings.app_version,
        outbox_relay=settings.outbox_relay_enabled,
    )
    relay = asyncio.create_task(relay_outbox()) if settings.outbox_relay_enabled else None

    yield

    with log_performance(logger, "application_shutdown"):
        if relay is not None:
            relay.cancel()
            with suppress(asyncio.CancelledError):
                await relay
        await close_redis_client()
        await close_database_connections()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Multi-vendor order and payment settlement API",
    lifespan=lifespan,
    debug=settings.debug,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def correlate_requests(request: Request, call_next):
    """Bind a request id for the duration of the call and echo it back."""
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    try:
        with log_performance(
            logger, "request", method=request.method, path=request.url.path
        ):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response
    finally:
        clear_context()


def _error_body(error: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"error": error, "message": message, **extra, "request_id": get_request_id()}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning("Request validation failed", path=request.url.path, errors=exc.errors())
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(
            "Validation Error", "Request validation failed", details=exc.errors()
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the failure and return a generic 500 without internal details."""
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("Internal Server Error", "An unexpected error occurred"),
    )


def _service_info() -> dict[str, str]:
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/health", tags=["Health"], summary="Process health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", **_service_info()}


@app.get("/live", tags=["Health"], summary="Liveness probe")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive", **_service_info()}


@app.get("/ready", tags=["Health"], summary="Readiness probe")
async def readiness_check():
    """
    Ready when the order store answers.

    Redis is reported but not required: checkout and status updates work
    without the cache, and pending side effects wait for the relay.
    """
    database_ok = await check_database_health(max_retries=1)

    try:
        redis_client = await get_redis_client()
        cache = "healthy" if await redis_client.health_check() else "unhealthy"
    except RedisConnectionError:
        cache = "unavailable"

    body = {
        "status": "ready" if database_ok else "not_ready",
        "dependencies_ready": database_ok,
        "database": "healthy" if database_ok else "unhealthy",
        "cache": cache,
        **_service_info(),
    }
    if not database_ok:
        logger.warning("Readiness check failed", database="unhealthy", cache=cache)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


app.include_router(api_router, prefix=settings.api_v1_prefix)
