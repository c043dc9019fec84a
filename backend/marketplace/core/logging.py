"""
Structlog setup for the settlement service.

Every event carries the request id of the HTTP call (or relay pass) that
produced it, and the authenticated principal once one is known, so a single
order can be followed from checkout through its background side effects.
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional
from uuid import uuid4

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from marketplace.core.config import get_settings

_request_id: ContextVar[str] = ContextVar("request_id", default="")
_principal_id: ContextVar[Optional[str]] = ContextVar("principal_id", default=None)

# Blocks slower than this are logged as warnings by log_performance.
SLOW_OPERATION_MS = 500

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "botocore", "httpx", "celery")


def _inject_correlation(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    if request_id := _request_id.get():
        event_dict["request_id"] = request_id
    if principal_id := _principal_id.get():
        event_dict.setdefault("principal_id", principal_id)
    return event_dict


def _renderer(development: bool) -> Processor:
    if development:
        return structlog.dev.ConsoleRenderer(
            colors=True, exception_formatter=structlog.dev.plain_traceback
        )
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """Route structlog through the stdlib root logger at the configured level."""
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _inject_correlation,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings.is_development),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind the caller's request id, or a fresh UUID, and return it."""
    request_id = request_id or str(uuid4())
    _request_id.set(request_id)
    return request_id


def get_request_id() -> str:
    return _request_id.get()


def set_principal_id(principal_id: Optional[str]) -> None:
    _principal_id.set(principal_id)


def clear_context() -> None:
    _request_id.set("")
    _principal_id.set(None)


@contextmanager
def log_performance(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    **context: Any,
) -> Iterator[None]:
    """
    Time a block and log its duration.

    Failures are logged with the exception type and re-raised. Successful
    blocks slower than ``SLOW_OPERATION_MS`` are logged as warnings.

    Example:
        >>> with log_performance(logger, "order_persist", order_id=str(order.id)):
        ...     await session.commit()
    """
    started = time.perf_counter()
    try:
        yield
    except Exception as e:
        logger.error(
            "Operation failed",
            operation=operation,
            duration_ms=_elapsed_ms(started),
            error_type=type(e).__name__,
            **context,
        )
        raise

    duration_ms = _elapsed_ms(started)
    log = logger.warning if duration_ms > SLOW_OPERATION_MS else logger.debug
    log("Operation completed", operation=operation, duration_ms=duration_ms, **context)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
