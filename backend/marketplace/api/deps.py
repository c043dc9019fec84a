"""
FastAPI dependencies for authentication, authorization and collaborators.

Principals are resolved from bearer tokens issued by the identity service.
Cache, gateway and side-effect collaborators are exposed as dependencies so
tests can override them on the application.
"""

from typing import Annotated, AsyncGenerator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.cache.redis_client import CacheBackend, get_redis_client
from marketplace.core.logging import get_logger, set_principal_id
from marketplace.core.security import Principal, Role, TokenError, decode_token
from marketplace.database.connection import get_db, get_session_factory
from marketplace.services.cache.invalidator import CacheInvalidator
from marketplace.services.payments.gateway_client import RazorpayClient
from marketplace.services.side_effects.runner import (
    SideEffectRunner,
    create_side_effect_runner,
)

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Principal:
    """
    Resolve the authenticated caller from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, expired or malformed
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        principal = Principal.from_claims(decode_token(credentials.credentials))
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code, error=str(e))
        raise credentials_exception from e

    set_principal_id(principal.id)
    return principal


def require_role(*allowed_roles: Role):
    """
    Create a dependency that requires one of the given roles.

    Example:
        @router.post("/{order_id}/refund")
        async def refund(admin: Annotated[Principal, Depends(require_role(Role.ADMIN))]):
            ...
    """

    async def role_checker(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if principal.role not in allowed_roles:
            logger.warning(
                "Access denied: Insufficient permissions",
                principal_id=principal.id,
                role=principal.role.value,
                required_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return role_checker


async def get_cache_backend() -> Optional[CacheBackend]:
    """
    Shared Redis client, or None while Redis is unreachable.

    Order writes never fail because the cache is down; reads fall through to
    the database.
    """
    try:
        return await get_redis_client()
    except RedisConnectionError as e:
        logger.warning("Cache unavailable, continuing without it", error=str(e))
        return None


async def get_invalidator(
    backend: Annotated[Optional[CacheBackend], Depends(get_cache_backend)],
) -> Optional[CacheInvalidator]:
    if backend is None:
        return None
    return CacheInvalidator(backend)


async def get_side_effect_runner() -> SideEffectRunner:
    try:
        redis_client = await get_redis_client()
    except RedisConnectionError as e:
        logger.warning("Side effects will run without Redis", error=str(e))
        redis_client = None
    return await create_side_effect_runner(get_session_factory(), redis_client)


async def get_gateway_client() -> AsyncGenerator[RazorpayClient, None]:
    client = RazorpayClient()
    try:
        yield client
    finally:
        await client.close()


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
CurrentSeller = Annotated[Principal, Depends(require_role(Role.SELLER))]
CurrentAdmin = Annotated[Principal, Depends(require_role(Role.ADMIN))]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Invalidator = Annotated[Optional[CacheInvalidator], Depends(get_invalidator)]
Runner = Annotated[SideEffectRunner, Depends(get_side_effect_runner)]
GatewayClient = Annotated[RazorpayClient, Depends(get_gateway_client)]
