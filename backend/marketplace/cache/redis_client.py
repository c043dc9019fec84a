"""
Redis access for the read cache and seller broadcasts.

``CacheBackend`` is the narrow surface the cache invalidator depends on, so
tests can swap Redis for an in-memory fake. ``CacheKeyManager`` owns the key
layout: ``<ns>:<entity>:<id>`` for single documents and
``<ns>:list:<entity>:<filters>`` for listings, which lets a whole listing
family be dropped with one pattern delete.
"""

import json
from typing import Any, Awaitable, Optional, Protocol, TypeVar, Union, runtime_checkable

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@runtime_checkable
class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def delete_pattern(self, pattern: str) -> int: ...


class RedisClient:
    """
    Pooled async Redis client.

    Connection attempts retry with exponential backoff. Operation errors are
    logged and re-raised; deciding whether a cache failure matters is left to
    the caller.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        settings = get_settings()
        self._url = url or settings.redis_url
        self._pool_options = {
            "max_connections": max_connections or settings.redis_max_connections,
            "socket_timeout": socket_timeout,
            "socket_connect_timeout": socket_connect_timeout,
            "retry_on_timeout": True,
            "health_check_interval": health_check_interval,
            "decode_responses": True,
        }

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

        self._reads = 0
        self._hits = 0

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Hide credentials in a Redis URL before it is logged."""
        scheme, sep, rest = url.partition("://")
        if sep and "@" in rest:
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return url

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> None:
        """
        Open the pool and verify it with a PING.

        Raises:
            ConnectionError: If Redis cannot be reached
        """
        if self._is_connected:
            return

        self._pool = ConnectionPool.from_url(
            self._url,
            retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
            **self._pool_options,
        )
        self._client = Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                url=self._sanitize_url(self._url),
                error=str(e),
            )
            await self._release()
            raise ConnectionError(f"Redis connection failed: {e}") from e

        self._is_connected = True
        logger.info(
            "Redis connection established",
            url=self._sanitize_url(self._url),
            max_connections=self._pool_options["max_connections"],
        )

    async def disconnect(self) -> None:
        if self._is_connected:
            await self._release()
            logger.info("Redis connection closed")

    async def _release(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        if self._pool is not None:
            await self._pool.aclose()
        self._client = None
        self._pool = None
        self._is_connected = False

    async def health_check(self) -> bool:
        if not self._is_connected or self._client is None:
            return False
        try:
            await self._client.ping()
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            return False
        return True

    def _redis(self) -> Redis:
        if not self._is_connected or self._client is None:
            raise ConnectionError("Redis client is not connected")
        return self._client

    async def _call(self, operation: str, awaitable: Awaitable[T], **context: Any) -> T:
        try:
            return await awaitable
        except RedisError as e:
            logger.error(
                f"Redis {operation} failed",
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise

    async def get(self, key: str) -> Optional[str]:
        value = await self._call("GET", self._redis().get(key), key=key)
        self._reads += 1
        if value is not None:
            self._hits += 1
        return value

    async def set(
        self, key: str, value: Union[str, bytes, int, float], ex: Optional[int] = None
    ) -> bool:
        return bool(await self._call("SET", self._redis().set(key, value, ex=ex), key=key))

    async def delete(self, *keys: str) -> int:
        client = self._redis()
        if not keys:
            return 0
        return await self._call("DEL", client.delete(*keys), keys=keys)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern, found with SCAN."""
        client = self._redis()

        async def matching() -> list[str]:
            return [key async for key in client.scan_iter(match=pattern)]

        keys = await self._call("SCAN", matching(), pattern=pattern)
        deleted = await self.delete(*keys) if keys else 0
        logger.debug("Redis pattern deleted", pattern=pattern, count=deleted)
        return deleted

    async def publish(self, channel: str, message: Union[str, dict[str, Any]]) -> int:
        """
        Publish on a pub/sub channel; dicts are sent as JSON.

        Returns:
            Number of subscribers that received the message
        """
        client = self._redis()
        if not isinstance(message, str):
            message = json.dumps(message, default=str)
        return await self._call("PUBLISH", client.publish(channel, message), channel=channel)

    def get_cache_stats(self) -> dict[str, Any]:
        hit_rate = self._hits / self._reads * 100 if self._reads else 0.0
        return {
            "total_operations": self._reads,
            "cache_hits": self._hits,
            "cache_misses": self._reads - self._hits,
            "hit_rate_percent": round(hit_rate, 2),
        }


class CacheKeyManager:
    """Builds namespaced cache keys for orders, products and sellers."""

    def __init__(self, namespace: Optional[str] = None):
        self.namespace = namespace or get_settings().cache_namespace

    def make_key(self, *parts: Union[str, int, None]) -> str:
        """
        Example:
            >>> CacheKeyManager("app").make_key("order", "abc")
            'app:order:abc'
        """
        return ":".join([self.namespace, *(str(p) for p in parts if p not in (None, ""))])

    def list_key(self, entity_type: str, filters: Optional[dict[str, Any]] = None) -> str:
        suffix = ":".join(f"{k}={v}" for k, v in sorted((filters or {}).items()))
        return self.make_key("list", entity_type, suffix)

    def list_pattern(self, entity_type: str) -> str:
        return self.make_key("list", entity_type) + "*"

    def order_key(self, order_id: Any) -> str:
        return self.make_key("order", str(order_id))

    def user_orders_key(self, user_id: str) -> str:
        return self.list_key("orders", {"user": user_id})

    def seller_orders_key(self, seller_id: str) -> str:
        return self.list_key("orders", {"seller": seller_id})

    def product_key(self, product_id: str) -> str:
        return self.make_key("product", product_id)

    def search_pattern(self) -> str:
        return self.make_key("search") + "*"

    def seller_profile_key(self, seller_id: str) -> str:
        return self.make_key("seller_profile", seller_id)


_redis_client: Optional[RedisClient] = None
_cache_key_manager: Optional[CacheKeyManager] = None


async def get_redis_client() -> RedisClient:
    """
    Shared client for the API process, connected on first use.

    Raises:
        ConnectionError: If Redis is unreachable; the next call tries again
    """
    global _redis_client
    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client
    return _redis_client


def get_cache_key_manager() -> CacheKeyManager:
    global _cache_key_manager
    if _cache_key_manager is None:
        _cache_key_manager = CacheKeyManager()
    return _cache_key_manager


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
