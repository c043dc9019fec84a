"""
Cache-aside reads and invalidation for orders, products and sellers.

Every cache write uses the same fixed TTL. Invalidation runs after the database
commit; a cache outage is logged and never fails the write that triggered it.
The outbox runner builds its invalidator with ``raise_errors=True`` so a failed
delete leaves its row pending for another attempt.
"""

import json
from typing import Any, Awaitable, Callable, Iterable, Optional

from marketplace.cache.redis_client import (
    CacheBackend,
    CacheKeyManager,
    get_cache_key_manager,
)
from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger
from marketplace.database.models.order import Order

logger = get_logger(__name__)


class CacheInvalidator:
    """
    Keeps cached read models coherent with the order store.

    The backend is injected so the Redis client can be swapped for an
    in-memory store.
    """

    def __init__(
        self,
        backend: CacheBackend,
        key_manager: Optional[CacheKeyManager] = None,
        ttl_seconds: Optional[int] = None,
        raise_errors: bool = False,
    ):
        self._backend = backend
        self.raise_errors = raise_errors
        self.keys = key_manager or get_cache_key_manager()
        self.ttl_seconds = ttl_seconds or get_settings().cache_ttl_seconds
        self._stats = {"hits": 0, "misses": 0, "invalidations": 0, "errors": 0}

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded cached value, or None on a miss or backend error."""
        try:
            raw = await self._backend.get(key)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(
                "Failed to read from cache",
                cache_key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if raw is None:
            self._stats["misses"] += 1
            logger.debug("Cache miss", cache_key=key)
            return None

        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry", cache_key=key)
            return None

        self._stats["hits"] += 1
        logger.debug("Cache hit", cache_key=key)
        return value

    async def set(self, key: str, value: Any) -> bool:
        try:
            return bool(
                await self._backend.set(
                    key, json.dumps(value, default=str), ex=self.ttl_seconds
                )
            )
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(
                "Failed to write to cache",
                cache_key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def get_or_set(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Read-through helper.

        Concurrent misses may each call ``loader``; the last write wins.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await loader()
        if value is not None:
            await self.set(key, value)
        return value

    async def _delete(self, keys: Iterable[str], patterns: Iterable[str], **log_context) -> int:
        deleted = 0
        keys = list(keys)
        try:
            if keys:
                deleted += await self._backend.delete(*keys)
            for pattern in patterns:
                deleted += await self._backend.delete_pattern(pattern)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(
                "Cache invalidation failed",
                keys=keys,
                error=str(e),
                error_type=type(e).__name__,
                **log_context,
            )
            if self.raise_errors:
                raise
            return deleted

        self._stats["invalidations"] += deleted
        logger.info("Cache invalidated", keys_deleted=deleted, **log_context)
        return deleted

    async def invalidate_order(self, order: Order) -> int:
        """
        Drop the order detail, the customer's history, each involved seller's
        listing and every cached order listing.
        """
        keys = [
            self.keys.order_key(order.id),
            self.keys.user_orders_key(order.user_id),
        ]
        keys.extend(self.keys.seller_orders_key(seller_id) for seller_id in order.seller_ids)

        return await self._delete(
            keys,
            [self.keys.list_pattern("orders")],
            entity="order",
            order_id=str(order.id),
        )

    async def invalidate_product(self, product_id: str) -> int:
        return await self._delete(
            [self.keys.product_key(product_id)],
            [self.keys.list_pattern("products"), self.keys.search_pattern()],
            entity="product",
            product_id=product_id,
        )

    async def invalidate_seller(self, seller_id: str) -> int:
        return await self._delete(
            [self.keys.seller_profile_key(seller_id)],
            [self.keys.list_pattern("sellers")],
            entity="seller",
            seller_id=seller_id,
        )

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)
