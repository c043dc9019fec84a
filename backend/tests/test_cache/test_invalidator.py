"""
Tests for cache-aside reads and invalidation.
"""

import uuid
from unittest.mock import AsyncMock

import pytest

from marketplace.cache.redis_client import CacheKeyManager, RedisClient
from marketplace.database.models.order import Order, OrderItem
from marketplace.services.cache.invalidator import CacheInvalidator


@pytest.fixture
def keys() -> CacheKeyManager:
    return CacheKeyManager("shop")


@pytest.fixture
def invalidator(cache, keys) -> CacheInvalidator:
    return CacheInvalidator(cache, key_manager=keys, ttl_seconds=120)


def _order() -> Order:
    return Order(
        id=uuid.uuid4(),
        user_id="customer-1",
        items=[
            OrderItem(product_id="P1", seller_id="S1"),
            OrderItem(product_id="P2", seller_id="S2"),
            OrderItem(product_id="P3", seller_id="S1"),
        ],
    )


# ============================================================================
# Key Tests
# ============================================================================


class TestCacheKeyManager:
    def test_entity_keys(self, keys) -> None:
        assert keys.order_key("abc") == "shop:order:abc"
        assert keys.product_key("P1") == "shop:product:P1"
        assert keys.seller_profile_key("S1") == "shop:seller_profile:S1"

    def test_listing_keys_share_a_pattern(self, keys) -> None:
        assert keys.user_orders_key("u1") == "shop:list:orders:user=u1"
        assert keys.seller_orders_key("S1") == "shop:list:orders:seller=S1"
        assert keys.list_pattern("orders") == "shop:list:orders*"

    def test_filters_are_sorted(self, keys) -> None:
        assert keys.list_key("products", {"page": 2, "category": "desk"}) == (
            "shop:list:products:category=desk:page=2"
        )

    def test_sanitizes_redis_url(self) -> None:
        assert RedisClient._sanitize_url("redis://user:pw@cache:6379/0") == (
            "redis://***@cache:6379/0"
        )


# ============================================================================
# Read-Through Tests
# ============================================================================


class TestGetOrSet:
    async def test_miss_loads_and_stores_with_ttl(self, invalidator, cache) -> None:
        loader = AsyncMock(return_value={"id": 1})

        assert await invalidator.get_or_set("shop:order:1", loader) == {"id": 1}
        assert cache.ttls["shop:order:1"] == 120
        loader.assert_awaited_once()

    async def test_hit_skips_loader(self, invalidator, cache) -> None:
        cache.seed("shop:order:1", {"id": "cached"})
        loader = AsyncMock()

        assert await invalidator.get_or_set("shop:order:1", loader) == {"id": "cached"}
        loader.assert_not_awaited()
        assert invalidator.get_stats()["hits"] == 1

    async def test_none_is_not_cached(self, invalidator, cache) -> None:
        assert await invalidator.get_or_set("shop:order:x", AsyncMock(return_value=None)) is None
        assert "shop:order:x" not in cache.store

    async def test_backend_outage_falls_through_to_loader(self, invalidator, cache) -> None:
        cache.fail = True

        assert await invalidator.get_or_set("shop:order:1", AsyncMock(return_value=[1])) == [1]
        assert invalidator.get_stats()["errors"] == 2

    async def test_undecodable_entry_is_ignored(self, invalidator, cache) -> None:
        cache.store["shop:order:1"] = "{not json"

        assert await invalidator.get("shop:order:1") is None


# ============================================================================
# Invalidation Tests
# ============================================================================


class TestInvalidation:
    async def test_invalidate_order_drops_every_view(self, invalidator, cache, keys) -> None:
        order = _order()
        for key in (
            keys.order_key(order.id),
            keys.user_orders_key("customer-1"),
            keys.user_orders_key("customer-2"),
            keys.seller_orders_key("S1"),
            keys.seller_orders_key("S3"),
            keys.product_key("P1"),
        ):
            cache.seed(key, {})

        deleted = await invalidator.invalidate_order(order)

        assert deleted == 5
        assert list(cache.store) == [keys.product_key("P1")]
        assert keys.seller_orders_key("S2") in cache.deleted

    async def test_invalidate_product_drops_listings_and_search(
        self, invalidator, cache, keys
    ) -> None:
        cache.seed(keys.product_key("P1"), {})
        cache.seed(keys.list_key("products", {"page": 1}), [])
        cache.seed("shop:search:desk lamp", [])
        cache.seed(keys.product_key("P2"), {})

        await invalidator.invalidate_product("P1")

        assert list(cache.store) == [keys.product_key("P2")]

    async def test_invalidate_seller(self, invalidator, cache, keys) -> None:
        cache.seed(keys.seller_profile_key("S1"), {})
        cache.seed(keys.list_key("sellers"), [])

        assert await invalidator.invalidate_seller("S1") == 2

    async def test_outage_is_swallowed(self, invalidator, cache) -> None:
        cache.fail = True

        assert await invalidator.invalidate_order(_order()) == 0
        assert invalidator.get_stats()["errors"] == 1

    async def test_strict_invalidator_raises(self, cache, keys) -> None:
        strict = CacheInvalidator(cache, key_manager=keys, ttl_seconds=60, raise_errors=True)
        cache.fail = True

        with pytest.raises(ConnectionError):
            await strict.invalidate_order(_order())
        assert strict.get_stats()["errors"] == 1
