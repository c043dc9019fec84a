"""
Pytest configuration and shared test fixtures.

Provides an in-memory SQLite order store, in-memory cache and publisher
fakes, a stubbed messaging client, bearer tokens for each role and an async
HTTP client wired to the application with its collaborators overridden.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_RAZORPAY_KEY_SECRET", "test_gateway_secret")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("APP_OUTBOX_RELAY_ENABLED", "false")
os.environ.setdefault("APP_LOG_LEVEL", "WARNING")

import fnmatch
import json
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from marketplace.api import deps
from marketplace.core.config import get_settings
from marketplace.core.security import Role, create_access_token
from marketplace.database.base import Base
from marketplace.database.connection import get_db
from marketplace.database.models import Notification, Order, OrderItem, OutboxTask  # noqa: F401
from marketplace.services.notifications.aws_clients import SESClient
from marketplace.services.notifications.broadcast import SellerBroadcaster
from marketplace.services.notifications.templates import TemplateEngine
from marketplace.services.payments.signature import compute_payment_signature
from marketplace.services.side_effects.runner import SideEffectRunner


# ============================================================================
# Fakes
# ============================================================================


class InMemoryCache:
    """Dict backed stand-in for the Redis cache backend."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.deleted: list[str] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("cache unavailable")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            self.deleted.append(key)
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        self._check()
        matches = [key for key in self.store if fnmatch.fnmatchcase(key, pattern)]
        return await self.delete(*matches) if matches else 0

    def seed(self, key: str, value: Any) -> None:
        self.store[key] = json.dumps(value)


class RecordingPublisher:
    """Collects pub/sub messages instead of sending them."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, Any]] = []
        self.failing_channels: set[str] = set()

    async def publish(self, channel: str, message: Any) -> int:
        if channel in self.failing_channels:
            raise ConnectionError(f"publish to {channel} failed")
        self.messages.append((channel, message))
        return 1


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def ses_client() -> Mock:
    """Messaging client whose async send succeeds."""
    client = Mock(spec=SESClient)
    client.send_email_async = AsyncMock(
        return_value={"message_id": "ses-message-1", "status": "sent"}
    )
    return client


@pytest.fixture
def template_engine() -> TemplateEngine:
    return TemplateEngine()


@pytest.fixture
def runner(
    session_factory: async_sessionmaker[AsyncSession],
    cache: InMemoryCache,
    publisher: RecordingPublisher,
    ses_client: Mock,
    template_engine: TemplateEngine,
) -> SideEffectRunner:
    return SideEffectRunner(
        session_factory=session_factory,
        cache=cache,
        broadcaster=SellerBroadcaster(publisher, namespace="test"),
        email_client=ses_client,
        template_engine=template_engine,
    )


@pytest.fixture
def gateway_client() -> Mock:
    client = Mock()
    client.create_order = AsyncMock(
        return_value={
            "id": "order_TEST123",
            "amount": 130000,
            "currency": "INR",
            "receipt": "receipt_1",
            "status": "created",
        }
    )
    return client


# ============================================================================
# Payload Helpers
# ============================================================================


@pytest.fixture
def gateway_secret() -> str:
    return get_settings().razorpay_key_secret


@pytest.fixture
def sign(gateway_secret: str):
    """Sign a gateway order/payment pair the way the gateway does."""

    def _sign(gateway_order_id: str, gateway_payment_id: str) -> str:
        return compute_payment_signature(gateway_order_id, gateway_payment_id, gateway_secret)

    return _sign


@pytest.fixture
def shipping_address() -> dict[str, Any]:
    return {
        "address": "12 MG Road",
        "city": "Bengaluru",
        "postalCode": "560001",
        "country": "India",
    }


@pytest.fixture
def two_seller_items() -> list[dict[str, Any]]:
    """Two sellers: 2 x 500 from S1 and 1 x 300 from S2."""
    return [
        {"product": "P1", "seller": "S1", "name": "Desk Lamp", "qty": 2, "price": 500},
        {"product": "P2", "seller": "S2", "name": "Notebook", "qty": 1, "price": 300},
    ]


@pytest.fixture
def checkout_payload(two_seller_items, shipping_address) -> dict[str, Any]:
    return {
        "orderItems": two_seller_items,
        "shippingAddress": shipping_address,
        "itemsPrice": 1300,
        "taxPrice": 0,
        "shippingPrice": 0,
        "totalPrice": 1300,
    }


def auth_headers(subject: str, role: Role, email: Optional[str] = None) -> dict[str, str]:
    token = create_access_token(subject, role, email=email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers() -> dict[str, str]:
    return auth_headers("customer-1", Role.CUSTOMER, email="buyer@example.com")


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth_headers("admin-1", Role.ADMIN)


@pytest.fixture
def seller_headers():
    def _headers(seller_id: str) -> dict[str, str]:
        return auth_headers(seller_id, Role.SELLER)

    return _headers


# ============================================================================
# Application Fixtures
# ============================================================================


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    cache: InMemoryCache,
    runner: SideEffectRunner,
    gateway_client: Mock,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    HTTP client against the application with test collaborators.

    Background tasks run inside the ASGI call, so side effects have finished
    by the time a request returns.
    """
    from marketplace.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    async def override_cache_backend() -> InMemoryCache:
        return cache

    async def override_runner() -> SideEffectRunner:
        return runner

    async def override_gateway_client() -> Mock:
        return gateway_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_cache_backend] = override_cache_backend
    app.dependency_overrides[deps.get_side_effect_runner] = override_runner
    app.dependency_overrides[deps.get_gateway_client] = override_gateway_client

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()
