"""
Shared fixtures: a throwaway SQLite database per test, in-memory stand-ins
for Redis, the job queue and the payment processor, and HTTP clients for
each service app.
"""

import os

# Settings are read once at import time by the rate limiter and the engine.
os.environ.setdefault("ENVIRONMENT", "local")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("TAX_RATE", "0.10")
os.environ.setdefault("LOW_STOCK_THRESHOLD", "10")

from contextlib import asynccontextmanager  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import AsyncGenerator, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from libs.common.cache import Cache  # noqa: E402
from libs.common.config import get_settings  # noqa: E402
from libs.common.notifications import NotificationDispatcher  # noqa: E402
from libs.db.base import Base  # noqa: E402
from libs.db.session import get_async_db, get_session_factory  # noqa: E402

get_settings.cache_clear()

# Register every table on the shared metadata.
import services.identity_service.models  # noqa: E402,F401
import services.payments_service.models  # noqa: E402,F401
import services.store_service.models  # noqa: E402,F401
from services.identity_service.models import UserRole  # noqa: E402
from services.store_service.services.inventory_ledger import InventoryLedger  # noqa: E402
from services.store_service.services.order_workflow import OrderWorkflow  # noqa: E402
from tests.factories import (  # noqa: E402
    InventoryItemFactory,
    ProductFactory,
    UserFactory,
    VendorFactory,
)
from tests.stubs import FakeGateway, InMemoryRedis, RecordingPool  # noqa: E402

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    A file-backed SQLite database per test.

    A file (not :memory:) so the inventory ledger's own sessions and the
    request session see the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@pytest.fixture
def redis_client() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def cache(redis_client) -> Cache:
    return Cache(redis_client)


@pytest.fixture
def job_pool() -> RecordingPool:
    return RecordingPool()


@pytest.fixture
def notifier(job_pool) -> NotificationDispatcher:
    return NotificationDispatcher(job_pool)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger(session_factory) -> InventoryLedger:
    return InventoryLedger(session_factory)


@pytest.fixture
def workflow(db_session, ledger, gateway, cache, notifier) -> OrderWorkflow:
    return OrderWorkflow(db_session, ledger, gateway, cache, notifier)


# ---------------------------------------------------------------------------
# Accounts and catalog
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def customer(db_session):
    user = UserFactory.create()
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def admin(db_session):
    user = UserFactory.create(role=UserRole.ADMIN, first_name="Admin")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def make_vendor(db_session):
    async def _make(**overrides):
        user = UserFactory.create(role=UserRole.VENDOR, first_name="Vendor")
        db_session.add(user)
        await db_session.flush()
        vendor = VendorFactory.create(user_id=user.id, **overrides)
        db_session.add(vendor)
        await db_session.commit()
        return user, vendor

    return _make


@pytest.fixture
def make_product(db_session):
    """Create an active product with `stock` units on hand (None: no record)."""

    async def _make(vendor, price="10.00", stock: Optional[int] = 10, **overrides):
        product = ProductFactory.create(
            vendor_id=vendor.id, base_price=Decimal(price), **overrides
        )
        db_session.add(product)
        await db_session.flush()
        if stock is not None:
            db_session.add(
                InventoryItemFactory.create(product_id=product.id, quantity_on_hand=stock)
            )
        await db_session.commit()
        return product

    return _make


# ---------------------------------------------------------------------------
# HTTP clients
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _client_for(app, session_factory, cache, notifier, gateway):
    async def override_get_async_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = override_get_async_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.state.cache = cache
    app.state.notifier = notifier
    app.state.payment_gateway = gateway

    try:
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def store_client(session_factory, cache, notifier, gateway):
    from services.store_service.app.main import app

    async with _client_for(app, session_factory, cache, notifier, gateway) as client:
        yield client


@pytest_asyncio.fixture
async def identity_client(session_factory, cache, notifier):
    from services.identity_service.app.main import app

    async with _client_for(app, session_factory, cache, notifier, None) as client:
        yield client


@pytest_asyncio.fixture
async def payments_client(session_factory, cache, notifier, gateway):
    from services.payments_service.app.main import app

    async with _client_for(app, session_factory, cache, notifier, gateway) as client:
        yield client
