"""
Test fixtures for the referral backend tests.

Provides:
- In-memory SQLite database, fresh for every test
- Async test client with dependency overrides (session, session factory, run-lock)
- In-memory Redis stand-in for run-lock tests
- Test data factories for users, products and referral purchases
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

os.environ.setdefault("ADMIN_SECRET", "test_admin_secret")
# DB settings required by Settings validation (tests use SQLite in-memory, these are not actually used)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
# Development mode for tests (disables ALLOWED_ORIGINS requirement)
os.environ.setdefault("ENVIRONMENT", "development")
# No background scheduler and no Redis in tests
os.environ["ACCRUAL_SCHEDULER_ENABLED"] = "false"
os.environ["ACCRUAL_USE_REDIS_LOCK"] = "false"

import pytest
from decimal import Decimal
from typing import AsyncGenerator

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from backend.app.core.base import Base
from backend.app.core.run_lock import RunLock
from backend.app.main import app
from backend.app.api.deps import get_session, get_session_factory, get_run_lock
from backend.app.models.user import User
from backend.app.models.product import Product
from backend.app.models.referral import Referral
from backend.tests.factories import FakeRedis, create_user, register_purchase

import backend.app.models.withdrawal  # noqa: F401 - register CommissionWithdrawal with Base.metadata


# Test database URL - SQLite in-memory
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory engine; StaticPool keeps the single connection (and the data) alive."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Session used by fixtures and direct service tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def run_lock() -> RunLock:
    """Process-local run-lock (no Redis)."""
    return RunLock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def client(
    session_factory: async_sessionmaker,
    run_lock: RunLock,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.

    Every request gets its own session from the test engine, so requests
    do not share a transaction with the fixtures.
    """
    async def override_get_session():
        async with session_factory() as session:
            yield session

    def override_get_session_factory():
        return session_factory

    async def override_get_run_lock():
        yield run_lock

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = override_get_session_factory
    app.dependency_overrides[get_run_lock] = override_get_run_lock

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# --- Test Data Factories ---

@pytest.fixture
async def referrer(test_session: AsyncSession) -> User:
    """User who shares the referral link."""
    return await create_user(
        test_session,
        name="Anna Referrer",
        email="anna@example.com",
        phone="+15550000001",
        referral_code="ANNA2026",
    )


@pytest.fixture
async def referred_user(test_session: AsyncSession) -> User:
    """User who bought through the link."""
    return await create_user(
        test_session,
        name="Boris Friend",
        email="boris@example.com",
        phone="+15550000002",
    )


@pytest.fixture
async def test_product(test_session: AsyncSession) -> Product:
    product = Product(
        product_code="PROD-001",
        name="Gold Savings Plan",
        price=Decimal("600.00"),
        is_active=True,
    )
    test_session.add(product)
    await test_session.commit()
    await test_session.refresh(product)
    return product


@pytest.fixture
async def active_referral(
    test_session: AsyncSession,
    referrer: User,
    referred_user: User,
    test_product: Product,
) -> Referral:
    """Referral with one 5-day purchase: 100/day at 20% = 20/day commission."""
    referral, _ = await register_purchase(
        test_session,
        referrer.id,
        referred_user.id,
        {
            "daily_amount": 100,
            "days": 5,
            "commission_percentage": 20,
            "product_id": "PROD-001",
            "order_id": "ORD-1",
        },
    )
    return referral
