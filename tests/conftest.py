"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from fixtures.fake_provider import FakeBillingProvider
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from wayfare.billing import models  # noqa: F401  (registers the billing tables)
from wayfare.billing.repository import BillingRepository
from wayfare.billing.retry import RetryPolicy
from wayfare.billing.service import BillingEngine
from wayfare.billing.tiers import BillingInterval, SubscriptionTier
from wayfare.core.database import create_session_factory
from wayfare.models.base import Base

SUBSCRIBER_ID = "user-1"


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite database, fresh for each test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"


@pytest_asyncio.fixture
async def db_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Create the schema and dispose of the engine afterwards."""
    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the retry executor."""
    return []


@pytest.fixture
def billing(
    session_factory: async_sessionmaker[AsyncSession],
    provider: FakeBillingProvider,
    sleeps: list[float],
) -> BillingEngine:
    """Billing engine over the fake provider that never really sleeps."""

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return BillingEngine(
        session_factory,
        provider,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0),
        sleep=record_sleep,
    )


@pytest_asyncio.fixture
async def subscribed(billing: BillingEngine) -> str:
    """A subscriber with an active Explorer monthly subscription."""
    result = await billing.create(SUBSCRIBER_ID, SubscriptionTier.EXPLORER, BillingInterval.MONTHLY)
    assert result.success, result.error
    return SUBSCRIBER_ID


@pytest.fixture
def records(session_factory: async_sessionmaker[AsyncSession]):
    """Read helpers over the test database."""

    class _Reader:
        async def live(self, subscriber_id: str = SUBSCRIBER_ID):
            async with session_factory() as session:
                return await BillingRepository(session).get_live_record(subscriber_id)

        async def current(self, subscriber_id: str = SUBSCRIBER_ID):
            async with session_factory() as session:
                return await BillingRepository(session).get_current_record(subscriber_id)

        async def attempts(self, subscriber_id: str = SUBSCRIBER_ID):
            async with session_factory() as session:
                return await BillingRepository(session).list_payment_attempts(subscriber_id)

    return _Reader()
