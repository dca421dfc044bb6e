"""Shared fixtures for deal core tests.

Provides:
- In-memory SQLite engine (aiosqlite + StaticPool) with all deal tables
- Session factory shaped like ``src.app.core.database.get_session``
- Controllable clock for time-dependent escrow rules
- InMemoryEventBus + NotificationDispatcher with zero backoff
- DealLifecycleManager wired to all of the above
- Factories for proposals and deals in common states
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

import src.app.deals.models  # noqa: F401
from src.app.core.database import Base
from src.app.deals.lifecycle import DealLifecycleManager
from src.app.deals.repository import DealRepository
from src.app.deals.schemas import DealProposalCreate
from src.app.events.bus import InMemoryEventBus
from src.app.events.dispatcher import NotificationDispatcher

ADVERTISER = "adv-1001"
CREATOR = "cre-2002"
OUTSIDER = "usr-9999"


class FakeClock:
    """Callable returning a settable UTC time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
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
def session_factory(engine):
    """Async generator factory matching the production get_session()."""

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def repository(session_factory) -> DealRepository:
    return DealRepository(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def dispatcher(event_bus) -> NotificationDispatcher:
    return NotificationDispatcher(event_bus, backoff_multiplier=0)


@pytest.fixture
def manager(repository, dispatcher, clock) -> DealLifecycleManager:
    return DealLifecycleManager(repository, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def make_proposal():
    """Build a DealProposalCreate with sensible defaults."""

    def _make(**overrides: Any) -> DealProposalCreate:
        terms = {"placement_type": "video", "brief": "60-second integration"}
        terms.update(overrides.pop("terms", {}))
        data: dict[str, Any] = {
            "advertiser_id": ADVERTISER,
            "creator_id": CREATOR,
            "title": "Spring launch integration",
            "budget": 45000,
            "terms": terms,
        }
        data.update(overrides)
        return DealProposalCreate(**data)

    return _make


@pytest.fixture
def create_deal(manager, make_proposal):
    """Create a deal proposed by the advertiser; returns its id."""

    async def _create(**overrides: Any) -> str:
        result = await manager.create_proposal(ADVERTISER, make_proposal(**overrides))
        return result.deal.id

    return _create


@pytest.fixture
def accepted_deal(manager, create_deal):
    """Create a deal and have the creator accept v1; returns its id."""

    async def _accepted(**overrides: Any) -> str:
        deal_id = await create_deal(**overrides)
        await manager.accept_terms(deal_id, CREATOR)
        return deal_id

    return _accepted
