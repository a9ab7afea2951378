"""Pytest fixtures for event pipeline tests.

Every test gets its own SQLite file database so concurrent pollers use
separate connections, the way they would against PostgreSQL.
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import src.models  # noqa: F401  registers all tables on Base.metadata
from src.database.base import Base
from src.modules.events.manager import EventManager, EventManagerConfig
from src.modules.events.queue import EventQueue
from src.modules.events.registry import HandlerRegistry


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'events.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def abandoned_timeout() -> timedelta:
    return timedelta(minutes=1)


@pytest.fixture
def queue(session_factory, clock, abandoned_timeout) -> EventQueue:
    return EventQueue(session_factory, abandoned_timeout=abandoned_timeout, clock=clock)


@pytest.fixture
def manager_config(clock, abandoned_timeout) -> EventManagerConfig:
    return EventManagerConfig(
        poll_delay=0,
        error_delay=0,
        cleanup_delay=0.01,
        cleanup_batch_size=2,
        abandoned_timeout=abandoned_timeout,
        clock=clock,
    )


@pytest.fixture
def make_manager(session_factory, queue, manager_config):
    def _make(*handlers) -> EventManager:
        return EventManager(
            HandlerRegistry(handlers),
            queue=queue,
            session_factory=session_factory,
            config=manager_config,
        )

    return _make
