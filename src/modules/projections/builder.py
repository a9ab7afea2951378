"""Checkpointed replay of the event log into read models.

Each :class:`EventLogProjectionBuilder` owns a row in
``projection_builder_state`` holding the id of the last log entry it applied.
Entries are applied one transaction at a time together with the checkpoint
advance, so a builder is at-least-once per entry and resumes where it left off
after a restart. Builders must therefore tolerate seeing an entry twice.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.session import unit_of_work
from src.exceptions import ProjectionError
from src.models.enums import LogStatus
from src.models.event_log import EventLogEntry
from src.models.projection_builder_state import ProjectionBuilderState
from src.modules.events.payloads import Event
from src.modules.events.scheduling import BackoffPolicy

logger = logging.getLogger(__name__)

_INSERT_IGNORE = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class _CheckpointMoved(Exception):
    pass


class EventLogProjectionBuilder(ABC):
    name: str

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        batch_size: int = 1,
    ) -> None:
        self.session_factory = session_factory
        self.batch_size = batch_size

    @abstractmethod
    async def handle(self, event: Event, event_timestamp: datetime, session: AsyncSession) -> None:
        """Apply one logged event to the read model inside ``session``."""

    async def poll(self) -> bool:
        """Apply up to ``batch_size`` new log entries.

        Returns False when there was nothing to apply or another instance of
        this builder currently holds the checkpoint.
        """
        await self._initialize_position()
        processed = False
        for _ in range(self.batch_size):
            if not await self._apply_next():
                break
            processed = True
        return processed

    async def position(self) -> int:
        async with unit_of_work(self.session_factory) as session:
            position = await session.scalar(
                select(ProjectionBuilderState.position).where(
                    ProjectionBuilderState.builder_name == self.name
                )
            )
        return position or 0

    async def _apply_next(self) -> bool:
        try:
            return await self._apply_next_entry()
        except _CheckpointMoved:
            logger.info("Checkpoint of projection %s moved concurrently", self.name)
            return False

    async def _apply_next_entry(self) -> bool:
        async with unit_of_work(self.session_factory) as session:
            position = await session.scalar(
                select(ProjectionBuilderState.position)
                .where(ProjectionBuilderState.builder_name == self.name)
                .with_for_update(skip_locked=True)
            )
            if position is None:
                logger.debug("Projection %s is locked by another instance", self.name)
                return False

            entry = await session.scalar(
                select(EventLogEntry)
                .where(EventLogEntry.id > position, EventLogEntry.status == LogStatus.COMPLETED)
                .order_by(EventLogEntry.id.asc())
                .limit(1)
            )
            if entry is None:
                return False

            try:
                await self.handle(entry.to_event(), _as_utc(entry.created_at), session)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise ProjectionError(self.name, entry.id) from exc

            # Compare-and-set keeps the checkpoint monotonic without row locks
            result = await session.execute(
                update(ProjectionBuilderState)
                .where(
                    ProjectionBuilderState.builder_name == self.name,
                    ProjectionBuilderState.position == position,
                )
                .values(position=entry.id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise _CheckpointMoved
        return True

    async def _initialize_position(self) -> None:
        async with unit_of_work(self.session_factory) as session:
            dialect = session.get_bind().dialect.name
            insert = _INSERT_IGNORE.get(dialect)
            if insert is None:
                if await session.get(ProjectionBuilderState, self.name) is None:
                    session.add(ProjectionBuilderState(builder_name=self.name, position=0))
                return
            await session.execute(
                insert(ProjectionBuilderState)
                .values(builder_name=self.name, position=0)
                .on_conflict_do_nothing(index_elements=["builder_name"])
            )


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class ProjectionRunner:
    """Runs one polling loop per projection builder."""

    def __init__(
        self,
        builders: Iterable[EventLogProjectionBuilder],
        backoff: BackoffPolicy,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.builders = tuple(builders)
        self.backoff = backoff
        self.session_factory = session_factory

    async def run(self) -> None:
        await asyncio.gather(*(self.run_builder(builder) for builder in self.builders))

    async def run_builder(self, builder: EventLogProjectionBuilder) -> None:
        while True:
            try:
                processed = await builder.poll()
            except Exception:
                logger.exception("Error polling projection builder %s", builder.name)
                await self.backoff.after_error()
                continue
            if not processed:
                await self.backoff.idle()

    async def lag_per_builder(self) -> dict[str, int]:
        return await lag_per_builder(self.session_factory)


async def lag_per_builder(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, int]:
    """Number of log entries each builder is behind the newest one."""
    async with unit_of_work(session_factory) as session:
        max_id = await session.scalar(select(func.max(EventLogEntry.id))) or 0
        rows = (
            await session.execute(
                select(ProjectionBuilderState.builder_name, ProjectionBuilderState.position)
            )
        ).all()
    return {name: max_id - position for name, position in rows}
