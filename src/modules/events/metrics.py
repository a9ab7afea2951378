"""Event pipeline metrics.

Gauges are observable instruments reading from a snapshot that
:meth:`EventMetrics.refresh` rebuilds from the database, so metric collection
never blocks on a query.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.session import unit_of_work
from src.models.enums import QueueStatus
from src.models.event_handler_state import EventHandlerState
from src.models.event_log import EventLogEntry
from src.models.queued_event import QueuedEvent
from src.modules.events.scheduling import BackoffPolicy, Clock, system_clock

logger = logging.getLogger(__name__)

meter = metrics.get_meter("src.modules.events")

handler_outcomes_counter = meter.create_counter(
    name="eventhandler.outcomes",
    description="Handler invocations by handler id and outcome type",
    unit="1",
)

AGE_BUCKETS: tuple[tuple[str, int | None], ...] = (
    ("<1m", 1),
    ("<5m", 5),
    ("<15m", 15),
    ("<30m", 30),
    (">30m", None),
)


def record_handler_outcome(handler_id: str, outcome_type: str) -> None:
    handler_outcomes_counter.add(1, {"handler": handler_id, "outcome": outcome_type})


def age_bucket(age_minutes: float) -> str:
    for label, upper in AGE_BUCKETS:
        if upper is None or age_minutes < upper:
            return label
    return AGE_BUCKETS[-1][0]


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@dataclass
class EventMetricsSnapshot:
    queue_size: dict[str, int] = field(default_factory=dict)
    log_size: dict[str, int] = field(default_factory=dict)
    processing_age: dict[str, int] = field(default_factory=dict)
    handler_outcomes: dict[str, int] = field(default_factory=dict)


class EventMetrics:
    """Queries and publishes queue, log and handler-state statistics."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.snapshot = EventMetricsSnapshot()

    def register_gauges(self) -> None:
        meter.create_observable_gauge(
            "eventqueue.size",
            callbacks=[self._observe_queue_size],
            description="The number of items in the event queue by status",
        )
        meter.create_observable_gauge(
            "eventqueue.age",
            callbacks=[self._observe_processing_age],
            description="The number of items in processing state bucketed by lease age",
        )
        meter.create_observable_gauge(
            "eventlog.size",
            callbacks=[self._observe_log_size],
            description="The number of finalized items in the event log by status",
        )

    async def queue_size_by_status(self) -> dict[str, int]:
        async with unit_of_work(self.session_factory) as session:
            rows = (
                await session.execute(
                    select(QueuedEvent.status, func.count(QueuedEvent.id)).group_by(
                        QueuedEvent.status
                    )
                )
            ).all()
        return {QueueStatus(status).value: count for status, count in rows}

    async def log_size_by_status(self) -> dict[str, int]:
        async with unit_of_work(self.session_factory) as session:
            rows = (
                await session.execute(
                    select(EventLogEntry.status, func.count(EventLogEntry.id)).group_by(
                        EventLogEntry.status
                    )
                )
            ).all()
        return {status.value: count for status, count in rows}

    async def processing_events_by_age_bucket(self) -> dict[str, int]:
        now = self.clock.now()
        result = {label: 0 for label, _ in AGE_BUCKETS}
        async with unit_of_work(self.session_factory) as session:
            leases = (
                await session.execute(
                    select(QueuedEvent.updated_at).where(
                        QueuedEvent.status == QueueStatus.PROCESSING
                    )
                )
            ).scalars().all()
        for updated_at in leases:
            age_minutes = (now - _as_utc(updated_at)).total_seconds() / 60
            result[age_bucket(age_minutes)] += 1
        return result

    async def handler_outcomes_by_type(self) -> dict[str, int]:
        async with unit_of_work(self.session_factory) as session:
            rows = (
                await session.execute(
                    select(
                        EventHandlerState.outcome_type, func.count(EventHandlerState.event_id)
                    ).group_by(EventHandlerState.outcome_type)
                )
            ).all()
        return dict(rows)

    async def refresh(self) -> EventMetricsSnapshot:
        self.snapshot = EventMetricsSnapshot(
            queue_size=await self.queue_size_by_status(),
            log_size=await self.log_size_by_status(),
            processing_age=await self.processing_events_by_age_bucket(),
            handler_outcomes=await self.handler_outcomes_by_type(),
        )
        return self.snapshot

    async def run_refresh_loop(self, backoff: BackoffPolicy) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Failed to refresh event metrics")
                await backoff.after_error()
                continue
            await backoff.idle()

    def _observe_queue_size(self, options: CallbackOptions) -> Iterable[Observation]:
        return [
            Observation(count, {"status": status})
            for status, count in self.snapshot.queue_size.items()
        ]

    def _observe_log_size(self, options: CallbackOptions) -> Iterable[Observation]:
        return [
            Observation(count, {"status": status})
            for status, count in self.snapshot.log_size.items()
        ]

    def _observe_processing_age(self, options: CallbackOptions) -> Iterable[Observation]:
        return [
            Observation(count, {"age": bucket})
            for bucket, count in self.snapshot.processing_age.items()
        ]
