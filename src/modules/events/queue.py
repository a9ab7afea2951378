"""EventQueue - publish, claim and finalize events over the queue tables.

Event lifecycle:

1. ``publish(payload)`` stores the event as PENDING.
2. ``poll()`` claims the lowest-id claimable event and marks it PROCESSING.
   An event stays claimed while its lease (``updated_at``) is younger than the
   abandoned timeout; after that any worker may claim it again.
3. ``finalize(id)`` moves the event to the append-only ``event_log`` table and
   removes it from the queue. Finalizing an already logged event is a no-op.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.database.session import unit_of_work
from src.exceptions import NotFoundException
from src.models.enums import LogStatus, QueueStatus
from src.models.event_log import EventLogEntry
from src.models.queued_event import QueuedEvent
from src.modules.events.payloads import EventPayloadBase, dump_payload
from src.modules.events.scheduling import Clock, system_clock

logger = logging.getLogger(__name__)


class EventQueue:
    """Durable queue of events with lease-based exclusive claims.

    Claims use ``SELECT ... FOR UPDATE SKIP LOCKED`` followed by an UPDATE that
    re-checks claimability, so concurrent pollers never receive the same event
    even on databases that ignore row locks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        abandoned_timeout: timedelta | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.session_factory = session_factory
        self.abandoned_timeout = abandoned_timeout or timedelta(
            seconds=settings.event_abandoned_timeout_seconds
        )
        self.clock = clock

    async def publish(
        self,
        payload: EventPayloadBase,
        *,
        session: AsyncSession | None = None,
    ) -> QueuedEvent:
        """Append an event to the queue with PENDING status.

        Pass ``session`` to publish inside the caller's transaction.
        """
        now = self.clock.now()
        async with unit_of_work(self.session_factory, session) as tx:
            queued = QueuedEvent(
                event_kind=payload.kind,
                payload=dump_payload(payload),
                schema_version=payload.schema_version,
                status=QueueStatus.PENDING,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            tx.add(queued)
            await tx.flush()

        logger.info("Published event %s of kind %s", queued.id, queued.event_kind)
        return queued

    async def poll(self, clock: Clock | None = None) -> QueuedEvent | None:
        """Claim the next claimable event, or return None when there is none."""
        now = (clock or self.clock).now()
        claimable = or_(
            QueuedEvent.status == QueueStatus.PENDING,
            and_(
                QueuedEvent.status == QueueStatus.PROCESSING,
                QueuedEvent.updated_at < now - self.abandoned_timeout,
            ),
        )

        async with unit_of_work(self.session_factory) as session:
            while True:
                candidate_id = await session.scalar(
                    select(QueuedEvent.id)
                    .where(claimable)
                    .order_by(QueuedEvent.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                if candidate_id is None:
                    return None

                result = await session.execute(
                    update(QueuedEvent)
                    .where(QueuedEvent.id == candidate_id, claimable)
                    .values(
                        status=QueueStatus.PROCESSING,
                        updated_at=now,
                        attempts=QueuedEvent.attempts + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Claimed by a concurrent poller between select and update
                    continue

                queued = await session.get(QueuedEvent, candidate_id, populate_existing=True)
                logger.debug(
                    "Claimed event %s (attempt %s)", queued.id, queued.attempts
                )
                return queued

    async def finalize(
        self,
        event_id: int,
        errors: Sequence[dict] = (),
        *,
        session: AsyncSession | None = None,
    ) -> None:
        """Move an event from the queue to the event log.

        ``errors`` lists the terminal error outcomes recorded for the event.
        """
        async with unit_of_work(self.session_factory, session) as tx:
            queued = await tx.get(QueuedEvent, event_id, with_for_update=True)
            if queued is None:
                if await tx.get(EventLogEntry, event_id) is not None:
                    logger.debug("Event %s already finalized", event_id)
                    return
                raise NotFoundException(f"Event with id {event_id} not found")

            tx.add(
                EventLogEntry(
                    id=queued.id,
                    event_kind=queued.event_kind,
                    payload=queued.payload,
                    schema_version=queued.schema_version,
                    status=LogStatus.COMPLETED,
                    errors=list(errors),
                    attempts=queued.attempts,
                    created_at=queued.created_at,
                    finalized_at=self.clock.now(),
                )
            )
            await tx.delete(queued)
            await tx.flush()

        logger.info("Finalized event %s into the event log", event_id)
