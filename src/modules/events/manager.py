"""EventManager - dispatches claimed events to handlers and settles them.

The manager runs two kinds of long-lived loops:

* process loops claim one event at a time from the :class:`EventQueue`, invoke
  every applicable handler that has not reached a terminal outcome yet and
  persist each handler's outcome;
* the cleanup loop finalizes settled events into the event log and drops
  their handler states.

Infrastructure errors (database unavailable etc.) escape both loops; the worker
supervisor restarts them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.database.session import unit_of_work
from src.exceptions import ValidationException
from src.models.event_handler_state import EventHandlerState
from src.models.queued_event import QueuedEvent
from src.modules.events.handler_state import HandlerStateStore
from src.modules.events.metrics import record_handler_outcome
from src.modules.events.outcomes import (
    FatalError,
    HandlerOutcome,
    Success,
    fatal_error,
    is_halted,
    is_settled,
    transient_error,
)
from src.modules.events.payloads import Event
from src.modules.events.queue import EventQueue
from src.modules.events.registry import EventHandler, HandlerRegistry
from src.modules.events.scheduling import BackoffPolicy, Clock, system_clock

logger = logging.getLogger(__name__)

# Handler id under which undecodable stored payloads are recorded
PAYLOAD_DECODING = "payload-decoding"


@dataclass(frozen=True)
class EventManagerConfig:
    poll_delay: float = field(default_factory=lambda: settings.event_poll_delay_seconds)
    error_delay: float = field(default_factory=lambda: settings.event_error_backoff_seconds)
    cleanup_delay: float = field(
        default_factory=lambda: settings.event_cleanup_interval_seconds
    )
    cleanup_batch_size: int = field(default_factory=lambda: settings.event_cleanup_batch_size)
    abandoned_timeout: timedelta = field(
        default_factory=lambda: timedelta(seconds=settings.event_abandoned_timeout_seconds)
    )
    clock: Clock = system_clock

    @property
    def process_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(idle_delay=self.poll_delay, error_delay=self.error_delay)

    @property
    def cleanup_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(idle_delay=self.cleanup_delay, error_delay=self.error_delay)


class EventManager:
    def __init__(
        self,
        registry: HandlerRegistry,
        *,
        queue: EventQueue | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: EventManagerConfig | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or EventManagerConfig()
        self.session_factory = session_factory
        self.queue = queue or EventQueue(
            session_factory,
            abandoned_timeout=self.config.abandoned_timeout,
            clock=self.config.clock,
        )
        self.states = HandlerStateStore(session_factory)

    # -- processing ---------------------------------------------------------

    async def run_process_loop(self) -> None:
        """Process events until cancelled."""
        backoff = self.config.process_backoff
        while True:
            if not await self.process_next():
                await backoff.idle()

    async def process_next(self) -> bool:
        """Claim and process one event. Returns False when nothing was claimable."""
        queued = await self.queue.poll()
        if queued is None:
            return False

        handlers = self.registry.handlers_for_kind(queued.event_kind)
        if not handlers:
            logger.info(
                "No handlers registered for event %s of kind %s, finalizing",
                queued.id,
                queued.event_kind,
            )
            await self.queue.finalize(queued.id)
            return True

        outcomes = await self.states.outcomes_for(queued.id)
        if is_halted(outcomes):
            logger.info("Event %s is halted by a fatal error, skipping handlers", queued.id)
            return True

        try:
            event = queued.to_event()
        except ValidationException as exc:
            outcome = fatal_error(f"Stored payload of event {queued.id} cannot be decoded", exc)
            await self.states.record(queued.id, PAYLOAD_DECODING, outcome)
            record_handler_outcome(PAYLOAD_DECODING, outcome.type)
            return True

        for handler in handlers:
            previous = outcomes.get(handler.id)
            if previous is not None and previous.terminal:
                continue

            outcome = await self._invoke(handler, event)
            await self.states.record(event.id, handler.id, outcome)
            record_handler_outcome(handler.id, outcome.type)
            outcomes[handler.id] = outcome

            if isinstance(outcome, FatalError):
                logger.error(
                    "Handler %s reported a fatal error for event %s: %s",
                    handler.id,
                    event.id,
                    outcome.reason,
                )
                break

        if is_settled((h.id for h in handlers), outcomes):
            logger.info("Event %s settled after attempt %s", event.id, queued.attempts)
        return True

    async def _invoke(self, handler: EventHandler, event: Event) -> HandlerOutcome:
        try:
            return await handler.handle(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return transient_error(
                f"Handler {handler.id} raised while handling event {event.id}", exc
            )

    async def handled_events(self, event_id: int) -> dict[str, HandlerOutcome]:
        """Recorded outcome per handler for a queued event."""
        return await self.states.outcomes_for(event_id)

    # -- cleanup ------------------------------------------------------------

    async def cleanup_finalized_events(self) -> None:
        """Finalize settled events until cancelled."""
        backoff = self.config.cleanup_backoff
        while True:
            finalized = await self.cleanup_once()
            if finalized:
                logger.info("Cleanup finalized %s settled events", finalized)
            await backoff.idle()

    async def cleanup_once(self) -> int:
        """Finalize every settled event and sweep orphaned handler states.

        Returns the number of events moved to the event log.
        """
        finalized = 0
        last_id = 0
        while True:
            async with unit_of_work(self.session_factory) as session:
                batch = (
                    await session.execute(
                        select(QueuedEvent)
                        .where(
                            QueuedEvent.id > last_id,
                            select(EventHandlerState.event_id)
                            .where(EventHandlerState.event_id == QueuedEvent.id)
                            .exists(),
                        )
                        .order_by(QueuedEvent.id.asc())
                        .limit(self.config.cleanup_batch_size)
                    )
                ).scalars().all()
                outcomes_by_event = await self.states.outcomes_for_many(
                    [queued.id for queued in batch], session=session
                )

            if not batch:
                break
            last_id = batch[-1].id

            for queued in batch:
                outcomes = outcomes_by_event.get(queued.id, {})
                handler_ids = [h.id for h in self.registry.handlers_for_kind(queued.event_kind)]
                if not is_settled(handler_ids, outcomes):
                    continue
                await self._finalize(queued.id, outcomes)
                finalized += 1

        orphans = await self.states.delete_orphans()
        if orphans:
            logger.info("Deleted %s orphaned handler states", orphans)
        return finalized

    async def _finalize(self, event_id: int, outcomes: dict[str, HandlerOutcome]) -> None:
        errors = [
            {"handler_id": handler_id, "type": outcome.type, "reason": outcome.reason}
            for handler_id, outcome in outcomes.items()
            if not isinstance(outcome, Success)
        ]
        async with unit_of_work(self.session_factory) as session:
            await self.queue.finalize(event_id, errors, session=session)
            await self.states.delete_for_event(event_id, session=session)
