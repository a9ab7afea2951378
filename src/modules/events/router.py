"""Internal inspection endpoints for the event pipeline."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.session import get_session_factory, unit_of_work
from src.exceptions import NotFoundException
from src.models.event_log import EventLogEntry
from src.models.queued_event import QueuedEvent
from src.modules.events.handler_state import HandlerStateStore
from src.modules.events.metrics import EventMetrics
from src.modules.events.schemas import (
    EventHandlersResponse,
    EventStatsResponse,
    HandlerStateResponse,
)

router = APIRouter(prefix="/events", tags=["internal"])


@router.get("/stats", response_model=EventStatsResponse)
async def event_stats(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Current queue, log and handler outcome counts."""
    snapshot = await EventMetrics(session_factory).refresh()
    return EventStatsResponse(
        queue_size=snapshot.queue_size,
        log_size=snapshot.log_size,
        processing_age=snapshot.processing_age,
        handler_outcomes=snapshot.handler_outcomes,
    )


@router.get("/{event_id}/handlers", response_model=EventHandlersResponse)
async def event_handlers(
    event_id: int,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Per-handler outcomes of a queued event, or the archived errors of a finalized one."""
    async with unit_of_work(session_factory) as session:
        queued = await session.get(QueuedEvent, event_id)
        if queued is None:
            logged = await session.get(EventLogEntry, event_id)
            if logged is None:
                raise NotFoundException(f"Event with id {event_id} not found")
            return EventHandlersResponse(
                event_id=logged.id,
                event_kind=logged.event_kind,
                state="finalized",
                attempts=logged.attempts,
                errors=logged.errors,
                finalized_at=logged.finalized_at,
            )

        store = HandlerStateStore(session_factory)
        outcomes = await store.outcomes_for(event_id, session=session)

    attempts = await store.attempts_for(event_id)
    return EventHandlersResponse(
        event_id=queued.id,
        event_kind=queued.event_kind,
        state="queued",
        attempts=queued.attempts,
        handlers=[
            HandlerStateResponse(
                handler_id=handler_id,
                outcome_type=outcome.type,
                reason=getattr(outcome, "reason", None),
                attempts=attempts.get(handler_id, 0),
            )
            for handler_id, outcome in outcomes.items()
        ],
    )
