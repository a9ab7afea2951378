"""Data access for per-(event, handler) outcomes."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, exists, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.session import unit_of_work
from src.models.event_handler_state import EventHandlerState
from src.models.queued_event import QueuedEvent
from src.modules.events.outcomes import HandlerOutcome, dump_outcome, load_outcome


class HandlerStateStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self.session_factory = session_factory

    async def outcomes_for(
        self, event_id: int, *, session: AsyncSession | None = None
    ) -> dict[str, HandlerOutcome]:
        """Last recorded outcome per handler id for one event."""
        grouped = await self.outcomes_for_many([event_id], session=session)
        return grouped.get(event_id, {})

    async def outcomes_for_many(
        self, event_ids: Iterable[int], *, session: AsyncSession | None = None
    ) -> dict[int, dict[str, HandlerOutcome]]:
        event_ids = list(event_ids)
        if not event_ids:
            return {}
        async with unit_of_work(self.session_factory, session) as tx:
            rows = (
                await tx.execute(
                    select(EventHandlerState).where(EventHandlerState.event_id.in_(event_ids))
                )
            ).scalars().all()

        grouped: dict[int, dict[str, HandlerOutcome]] = {}
        for row in rows:
            grouped.setdefault(row.event_id, {})[row.handler_id] = load_outcome(row.outcome)
        return grouped

    async def attempts_for(self, event_id: int) -> dict[str, int]:
        async with unit_of_work(self.session_factory) as tx:
            rows = (
                await tx.execute(
                    select(EventHandlerState.handler_id, EventHandlerState.attempts).where(
                        EventHandlerState.event_id == event_id
                    )
                )
            ).all()
        return {row.handler_id: row.attempts for row in rows}

    async def record(
        self,
        event_id: int,
        handler_id: str,
        outcome: HandlerOutcome,
        *,
        session: AsyncSession | None = None,
    ) -> EventHandlerState:
        """Insert or overwrite the outcome, counting the attempt."""
        async with unit_of_work(self.session_factory, session) as tx:
            state = await tx.get(EventHandlerState, (event_id, handler_id))
            if state is None:
                state = EventHandlerState(event_id=event_id, handler_id=handler_id, attempts=0)
                tx.add(state)
            state.outcome_type = outcome.type
            state.outcome = dump_outcome(outcome)
            state.attempts = state.attempts + 1
            await tx.flush()
        return state

    async def delete_for_event(self, event_id: int, *, session: AsyncSession | None = None) -> int:
        async with unit_of_work(self.session_factory, session) as tx:
            result = await tx.execute(
                delete(EventHandlerState).where(EventHandlerState.event_id == event_id)
            )
        return result.rowcount

    async def delete_orphans(self, *, session: AsyncSession | None = None) -> int:
        """Delete states whose event is no longer queued."""
        async with unit_of_work(self.session_factory, session) as tx:
            result = await tx.execute(
                delete(EventHandlerState).where(
                    ~exists(
                        select(QueuedEvent.id).where(QueuedEvent.id == EventHandlerState.event_id)
                    )
                )
            )
        return result.rowcount
