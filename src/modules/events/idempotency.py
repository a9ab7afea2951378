"""IdempotencyGuard - durable markers for side effects that must not repeat.

A handler checks :meth:`IdempotencyGuard.is_guarded` before an irreversible
external call and writes the marker with :meth:`IdempotencyGuard.guard` only
after the call has succeeded, in the same unit of work as any follow-up event
it publishes. A crash between the external call and the guard write can then
only cause one more (harmless) retry, never a lost follow-up.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.session import unit_of_work
from src.models.enums import IdempotencyStatus
from src.models.idempotency_record import IdempotencyRecord


class IdempotencyGuard:
    """Sub-task markers namespaced by the owning caller (usually a handler)."""

    def __init__(
        self,
        caller: str,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        if not caller:
            raise ValueError("IdempotencyGuard requires a caller name")
        self.caller = caller
        self.session_factory = session_factory

    @classmethod
    def for_owner(
        cls, owner: object, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> IdempotencyGuard:
        return cls(type(owner).__name__, session_factory)

    def task_name(self, sub_task: str) -> str:
        return f"{self.caller}-{sub_task}"

    async def is_guarded(self, event_id: int, sub_task: str) -> bool:
        async with unit_of_work(self.session_factory) as session:
            status = await session.scalar(
                select(IdempotencyRecord.status).where(
                    IdempotencyRecord.event_id == event_id,
                    IdempotencyRecord.sub_task == self.task_name(sub_task),
                )
            )
        return status == IdempotencyStatus.COMPLETED

    async def guard(
        self,
        event_id: int,
        event_kind: str,
        sub_task: str,
        *,
        session: AsyncSession | None = None,
    ) -> None:
        """Mark ``sub_task`` as completed for the event."""
        async with unit_of_work(self.session_factory, session) as tx:
            tx.add(
                IdempotencyRecord(
                    event_id=event_id,
                    sub_task=self.task_name(sub_task),
                    event_kind=event_kind,
                    status=IdempotencyStatus.COMPLETED,
                )
            )
            await tx.flush()
