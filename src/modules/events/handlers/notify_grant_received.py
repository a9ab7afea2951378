"""Tell the applicant a grant letter has arrived and mark the case approved."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.modules.events.handlers.ports import CaseNotifier
from src.modules.events.idempotency import IdempotencyGuard
from src.modules.events.outcomes import (
    HandlerOutcome,
    success,
    transient_error,
    unrecoverable_error,
)
from src.modules.events.payloads import Event, GrantLetterReceived
from src.modules.events.registry import EventHandler

NEW_MESSAGE = "notification_new_message"
CASE_STATUS = "notification_case_status"

APPROVED_TEXT = "The application has been approved and expert assistance can now be used."


class NotifyGrantReceived(EventHandler):
    id = "notify-grant-received"
    event_types = (GrantLetterReceived,)

    def __init__(
        self,
        notifier: CaseNotifier,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.notifier = notifier
        self.guard = IdempotencyGuard.for_owner(self, session_factory)

    async def handle(self, event: Event) -> HandlerOutcome:
        payload: GrantLetterReceived = event.payload
        form = payload.form
        if form.id is None:
            return unrecoverable_error(f"Grant letter event {event.id} refers to a form without id")

        if not await self.guard.is_guarded(event.id, NEW_MESSAGE):
            try:
                await self.notifier.notify_applicant(
                    case_reference=form.id,
                    external_id=f"{form.id}-approved-{payload.grant_number}",
                    organisation_number=form.organisation_number,
                    text=APPROVED_TEXT,
                )
            except Exception as exc:
                return transient_error("Failed to notify applicant", exc)
            await self.guard.guard(event.id, event.kind, NEW_MESSAGE)

        if not await self.guard.is_guarded(event.id, CASE_STATUS):
            try:
                await self.notifier.update_case_status(case_reference=form.id, status="approved")
            except Exception as exc:
                return transient_error("Failed to update case status", exc)
            await self.guard.guard(event.id, event.kind, CASE_STATUS)

        return success()
