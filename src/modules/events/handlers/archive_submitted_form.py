"""Archive a submitted application form as a PDF journal post.

After archiving, a ``document_archived`` event is published carrying the
journal post and document ids. The follow-up event and the idempotency marker
are written in one unit of work, so a redelivered ``form_submitted`` event
never archives the form twice.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.session import unit_of_work
from src.modules.events.handlers.ports import DocumentArchive, DocumentGenerator
from src.modules.events.idempotency import IdempotencyGuard
from src.modules.events.outcomes import (
    HandlerOutcome,
    success,
    transient_error,
    unrecoverable_error,
)
from src.modules.events.payloads import DocumentArchived, Event, FormSubmitted
from src.modules.events.queue import EventQueue
from src.modules.events.registry import EventHandler

logger = logging.getLogger(__name__)

PUBLISH_ARCHIVED_EVENT = "document_archived_event"
DOCUMENT_TITLE = "Application for expert assistance"


class ArchiveSubmittedForm(EventHandler):
    id = "archive-submitted-form"
    event_types = (FormSubmitted,)

    def __init__(
        self,
        generator: DocumentGenerator,
        archive: DocumentArchive,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        queue: EventQueue | None = None,
    ) -> None:
        self.generator = generator
        self.archive = archive
        self.session_factory = session_factory
        self.queue = queue or EventQueue(session_factory)
        self.guard = IdempotencyGuard.for_owner(self, session_factory)

    async def handle(self, event: Event) -> HandlerOutcome:
        if await self.guard.is_guarded(event.id, PUBLISH_ARCHIVED_EVENT):
            return success()

        form = event.payload.form
        if form.id is None:
            return unrecoverable_error(f"Submitted form in event {event.id} has no id")

        try:
            handling_unit = await self.archive.resolve_handling_unit(form)
        except Exception as exc:
            return transient_error("Failed to resolve handling unit", exc)

        try:
            pdf = await self.generator.render_application_pdf(form)
        except Exception as exc:
            return transient_error("Failed to render application PDF", exc)

        try:
            receipt = await self.archive.create_journal_post(
                title=DOCUMENT_TITLE,
                organisation_number=form.organisation_number,
                external_reference=form.id,
                document=pdf,
            )
        except Exception as exc:
            return transient_error("Failed to create journal post", exc)

        if not receipt.finalized:
            return transient_error("Journal post was not finalized")

        document_id = receipt.first_document_id()
        if document_id is None:
            return unrecoverable_error("Document archive returned no document id")
        journal_post_id = receipt.journal_post_number()
        if journal_post_id is None:
            return unrecoverable_error("Document archive returned no valid journal post id")

        async with unit_of_work(self.session_factory) as session:
            await self.queue.publish(
                DocumentArchived(
                    form=form,
                    document_id=document_id,
                    journal_post_id=journal_post_id,
                    handling_unit_id=handling_unit,
                ),
                session=session,
            )
            await self.guard.guard(event.id, event.kind, PUBLISH_ARCHIVED_EVENT, session=session)

        logger.info("Archived form %s as journal post %s", form.id, journal_post_id)
        return success()
