"""Startup wiring of the handler registry."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.modules.events.handlers.archive_submitted_form import ArchiveSubmittedForm
from src.modules.events.handlers.notify_grant_received import NotifyGrantReceived
from src.modules.events.handlers.ports import CaseNotifier, DocumentArchive, DocumentGenerator
from src.modules.events.outcomes import HandlerOutcome, success
from src.modules.events.payloads import Event
from src.modules.events.registry import HandlerRegistry, HandlerRegistryBuilder

logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("src.modules.events.audit")


def build_registry(
    *,
    generator: DocumentGenerator | None = None,
    archive: DocumentArchive | None = None,
    notifier: CaseNotifier | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> HandlerRegistry:
    """Build the registry from whichever collaborators are available.

    Handlers whose collaborators are missing are left out, so their events
    settle on the remaining handlers only.
    """
    builder = HandlerRegistryBuilder()

    @builder.handle("audit-log")
    def audit_log(event: Event) -> HandlerOutcome:
        audit_logger.info(
            "Event %s of kind %s: %s", event.id, event.kind, event.payload.model_dump_json()
        )
        return success()

    if generator is not None and archive is not None:
        builder.register(ArchiveSubmittedForm(generator, archive, session_factory))
    else:
        logger.warning("Document clients not configured, %s disabled", ArchiveSubmittedForm.id)

    if notifier is not None:
        builder.register(NotifyGrantReceived(notifier, session_factory))
    else:
        logger.warning("Case notifier not configured, %s disabled", NotifyGrantReceived.id)

    return builder.build()


def build_default_registry() -> HandlerRegistry:
    return build_registry()
