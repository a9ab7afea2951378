"""Boundaries to the external systems the shipped handlers talk to.

Concrete HTTP clients live outside this package; handlers only depend on these
protocols so they can be exercised with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from src.modules.events.payloads import SubmittedForm


@dataclass(frozen=True)
class ArchivedDocument:
    document_id: str | None


@dataclass(frozen=True)
class ArchiveReceipt:
    """Response from the document archive after creating a journal post."""

    journal_post_id: str | None
    finalized: bool
    documents: tuple[ArchivedDocument, ...] = ()

    def first_document_id(self) -> int | None:
        if not self.documents or self.documents[0].document_id is None:
            return None
        try:
            return int(self.documents[0].document_id)
        except ValueError:
            return None

    def journal_post_number(self) -> int | None:
        if self.journal_post_id is None:
            return None
        try:
            return int(self.journal_post_id)
        except ValueError:
            return None


class DocumentGenerator(Protocol):
    async def render_application_pdf(self, form: SubmittedForm) -> bytes: ...


class DocumentArchive(Protocol):
    async def create_journal_post(
        self,
        *,
        title: str,
        organisation_number: str,
        external_reference: str,
        document: bytes,
    ) -> ArchiveReceipt: ...

    async def resolve_handling_unit(self, form: SubmittedForm) -> str | None: ...


class CaseNotifier(Protocol):
    async def update_case_status(self, *, case_reference: str, status: str) -> None: ...

    async def notify_applicant(
        self, *, case_reference: str, external_id: str, organisation_number: str, text: str
    ) -> None: ...
