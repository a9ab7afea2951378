"""Event payloads - the closed set of event kinds carried by the queue.

Every payload is a pydantic model with a literal ``kind`` discriminator. The
kind is persisted in its own column next to the JSON body and the schema
version, and stored bodies are turned back into models by dispatching on that
discriminator (see :func:`load_payload`).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from src.exceptions import ValidationException


class SubmittedForm(BaseModel):
    """Snapshot of an application form as it was submitted."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    organisation_number: str
    organisation_name: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    description: str | None = None
    estimated_hours: int | None = None
    submitted_at: datetime | None = None


class EventPayloadBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    schema_version: ClassVar[int] = 1


# ---------------------------------------------------------------------------
# Diagnostic kinds (smoke testing the pipeline)
# ---------------------------------------------------------------------------


class Foo(EventPayloadBase):
    kind: Literal["foo"] = "foo"
    foo_name: str


class Bar(EventPayloadBase):
    kind: Literal["bar"] = "bar"
    bar_name: str


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


class FormSubmitted(EventPayloadBase):
    kind: Literal["form_submitted"] = "form_submitted"
    form: SubmittedForm


class DocumentArchived(EventPayloadBase):
    kind: Literal["document_archived"] = "document_archived"
    form: SubmittedForm
    document_id: int
    journal_post_id: int
    handling_unit_id: str | None = None


class GrantLetterReceived(EventPayloadBase):
    kind: Literal["grant_letter_received"] = "grant_letter_received"
    form: SubmittedForm
    letter_id: int
    grant_number: str


class GrantLetterViewed(EventPayloadBase):
    kind: Literal["grant_letter_viewed"] = "grant_letter_viewed"
    grant_number: str


class ApplicationCancelled(EventPayloadBase):
    kind: Literal["application_cancelled"] = "application_cancelled"
    form: SubmittedForm


EventPayload = Annotated[
    Union[
        Foo,
        Bar,
        FormSubmitted,
        DocumentArchived,
        GrantLetterReceived,
        GrantLetterViewed,
        ApplicationCancelled,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[EventPayload] = TypeAdapter(EventPayload)

EVENT_KINDS: frozenset[str] = frozenset(
    model.model_fields["kind"].default
    for model in (
        Foo,
        Bar,
        FormSubmitted,
        DocumentArchived,
        GrantLetterReceived,
        GrantLetterViewed,
        ApplicationCancelled,
    )
)


@dataclass(frozen=True)
class Event:
    """A payload together with the queue id it was published under."""

    id: int
    payload: EventPayloadBase

    @property
    def kind(self) -> str:
        return self.payload.kind


def dump_payload(payload: EventPayloadBase) -> dict:
    """Serialize a payload to the JSON body stored in the queue and log."""
    return payload.model_dump(mode="json")


def load_payload(kind: str, body: dict) -> EventPayloadBase:
    """Rebuild a payload from its stored ``kind`` and JSON body."""
    if kind not in EVENT_KINDS:
        raise ValidationException(f"Unknown event kind '{kind}'")
    try:
        payload = _payload_adapter.validate_python({**body, "kind": kind})
    except ValidationError as exc:
        raise ValidationException(
            f"Stored payload for event kind '{kind}' is invalid",
            details=[{"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
                     for err in exc.errors()],
        ) from exc
    return payload
