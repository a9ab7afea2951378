"""EventLogEntry model - append-only archive of finalized events."""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base
from src.models.enums import LogStatus
from src.models.queued_event import EventId, Payload
from src.modules.events.payloads import Event, load_payload


class EventLogEntry(Base):
    __tablename__ = "event_log"

    # Same id as the originating queued event
    id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=False)
    event_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(Payload, nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[LogStatus] = mapped_column(
        SQLAlchemyEnum(LogStatus, name="logstatus", native_enum=False, length=32),
        nullable=False,
        default=LogStatus.COMPLETED,
    )
    errors: Mapped[list] = mapped_column(Payload, nullable=False, default=list)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Publish time of the originating event
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finalized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_event_log_status_id", "status", "id"),)

    def to_event(self) -> Event:
        return Event(id=self.id, payload=load_payload(self.event_kind, self.payload))

    def __repr__(self) -> str:
        return f"<EventLogEntry id={self.id} kind={self.event_kind} status={self.status}>"
