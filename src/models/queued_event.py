"""QueuedEvent model - events waiting for, or claimed by, a processing worker."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, JSON, String
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base
from src.models.enums import QueueStatus
from src.modules.events.payloads import Event, load_payload

# SQLite only gives monotonic ids to INTEGER PRIMARY KEY AUTOINCREMENT columns
EventId = BigInteger().with_variant(Integer, "sqlite")
Payload = JSON().with_variant(JSONB, "postgresql")


class QueuedEvent(Base):
    __tablename__ = "queued_events"

    id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=True)
    event_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(Payload, nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[QueueStatus] = mapped_column(
        SQLAlchemyEnum(QueueStatus, name="queuestatus", native_enum=False, length=32),
        nullable=False,
        default=QueueStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Lease timestamp: set on publish and on every claim
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_queued_events_status_updated_at", "status", "updated_at", "id"),
        {"sqlite_autoincrement": True},
    )

    def to_event(self) -> Event:
        """Deserialize the stored payload into an :class:`Event`."""
        return Event(id=self.id, payload=load_payload(self.event_kind, self.payload))

    def __repr__(self) -> str:
        return (
            f"<QueuedEvent id={self.id} kind={self.event_kind} "
            f"status={self.status} attempts={self.attempts}>"
        )
