"""IdempotencyRecord model - durable marker for a completed side effect."""

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base
from src.models.enums import IdempotencyStatus
from src.models.queued_event import EventId


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    event_id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=False)
    sub_task: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_kind: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[IdempotencyStatus] = mapped_column(
        SQLAlchemyEnum(IdempotencyStatus, name="idempotencystatus", native_enum=False, length=32),
        nullable=False,
        default=IdempotencyStatus.COMPLETED,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<IdempotencyRecord event={self.event_id} sub_task={self.sub_task}>"
