"""EventHandlerState model - last recorded outcome per (event, handler)."""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin
from src.models.queued_event import EventId, Payload


class EventHandlerState(TimestampMixin, Base):
    __tablename__ = "event_handler_state"

    event_id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=False)
    handler_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    outcome_type: Mapped[str] = mapped_column(String(32), nullable=False)
    outcome: Mapped[dict] = mapped_column(Payload, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<EventHandlerState event={self.event_id} handler={self.handler_id} "
            f"outcome={self.outcome_type} attempts={self.attempts}>"
        )
