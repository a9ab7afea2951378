# Import all models so SQLAlchemy metadata is populated for Alembic autogenerate
from src.models.enums import IdempotencyStatus, LogStatus, QueueStatus
from src.models.event_handler_state import EventHandlerState
from src.models.event_log import EventLogEntry
from src.models.idempotency_record import IdempotencyRecord
from src.models.projection_builder_state import ProjectionBuilderState
from src.models.projection_views import ApplicationProcessingDelay, GrantLetterView
from src.models.queued_event import QueuedEvent

__all__ = [
    "ApplicationProcessingDelay",
    "EventHandlerState",
    "EventLogEntry",
    "GrantLetterView",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "LogStatus",
    "ProjectionBuilderState",
    "QueueStatus",
    "QueuedEvent",
]
