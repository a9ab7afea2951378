"""Domain exception hierarchy for structured error responses."""

from __future__ import annotations


class AppException(Exception):
    """Base exception for all domain errors.

    Subclasses set ``code`` and ``status_code`` at the class level; callers
    provide ``message`` and an optional ``details`` list.
    """

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class NotFoundException(AppException):
    code = "NOT_FOUND"
    status_code = 404


class ValidationException(AppException):
    code = "VALIDATION_ERROR"
    status_code = 422


class ProjectionError(AppException):
    """A projection builder failed to apply a log entry.

    The builder's checkpoint is left on the entry before ``event_id`` so the
    same entry is retried on the next poll.
    """

    code = "PROJECTION_ERROR"

    def __init__(self, builder_name: str, event_id: int) -> None:
        super().__init__(
            f"error handling event {event_id} in projection builder {builder_name}",
            details=[{"builder": builder_name, "event_id": event_id}],
        )
        self.builder_name = builder_name
        self.event_id = event_id
