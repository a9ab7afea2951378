"""Pydantic v2 schemas for the internal event pipeline endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class HandlerStateResponse(BaseModel):
    handler_id: str
    outcome_type: str
    reason: str | None = None
    attempts: int


class EventHandlersResponse(BaseModel):
    event_id: int
    event_kind: str
    # "queued" while handlers may still run, "finalized" once moved to the log
    state: str
    attempts: int
    handlers: list[HandlerStateResponse] = []
    errors: list[dict] = []
    finalized_at: datetime | None = None


class EventStatsResponse(BaseModel):
    queue_size: dict[str, int]
    log_size: dict[str, int]
    processing_age: dict[str, int]
    handler_outcomes: dict[str, int]


class ProjectionLagResponse(BaseModel):
    lag: dict[str, int]
