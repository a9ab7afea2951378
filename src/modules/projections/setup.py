"""Projection builders started by the worker."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.modules.projections.application_processing_delay import (
    ApplicationProcessingDelayProjection,
)
from src.modules.projections.builder import EventLogProjectionBuilder
from src.modules.projections.grant_letter_views import GrantLetterViewsProjection


def build_default_projections(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[EventLogProjectionBuilder]:
    batch_size = settings.projection_batch_size
    return [
        GrantLetterViewsProjection(session_factory, batch_size=batch_size),
        ApplicationProcessingDelayProjection(session_factory, batch_size=batch_size),
    ]
