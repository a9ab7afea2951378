"""How long applications wait between submission and approval or cancellation."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.projection_views import ApplicationProcessingDelay
from src.modules.events.payloads import (
    ApplicationCancelled,
    Event,
    FormSubmitted,
    GrantLetterReceived,
)
from src.modules.projections.builder import EventLogProjectionBuilder


class ApplicationProcessingDelayProjection(EventLogProjectionBuilder):
    name = "application_processing_delay"

    async def handle(self, event: Event, event_timestamp: datetime, session: AsyncSession) -> None:
        payload = event.payload
        if isinstance(payload, FormSubmitted):
            if payload.form.id is None:
                return
            if await session.get(ApplicationProcessingDelay, payload.form.id) is None:
                session.add(
                    ApplicationProcessingDelay(form_id=payload.form.id, submitted_at=event_timestamp)
                )
                await session.flush()
        elif isinstance(payload, GrantLetterReceived):
            await self._set(session, payload.form.id, approved_at=event_timestamp)
        elif isinstance(payload, ApplicationCancelled):
            await self._set(session, payload.form.id, cancelled_at=event_timestamp)

    async def _set(self, session: AsyncSession, form_id: str | None, **values: datetime) -> None:
        if form_id is None:
            return
        await session.execute(
            update(ApplicationProcessingDelay)
            .where(ApplicationProcessingDelay.form_id == form_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
