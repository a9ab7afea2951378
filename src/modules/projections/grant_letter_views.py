"""When grant letters were created and first opened by the applicant."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.projection_views import GrantLetterView
from src.modules.events.payloads import Event, GrantLetterReceived, GrantLetterViewed
from src.modules.projections.builder import EventLogProjectionBuilder


class GrantLetterViewsProjection(EventLogProjectionBuilder):
    name = "grant_letter_views"

    async def handle(self, event: Event, event_timestamp: datetime, session: AsyncSession) -> None:
        payload = event.payload
        if isinstance(payload, GrantLetterReceived):
            if await session.get(GrantLetterView, payload.grant_number) is None:
                session.add(
                    GrantLetterView(grant_number=payload.grant_number, created_at=event_timestamp)
                )
                await session.flush()
        elif isinstance(payload, GrantLetterViewed):
            # Only the first view counts
            await session.execute(
                update(GrantLetterView)
                .where(
                    GrantLetterView.grant_number == payload.grant_number,
                    GrantLetterView.first_viewed_at.is_(None),
                )
                .values(first_viewed_at=event_timestamp)
                .execution_options(synchronize_session=False)
            )
