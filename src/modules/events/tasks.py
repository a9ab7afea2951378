"""Celery tasks for event pipeline housekeeping.

The long-lived worker already runs cleanup and metrics loops; these tasks let
deployments without that worker (or with it disabled) schedule the same work
through celery beat.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from celery_app import celery
from src.config import settings
from src.modules.events.manager import EventManager
from src.modules.events.metrics import EventMetrics
from src.worker import load_object

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _task_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Engine bound to the event loop of a single ``asyncio.run`` call."""
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


async def _cleanup_settled_events_async() -> dict:
    registry = load_object(settings.event_handler_registry)()
    async with _task_session_factory() as session_factory:
        manager = EventManager(registry, session_factory=session_factory)
        finalized = await manager.cleanup_once()
    return {"finalized": finalized}


async def _report_event_metrics_async() -> dict:
    async with _task_session_factory() as session_factory:
        snapshot = await EventMetrics(session_factory).refresh()
    return asdict(snapshot)


# ---------------------------------------------------------------------------
# Celery task definitions
# ---------------------------------------------------------------------------


@celery.task(name="src.modules.events.tasks.cleanup_settled_events")
def cleanup_settled_events():
    """Finalize settled events into the event log."""
    stats = asyncio.run(_cleanup_settled_events_async())
    logger.info("cleanup_settled_events complete: %s", stats)
    return stats


@celery.task(name="src.modules.events.tasks.report_event_metrics")
def report_event_metrics():
    """Log queue, log and handler outcome counts."""
    stats = asyncio.run(_report_event_metrics_async())
    logger.info("report_event_metrics complete: %s", stats)
    return stats
