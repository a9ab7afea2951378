"""Event pipeline worker.

Starts the event process loops, the cleanup loop, one loop per projection
builder and the metrics refresh loop, and keeps them running until stopped.
Run standalone with ``event-pipeline`` or inside the API process by setting
``EVENT_WORKERS_IN_APP=true``.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import signal
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.database.session import get_session_factory
from src.modules.events.manager import EventManager, EventManagerConfig
from src.modules.events.metrics import EventMetrics
from src.modules.events.registry import HandlerRegistry
from src.modules.events.scheduling import BackoffPolicy
from src.modules.projections.builder import EventLogProjectionBuilder, ProjectionRunner

logger = logging.getLogger(__name__)


def load_object(path: str) -> Any:
    """Resolve ``"package.module:attribute"`` to the attribute."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got '{path}'")
    return getattr(importlib.import_module(module_name), attribute)


class EventPipeline:
    """Supervises the long-lived pipeline loops as asyncio tasks."""

    def __init__(
        self,
        registry: HandlerRegistry,
        projections: list[EventLogProjectionBuilder],
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: EventManagerConfig | None = None,
        worker_count: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or EventManagerConfig()
        self.manager = EventManager(registry, session_factory=session_factory, config=self.config)
        self.projections = ProjectionRunner(
            projections,
            BackoffPolicy(
                idle_delay=settings.projection_idle_delay_seconds,
                error_delay=settings.projection_error_backoff_seconds,
            ),
            session_factory,
        )
        self.metrics = EventMetrics(session_factory, self.config.clock)
        self.worker_count = worker_count or settings.event_worker_count
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls) -> EventPipeline:
        session_factory = get_session_factory()
        registry = load_object(settings.event_handler_registry)()
        projections = load_object(settings.projection_builders)(session_factory)
        return cls(registry, projections, session_factory=session_factory)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError("Event pipeline already started")

        logger.info(
            "Starting event pipeline: %s process loops, %s handlers, %s projections",
            self.worker_count,
            len(self.manager.registry),
            len(self.projections.builders),
        )
        for index in range(self.worker_count):
            self._spawn(f"event-process-{index}", self.manager.run_process_loop)
        self._spawn("event-cleanup", self.manager.cleanup_finalized_events)
        for builder in self.projections.builders:
            self._spawn(
                f"projection-{builder.name}",
                lambda builder=builder: self.projections.run_builder(builder),
            )

        self.metrics.register_gauges()
        self._spawn(
            "event-metrics",
            lambda: self.metrics.run_refresh_loop(
                BackoffPolicy(
                    idle_delay=settings.metrics_refresh_seconds,
                    error_delay=self.config.error_delay,
                )
            ),
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Event pipeline stopped")

    def _spawn(self, name: str, loop: Callable[[], Awaitable[None]]) -> None:
        self._tasks.append(asyncio.create_task(self._supervise(name, loop), name=name))

    async def _supervise(self, name: str, loop: Callable[[], Awaitable[None]]) -> None:
        """Run ``loop`` forever, restarting it after the error backoff when it fails."""
        while True:
            try:
                await loop()
                logger.warning("Loop %s exited, restarting", name)
            except Exception:
                logger.exception("Loop %s failed, restarting in %ss", name, self.config.error_delay)
                await asyncio.sleep(self.config.error_delay)


async def run_pipeline(pipeline: EventPipeline | None = None) -> None:
    pipeline = pipeline or EventPipeline.from_settings()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    pipeline.start()
    try:
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        await pipeline.stop()


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    asyncio.run(run_pipeline())


if __name__ == "__main__":
    main()
