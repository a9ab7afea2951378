"""Clock and backoff primitives shared by the long-lived loops."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


system_clock = SystemClock()


@dataclass(frozen=True)
class BackoffPolicy:
    """Fixed delays for a polling loop.

    ``idle_delay`` is slept when a pass found no work, ``error_delay`` after a
    pass failed.
    """

    idle_delay: float
    error_delay: float

    async def idle(self) -> None:
        await asyncio.sleep(self.idle_delay)

    async def after_error(self) -> None:
        await asyncio.sleep(self.error_delay)
