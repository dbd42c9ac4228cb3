from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

Sleeper = Callable[[float], Awaitable[None]]


class Clock(Protocol):
    def time(self) -> float:
        """Wall-clock seconds since the epoch."""

    def monotonic(self) -> float:
        """Monotonic seconds for measuring intervals."""


class SystemClock:
    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()


SYSTEM_CLOCK = SystemClock()


async def default_sleep(seconds: float) -> None:
    await asyncio.sleep(max(0.0, seconds))


def to_datetime(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


def isoformat(epoch_seconds: float) -> str:
    return to_datetime(epoch_seconds).isoformat()


def humanize_duration(seconds: float) -> str:
    """Render a duration the way the dashboard shows cache ages."""

    seconds = max(0.0, seconds)
    hours = int(seconds // 3600)
    if hours < 1:
        return f"{int(seconds // 60)} minutes"
    if hours < 24:
        return f"{hours} hours"
    return f"{hours // 24} days"


__all__ = [
    "Clock",
    "SYSTEM_CLOCK",
    "Sleeper",
    "SystemClock",
    "default_sleep",
    "humanize_duration",
    "isoformat",
    "to_datetime",
]
