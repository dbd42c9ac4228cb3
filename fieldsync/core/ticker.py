"""Cancellable repeating task.

`Ticker` runs `func` once immediately and then after every `interval`
seconds. The sleep function is injectable, so tests drive it with a manual
clock instead of waiting on wall time. `stop()` cancels only future runs: a
run that is already executing is allowed to finish.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from fieldsync.core.clock import Sleeper, default_sleep

logger = logging.getLogger(__name__)


class Ticker:
    def __init__(
        self,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        *,
        name: str = "ticker",
        sleep: Sleeper = default_sleep,
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(interval)
        self.name = name
        self._func = func
        self._sleep = sleep
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self._in_run = False
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._loop(), name=f"ticker:{self.name}")

    def stop(self) -> None:
        """Cancel future runs. Idempotent."""

        if self._stopped:
            return
        self._stopped = True
        if self._task is not None and not self._task.done() and not self._in_run:
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        first = True
        while not self._stopped:
            if not (first and self._run_immediately):
                await self._sleep(self.interval)
                if self._stopped:
                    break
            first = False
            await self._run_once()

    async def _run_once(self) -> None:
        self._in_run = True
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception:
            # One failed run never kills the loop.
            logger.exception("ticker.run_failed", extra={"ticker": self.name})
        finally:
            self._in_run = False
            self.runs += 1


__all__ = ["Ticker"]
