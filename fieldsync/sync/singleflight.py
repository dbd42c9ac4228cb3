"""Single-flight coordination: one unit of work per key, shared by all callers.

The pending slot is removed *before* the result is published, so a caller
arriving after resolution starts fresh work instead of joining a settled slot.
Waiters are resumed in the order they joined.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from fieldsync.core.errors import SyncError
from fieldsync.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    def __init__(self, *, metrics: Optional[SyncMetrics] = None) -> None:
        self._pending: Dict[str, asyncio.Future] = {}
        self._metrics = metrics

    def __len__(self) -> int:
        return len(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def do(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        existing = self._pending.get(key)
        if existing is not None:
            logger.debug("singleflight.join", extra={"key": key})
            if self._metrics is not None:
                await self._metrics.record_single_flight_join()
            # Shield: a cancelled waiter must not cancel the shared work.
            return await asyncio.shield(existing)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            result = await func()
        except asyncio.CancelledError:
            self._release(key, future)
            future.set_exception(SyncError(f"shared operation '{key}' was cancelled"))
            future.exception()
            raise
        except Exception as exc:
            self._release(key, future)
            future.set_exception(exc)
            # Mark retrieved so an unjoined failure is not reported twice.
            future.exception()
            raise
        self._release(key, future)
        future.set_result(result)
        return result

    def _release(self, key: str, future: asyncio.Future) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]


__all__ = ["SingleFlight"]
