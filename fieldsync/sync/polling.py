"""Named poll sessions that stream fetch results to subscriber callbacks.

Each session runs one cycle immediately and then every `interval` seconds.
A cycle never kills its loop: orchestrator results (including degraded ones)
and unexpected errors are both delivered as a `PollUpdate`.

`stop()` cancels future cycles only. What happens to the result of a cycle
already in flight is decided by `LateResultPolicy`.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from fieldsync.core.clock import SYSTEM_CLOCK, Clock, Sleeper, default_sleep, isoformat
from fieldsync.core.metrics import SyncMetrics
from fieldsync.core.ticker import Ticker
from fieldsync.sync.orchestrator import SOURCE_CACHE, VEHICLES, FetchOrchestrator

logger = logging.getLogger(__name__)


class LateResultPolicy(str, Enum):
    DELIVER = "deliver"
    DROP = "drop"


@dataclass(frozen=True)
class PollUpdate:
    session: str
    dataset: str
    sequence: int
    timestamp: float
    payload: Any = None
    source: Optional[str] = None
    stale: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session,
            "dataset": self.dataset,
            "sequence": self.sequence,
            "timestamp": isoformat(self.timestamp),
            "data": self.payload,
            "source": self.source,
            "stale": self.stale,
            "error": self.error,
        }


PollCallback = Callable[[PollUpdate], Union[None, Awaitable[None]]]


@dataclass
class PollSession:
    name: str
    dataset: str
    interval: float
    callback: PollCallback
    ticker: Optional[Ticker] = None
    sequence: int = 0
    stopped: bool = False
    delivered: int = 0
    dropped: int = 0
    errors: int = 0

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence


class PollingDistributor:
    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        *,
        clock: Clock = SYSTEM_CLOCK,
        sleep: Sleeper = default_sleep,
        metrics: Optional[SyncMetrics] = None,
        late_results: LateResultPolicy = LateResultPolicy.DELIVER,
    ) -> None:
        self._orchestrator = orchestrator
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self.late_results = LateResultPolicy(late_results)
        self._sessions: Dict[str, PollSession] = {}
        self._retired: List[PollSession] = []

    def start(
        self,
        name: str,
        callback: PollCallback,
        *,
        interval: float,
        dataset: str = VEHICLES,
    ) -> PollSession:
        """Start (or restart) the session `name`."""

        if name in self._sessions:
            logger.info("poll.session.replaced", extra={"session": name})
            self.stop(name)

        session = PollSession(name=name, dataset=dataset, interval=float(interval), callback=callback)
        session.ticker = Ticker(
            interval,
            lambda: self._cycle(session),
            name=f"poll:{name}",
            sleep=self._sleep,
        )
        self._sessions[name] = session
        session.ticker.start()
        logger.info(
            "poll.session.started",
            extra={"session": name, "dataset": dataset, "interval": interval},
        )
        return session

    def stop(self, name: str) -> bool:
        """Cancel future cycles of `name`. Idempotent; False if not running."""

        session = self._sessions.pop(name, None)
        if session is None:
            return False
        session.stopped = True
        if session.ticker is not None:
            session.ticker.stop()
        self._retired.append(session)
        logger.info(
            "poll.session.stopped",
            extra={"session": name, "cycles": session.sequence, "delivered": session.delivered},
        )
        return True

    def stop_all(self) -> None:
        for name in list(self._sessions):
            self.stop(name)

    def is_polling(self, name: str) -> bool:
        return name in self._sessions

    def active_sessions(self) -> List[str]:
        return sorted(self._sessions)

    def get_session(self, name: str) -> Optional[PollSession]:
        return self._sessions.get(name)

    async def wait_closed(self) -> None:
        """Wait for stopped sessions to finish their in-flight cycle."""

        retired, self._retired = self._retired, []
        for session in retired:
            if session.ticker is not None:
                await session.ticker.wait_closed()

    async def _cycle(self, session: PollSession) -> None:
        sequence = session.next_sequence()
        try:
            result = await self._orchestrator.get(session.dataset)
            update = PollUpdate(
                session=session.name,
                dataset=session.dataset,
                sequence=sequence,
                timestamp=self._clock.time(),
                payload=result.payload,
                source=result.source,
                stale=result.stale,
                error=result.error,
            )
        except Exception as exc:
            logger.exception("poll.cycle.failed", extra={"session": session.name, "sequence": sequence})
            update = PollUpdate(
                session=session.name,
                dataset=session.dataset,
                sequence=sequence,
                timestamp=self._clock.time(),
                source=SOURCE_CACHE,
                error=str(exc) or exc.__class__.__name__,
            )

        if update.error is not None:
            session.errors += 1
        if self._metrics is not None:
            await self._metrics.record_poll_cycle(failed=update.error is not None)

        if session.stopped and self.late_results is LateResultPolicy.DROP:
            session.dropped += 1
            logger.info("poll.update.dropped_late", extra={"session": session.name, "sequence": sequence})
            return
        await self._deliver(session, update)

    async def _deliver(self, session: PollSession, update: PollUpdate) -> None:
        try:
            outcome = session.callback(update)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception(
                "poll.callback.failed",
                extra={"session": session.name, "sequence": update.sequence},
            )
            return
        session.delivered += 1


__all__ = [
    "LateResultPolicy",
    "PollCallback",
    "PollSession",
    "PollUpdate",
    "PollingDistributor",
]
