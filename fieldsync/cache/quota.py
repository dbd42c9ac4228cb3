"""Storage quota monitoring with two-stage eviction.

Above 80% usage the expired entries are dropped first; only if usage is still
above 90% afterwards is the whole dataset cache wiped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import SchedulerAlreadyRunningError

from fieldsync.cache.store import PersistentCacheStore
from fieldsync.core.clock import Sleeper, default_sleep
from fieldsync.core.metrics import SyncMetrics
from fieldsync.core.ticker import Ticker

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 300.0
CLEAR_EXPIRED_THRESHOLD = 80.0
CLEAR_ALL_THRESHOLD = 90.0


@dataclass(frozen=True)
class StorageEstimate:
    usage: int
    quota: int

    @property
    def percent_used(self) -> float:
        if self.quota <= 0:
            return 0.0
        return self.usage / self.quota * 100


class StorageEstimator(Protocol):
    async def estimate(self) -> Optional[StorageEstimate]:
        """Sample current usage and capacity, or None if unknown."""


class StoreUsageEstimator:
    """Measures payload bytes held by the store against a fixed budget."""

    def __init__(self, store: PersistentCacheStore, quota_bytes: int) -> None:
        self._store = store
        self._quota = max(1, int(quota_bytes))

    async def estimate(self) -> Optional[StorageEstimate]:
        if not self._store.available and not await self._store.open():
            return None
        return StorageEstimate(usage=await self._store.usage_bytes(), quota=self._quota)


@dataclass(frozen=True)
class QuotaReport:
    usage: int
    quota: int
    percent_used: float
    action: str  # none, cleared_expired, cleared_all
    percent_after: Optional[float] = None


class QuotaMonitor:
    def __init__(
        self,
        store: PersistentCacheStore,
        estimator: StorageEstimator,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        metrics: Optional[SyncMetrics] = None,
        sleep: Sleeper = default_sleep,
    ) -> None:
        self._store = store
        self._estimator = estimator
        self._scheduler = scheduler
        self._metrics = metrics
        self._sleep = sleep
        self._ticker: Optional[Ticker] = None
        self._job_id = "fieldsync:quota_monitor"
        self._scheduled_run: Optional[asyncio.Task] = None
        self.last_report: Optional[QuotaReport] = None

    @property
    def monitoring(self) -> bool:
        if self._scheduler is not None:
            return self._scheduler.get_job(self._job_id) is not None
        return self._ticker is not None and not self._ticker.stopped

    async def _sample(self) -> Optional[StorageEstimate]:
        try:
            return await self._estimator.estimate()
        except Exception:
            logger.exception("quota.check.failed")
            return None

    async def check_quota(self) -> Optional[QuotaReport]:
        estimate = await self._sample()
        if estimate is None:
            logger.debug("quota.check.unsupported")
            return None

        percent = estimate.percent_used
        logger.info(
            "quota.check usage=%.2fMB quota=%.2fMB percent=%.1f",
            estimate.usage / 1024 / 1024,
            estimate.quota / 1024 / 1024,
            percent,
        )
        if percent <= CLEAR_EXPIRED_THRESHOLD:
            report = QuotaReport(estimate.usage, estimate.quota, percent, "none")
            self.last_report = report
            return report

        logger.warning("quota.high percent=%.1f; clearing expired cache", percent)
        await self._store.clear_expired()
        action = "cleared_expired"

        after = await self._sample()
        percent_after = after.percent_used if after is not None else percent
        logger.info("quota.after_cleanup percent=%.1f", percent_after)

        if percent_after > CLEAR_ALL_THRESHOLD:
            logger.warning("quota.critical percent=%.1f; clearing all cache", percent_after)
            await self._store.clear_all()
            action = "cleared_all"

        if self._metrics is not None:
            await self._metrics.record_quota_cleanup(action)
        report = QuotaReport(estimate.usage, estimate.quota, percent, action, percent_after)
        self.last_report = report
        return report

    def start_monitoring(self, interval: float = DEFAULT_INTERVAL_SECONDS) -> None:
        """Check immediately, then every `interval` seconds."""

        self.stop_monitoring()
        if self._scheduler is not None:
            self._scheduler.add_job(
                self._scheduled_check,
                "interval",
                seconds=interval,
                id=self._job_id,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
                misfire_grace_time=max(int(interval), 1),
                next_run_time=datetime.now(timezone.utc),
            )
            if not self._scheduler.running:
                try:
                    self._scheduler.start()
                except SchedulerAlreadyRunningError:
                    pass
        else:
            self._ticker = Ticker(interval, self.check_quota, name="quota_monitor", sleep=self._sleep)
            self._ticker.start()
        logger.info("quota.monitoring.started interval=%.0fs", interval)

    def stop_monitoring(self) -> None:
        """Cancel periodic checks. Idempotent."""

        stopped = False
        if self._scheduler is not None:
            try:
                self._scheduler.remove_job(self._job_id)
                stopped = True
            except JobLookupError:
                pass
        if self._ticker is not None and not self._ticker.stopped:
            self._ticker.stop()
            stopped = True
        if stopped:
            logger.info("quota.monitoring.stopped")

    async def _scheduled_check(self) -> Optional[QuotaReport]:
        self._scheduled_run = asyncio.current_task()
        try:
            return await self.check_quota()
        finally:
            self._scheduled_run = None

    async def wait_closed(self) -> None:
        """Wait for a check that is already running to finish."""

        if self._ticker is not None:
            await self._ticker.wait_closed()
        running = self._scheduled_run
        if running is not None and running is not asyncio.current_task():
            try:
                await running
            except asyncio.CancelledError:
                pass


__all__ = [
    "QuotaMonitor",
    "QuotaReport",
    "StorageEstimate",
    "StorageEstimator",
    "StoreUsageEstimator",
]
