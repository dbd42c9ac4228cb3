"""Build the sync object graph once and hand it out explicitly.

`build_container()` wires settings -> store/memory tiers -> remote client ->
orchestrator -> poller -> quota monitor. Nothing here is a module-level
singleton: callers keep the returned `SyncContainer` and tear it down with
`shutdown()`; `reset()` wipes cached state between test cases.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncEngine

from fieldsync.cache.policy import DatasetRegistry
from fieldsync.cache.quota import QuotaMonitor, StoreUsageEstimator
from fieldsync.cache.store import PersistentCacheStore
from fieldsync.core.clock import SYSTEM_CLOCK, Clock, Sleeper, default_sleep
from fieldsync.core.errors import ConfigurationMissing
from fieldsync.core.metrics import SyncMetrics
from fieldsync.core.microcache import MemoryCache
from fieldsync.core.settings import Settings, get_settings
from fieldsync.remote.client import RemoteDataClient
from fieldsync.remote.transport import RemoteTransport
from fieldsync.sync.orchestrator import FetchOrchestrator
from fieldsync.sync.polling import LateResultPolicy, PollingDistributor
from fieldsync.sync.singleflight import SingleFlight

logger = logging.getLogger(__name__)


@dataclass
class SyncContainer:
    settings: Settings
    clock: Clock
    metrics: SyncMetrics
    registry: DatasetRegistry
    store: PersistentCacheStore
    memory: MemoryCache
    client: Optional[RemoteDataClient]
    orchestrator: FetchOrchestrator
    poller: PollingDistributor
    quota: QuotaMonitor
    scheduler: Optional[AsyncIOScheduler] = None
    started: bool = False

    async def start(self, *, monitor_quota: bool = True) -> None:
        if self.started:
            return
        await self.store.open()
        if monitor_quota:
            self.quota.start_monitoring(self.settings.quota_interval)
        self.started = True
        logger.info(
            "fieldsync.started",
            extra={
                "environment": self.settings.environment,
                "remote": self.client is not None,
                "mock_mode": self.settings.remote.mock_mode,
                "persistent_cache": self.store.available,
            },
        )

    async def shutdown(self) -> None:
        self.poller.stop_all()
        await self.poller.wait_closed()
        self.quota.stop_monitoring()
        await self.quota.wait_closed()
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self.client is not None:
            await self.client.close()
        await self.store.close()
        self.started = False
        logger.info("fieldsync.stopped")

    async def reset(self) -> None:
        """Drop cached data, counters and auth state."""

        self.memory.clear()
        await self.store.clear_all()
        await self.metrics.reset()
        if self.client is not None:
            self.client.auth.reset()


def build_client(
    settings: Settings,
    *,
    transport: Optional[RemoteTransport] = None,
    clock: Clock = SYSTEM_CLOCK,
    sleep: Sleeper = default_sleep,
    metrics: Optional[SyncMetrics] = None,
) -> Optional[RemoteDataClient]:
    """Return a client, or None when the remote source is off or unconfigured."""

    try:
        return RemoteDataClient(
            settings.remote,
            transport=transport,
            clock=clock,
            sleep=sleep,
            metrics=metrics,
        )
    except ConfigurationMissing as exc:
        level = logging.WARNING if settings.remote.enabled else logging.INFO
        logger.log(level, "remote.client.disabled: %s", exc)
        return None


def build_container(
    settings: Optional[Settings] = None,
    *,
    clock: Clock = SYSTEM_CLOCK,
    sleep: Sleeper = default_sleep,
    transport: Optional[RemoteTransport] = None,
    scheduler: Optional[AsyncIOScheduler] = None,
    use_scheduler: bool = True,
    engine: Optional[AsyncEngine] = None,
    registry: Optional[DatasetRegistry] = None,
) -> SyncContainer:
    settings = settings or get_settings()
    metrics = SyncMetrics()
    registry = registry or DatasetRegistry()
    store = PersistentCacheStore(
        settings.cache_url,
        registry=registry,
        clock=clock,
        cache_version=settings.cache_version,
        engine=engine,
    )
    memory = MemoryCache(ttl_seconds=settings.memory_ttl_seconds, clock=clock)
    client = build_client(settings, transport=transport, clock=clock, sleep=sleep, metrics=metrics)
    orchestrator = FetchOrchestrator(
        store,
        memory,
        client=client,
        registry=registry,
        single_flight=SingleFlight(metrics=metrics),
        metrics=metrics,
        clock=clock,
    )
    late_results = LateResultPolicy.DELIVER if settings.deliver_late_results else LateResultPolicy.DROP
    poller = PollingDistributor(
        orchestrator,
        clock=clock,
        sleep=sleep,
        metrics=metrics,
        late_results=late_results,
    )
    if scheduler is None and use_scheduler:
        scheduler = AsyncIOScheduler(timezone="UTC")
    quota = QuotaMonitor(
        store,
        StoreUsageEstimator(store, settings.quota_bytes),
        scheduler=scheduler,
        metrics=metrics,
        sleep=sleep,
    )
    return SyncContainer(
        settings=settings,
        clock=clock,
        metrics=metrics,
        registry=registry,
        store=store,
        memory=memory,
        client=client,
        orchestrator=orchestrator,
        poller=poller,
        quota=quota,
        scheduler=scheduler,
    )


__all__ = ["SyncContainer", "build_client", "build_container"]
