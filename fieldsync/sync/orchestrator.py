"""Freshness-aware fetch: cache tiers first, network on miss, stale on failure.

Lookup order for a dataset:
1. persistent cache entry younger than the dataset TTL
2. memory cache entry younger than the memory TTL
3. single-flight network fetch, written to both tiers on success
4. on failure: newest memory entry, else newest persistent entry (any age),
   tagged stale; else the dataset's empty value, with the error attached

`get()` never raises.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fieldsync.cache.policy import DatasetRegistry
from fieldsync.cache.store import PersistentCacheStore
from fieldsync.core.clock import SYSTEM_CLOCK, Clock, isoformat
from fieldsync.core.errors import SyncError
from fieldsync.core.metrics import SyncMetrics
from fieldsync.core.microcache import MemoryCache
from fieldsync.remote.client import RemoteDataClient
from fieldsync.remote.schemas import parse_devices, parse_statuses
from fieldsync.sync.assets import build_asset_records
from fieldsync.sync.singleflight import SingleFlight

logger = logging.getLogger(__name__)

SOURCE_NETWORK = "network"
SOURCE_CACHE = "cache"
VEHICLES = "vehicles"

Fetcher = Callable[[RemoteDataClient], Awaitable[Any]]


@dataclass(frozen=True)
class FetchResult:
    dataset: str
    payload: Any
    source: str
    timestamp: float
    stale: bool = False
    error: Optional[str] = None
    tier: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dataset": self.dataset,
            "payload": self.payload,
            "source": self.source,
            "timestamp": isoformat(self.timestamp),
            "stale": self.stale,
            "error": self.error,
        }


def vehicles_fetcher(clock: Clock = SYSTEM_CLOCK) -> Fetcher:
    """Fetch devices and statuses together and join them into asset dicts."""

    async def fetch(client: RemoteDataClient) -> list:
        devices, statuses = await asyncio.gather(
            client.get_devices(),
            client.get_device_statuses(),
            return_exceptions=True,
        )
        for outcome in (devices, statuses):
            if isinstance(outcome, BaseException):
                raise outcome
        records = build_asset_records(
            parse_devices(devices),
            parse_statuses(statuses),
            now_iso=isoformat(clock.time()),
        )
        return [record.model_dump() for record in records]

    return fetch


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class FetchOrchestrator:
    def __init__(
        self,
        store: PersistentCacheStore,
        memory: MemoryCache,
        *,
        client: Optional[RemoteDataClient] = None,
        registry: Optional[DatasetRegistry] = None,
        single_flight: Optional[SingleFlight] = None,
        metrics: Optional[SyncMetrics] = None,
        clock: Clock = SYSTEM_CLOCK,
        fetchers: Optional[Dict[str, Fetcher]] = None,
    ) -> None:
        self.store = store
        self.memory = memory
        self.client = client
        self.registry = registry or store.registry
        self.metrics = metrics
        self.single_flight = single_flight or SingleFlight(metrics=metrics)
        self._clock = clock
        self._fetchers: Dict[str, Fetcher] = {VEHICLES: vehicles_fetcher(clock)}
        self._fetchers.update(fetchers or {})

    @property
    def remote_enabled(self) -> bool:
        return self.client is not None

    def register_fetcher(self, dataset: str, fetcher: Fetcher) -> None:
        self._fetchers[dataset] = fetcher

    async def get(self, dataset: str) -> FetchResult:
        try:
            return await self._get(dataset)
        except Exception as exc:
            # Last line of defence; callers always receive a result.
            logger.exception("sync.fetch.unexpected_error", extra={"dataset": dataset})
            return await self._fallback(dataset, exc)

    async def _get(self, dataset: str) -> FetchResult:
        entry = await self.store.get_valid(dataset)
        if entry is not None:
            await self._record_hit("persistent")
            return FetchResult(dataset, entry.payload, SOURCE_CACHE, entry.timestamp, tier="persistent")

        cached = self.memory.get_fresh(dataset)
        if cached is not None:
            await self._record_hit("memory")
            return FetchResult(dataset, cached.payload, SOURCE_CACHE, cached.timestamp, tier="memory")

        if self.metrics is not None:
            await self.metrics.record_cache_miss()

        if self.client is None:
            return await self._fallback(dataset, SyncError("remote data source is not configured"))
        fetcher = self._fetchers.get(dataset)
        if fetcher is None:
            return await self._fallback(dataset, SyncError(f"no remote fetcher for dataset '{dataset}'"))

        return await self._network(dataset, self.client, fetcher)

    async def refresh(self, dataset: str) -> FetchResult:
        """Skip the valid-cache checks and go to the network (with fallback)."""

        fetcher = self._fetchers.get(dataset)
        if self.client is None or fetcher is None:
            return await self.get(dataset)
        return await self._network(dataset, self.client, fetcher)

    async def _network(self, dataset: str, client: RemoteDataClient, fetcher: Fetcher) -> FetchResult:
        try:
            payload, timestamp = await self.single_flight.do(
                dataset, lambda: self._fetch(dataset, client, fetcher)
            )
        except Exception as exc:
            return await self._fallback(dataset, exc)
        return FetchResult(dataset, payload, SOURCE_NETWORK, timestamp)

    async def _fetch(self, dataset: str, client: RemoteDataClient, fetcher: Fetcher) -> Tuple[Any, float]:
        try:
            await client.ensure_authenticated()
            payload = await fetcher(client)
        except Exception as exc:
            logger.warning(
                "sync.fetch.failed",
                extra={"dataset": dataset, "error": _describe(exc), "kind": exc.__class__.__name__},
            )
            if self.metrics is not None:
                await self.metrics.record_network_failure(exc.__class__.__name__)
            raise

        if self.metrics is not None:
            await self.metrics.record_network_fetch()
        memory_entry = self.memory.put(dataset, payload)
        await self.store.put(dataset, payload)
        logger.info(
            "sync.fetch.succeeded",
            extra={"dataset": dataset, "size": self.registry.get(dataset).size(payload)},
        )
        return payload, memory_entry.timestamp

    async def _fallback(self, dataset: str, exc: BaseException) -> FetchResult:
        error = _describe(exc)
        cached = self.memory.get(dataset)
        if cached is not None:
            await self._record_fallback(dataset, error, stale=True)
            return FetchResult(dataset, cached.payload, SOURCE_CACHE, cached.timestamp, True, error, "memory")

        entry = await self.store.get(dataset)
        if entry is not None:
            await self._record_fallback(dataset, error, stale=True)
            return FetchResult(dataset, entry.payload, SOURCE_CACHE, entry.timestamp, True, error, "persistent")

        await self._record_fallback(dataset, error, stale=False)
        empty = self.registry.get(dataset).empty()
        return FetchResult(dataset, empty, SOURCE_CACHE, self._clock.time(), False, error)

    async def _record_hit(self, tier: str) -> None:
        if self.metrics is not None:
            await self.metrics.record_cache_hit(tier)

    async def _record_fallback(self, dataset: str, error: str, *, stale: bool) -> None:
        logger.warning(
            "sync.fetch.fallback",
            extra={"dataset": dataset, "stale": stale, "error": error},
        )
        if self.metrics is not None:
            await self.metrics.record_fallback(stale=stale)


__all__ = [
    "FetchOrchestrator",
    "FetchResult",
    "SOURCE_CACHE",
    "SOURCE_NETWORK",
    "VEHICLES",
    "vehicles_fetcher",
]
