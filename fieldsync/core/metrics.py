"""In-memory counters for the sync pipeline."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Dict


@dataclass
class SyncMetricsSnapshot:
    """Immutable view over sync counters."""

    cache_hits: Dict[str, int]
    cache_misses_total: int
    network_fetch_total: int
    network_failure_total: Dict[str, int]
    stale_served_total: int
    empty_served_total: int
    single_flight_joins_total: int
    rate_limit_total: int
    quota_cleanups: Dict[str, int]
    poll_cycles_total: int
    poll_errors_total: int

    @property
    def cache_hit_rate(self) -> float:
        hits = sum(self.cache_hits.values())
        total = hits + self.cache_misses_total
        if total == 0:
            return 0.0
        return round(hits / total * 100, 2)


class SyncMetrics:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._zero()

    def _zero(self) -> None:
        self._cache_hits: Counter[str] = Counter()
        self._cache_misses = 0
        self._network_fetch = 0
        self._network_failures: Counter[str] = Counter()
        self._stale_served = 0
        self._empty_served = 0
        self._single_flight_joins = 0
        self._rate_limit = 0
        self._quota_cleanups: Counter[str] = Counter()
        self._poll_cycles = 0
        self._poll_errors = 0

    async def record_cache_hit(self, tier: str) -> None:
        async with self._lock:
            self._cache_hits[tier] += 1

    async def record_cache_miss(self) -> None:
        async with self._lock:
            self._cache_misses += 1

    async def record_network_fetch(self) -> None:
        async with self._lock:
            self._network_fetch += 1

    async def record_network_failure(self, kind: str) -> None:
        async with self._lock:
            self._network_failures[kind or "_unknown"] += 1

    async def record_fallback(self, *, stale: bool) -> None:
        async with self._lock:
            if stale:
                self._stale_served += 1
            else:
                self._empty_served += 1

    async def record_single_flight_join(self) -> None:
        async with self._lock:
            self._single_flight_joins += 1

    async def record_rate_limit(self) -> None:
        async with self._lock:
            self._rate_limit += 1

    async def record_quota_cleanup(self, action: str) -> None:
        async with self._lock:
            self._quota_cleanups[action] += 1

    async def record_poll_cycle(self, *, failed: bool) -> None:
        async with self._lock:
            self._poll_cycles += 1
            if failed:
                self._poll_errors += 1

    async def snapshot(self) -> SyncMetricsSnapshot:
        async with self._lock:
            return SyncMetricsSnapshot(
                cache_hits=dict(self._cache_hits),
                cache_misses_total=self._cache_misses,
                network_fetch_total=self._network_fetch,
                network_failure_total=dict(self._network_failures),
                stale_served_total=self._stale_served,
                empty_served_total=self._empty_served,
                single_flight_joins_total=self._single_flight_joins,
                rate_limit_total=self._rate_limit,
                quota_cleanups=dict(self._quota_cleanups),
                poll_cycles_total=self._poll_cycles,
                poll_errors_total=self._poll_errors,
            )

    async def reset(self) -> None:
        async with self._lock:
            self._zero()


__all__ = ["SyncMetrics", "SyncMetricsSnapshot"]
