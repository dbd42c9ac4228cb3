"""Process-local cache tier with a short TTL.

Absorbs bursts of near-simultaneous reads without touching the persistent
store. Expired entries are kept (not evicted on read) so they can still be
served as stale fallback when the network is unavailable; eviction is
clear-on-pressure only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fieldsync.core.clock import SYSTEM_CLOCK, Clock

_MAX_ITEMS = 256


@dataclass(frozen=True)
class MemoryCacheEntry:
    key: str
    payload: Any
    timestamp: float


class MemoryCache:
    def __init__(
        self,
        *,
        ttl_seconds: float = 30.0,
        clock: Clock = SYSTEM_CLOCK,
        max_items: int = _MAX_ITEMS,
    ) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._max_items = max(1, max_items)
        self._entries: Dict[str, MemoryCacheEntry] = {}

    def get(self, key: str) -> Optional[MemoryCacheEntry]:
        """Return the latest entry for `key` regardless of age."""
        return self._entries.get(key)

    def get_fresh(self, key: str) -> Optional[MemoryCacheEntry]:
        entry = self._entries.get(key)
        if entry is None or not self.is_fresh(entry):
            return None
        return entry

    def is_fresh(self, entry: MemoryCacheEntry) -> bool:
        return (self._clock.time() - entry.timestamp) < self.ttl_seconds

    def put(self, key: str, payload: Any) -> MemoryCacheEntry:
        if key not in self._entries and len(self._entries) >= self._max_items:
            self._entries.clear()
        entry = MemoryCacheEntry(key=key, payload=payload, timestamp=self._clock.time())
        self._entries[key] = entry
        return entry

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["MemoryCache", "MemoryCacheEntry"]
