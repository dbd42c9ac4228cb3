"""Persistent dataset cache, TTL catalogue and storage quota monitor."""

from .policy import DEFAULT_DATASETS, DatasetRegistry, DatasetSpec, PayloadKind
from .quota import QuotaMonitor, QuotaReport, StorageEstimate, StoreUsageEstimator
from .store import CacheEntry, CacheEntryStats, PersistentCacheStore

__all__ = [
    "CacheEntry",
    "CacheEntryStats",
    "DEFAULT_DATASETS",
    "DatasetRegistry",
    "DatasetSpec",
    "PayloadKind",
    "PersistentCacheStore",
    "QuotaMonitor",
    "QuotaReport",
    "StorageEstimate",
    "StoreUsageEstimator",
]
