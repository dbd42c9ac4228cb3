"""Persistent dataset cache backed by SQLAlchemy (sqlite+aiosqlite by default).

The cache is a performance optimisation, never the data source of record:
- a store that cannot be opened is reported once and then behaves as empty
- every read/write failure is logged and degrades to "no cached value"
- `put` replaces the whole entry (last write wins per dataset key)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fieldsync.cache.models import Base, CacheMetadata, DatasetEntry
from fieldsync.cache.policy import DatasetRegistry
from fieldsync.core.clock import SYSTEM_CLOCK, Clock, humanize_duration, isoformat
from fieldsync.core.db import create_engine_for, session_factory, session_scope
from fieldsync.core.errors import StorageFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

CACHE_VERSION_KEY = "cache_version"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    timestamp: float


@dataclass(frozen=True)
class CacheEntryStats:
    """Diagnostics row for one cached dataset."""

    dataset_type: str
    timestamp: float
    age_seconds: float
    age: str
    size: int
    expires_at: float
    expires: str

    def as_dict(self) -> dict:
        return {
            "dataset_type": self.dataset_type,
            "timestamp": isoformat(self.timestamp),
            "age": self.age,
            "size": self.size,
            "expires_at": isoformat(self.expires_at),
            "expires": self.expires,
        }


def _encode(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, default=str, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise StorageFailure(f"payload is not serialisable: {exc}") from exc


def _decode(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise StorageFailure(f"corrupt cached payload: {exc}") from exc


class PersistentCacheStore:
    def __init__(
        self,
        url: str,
        *,
        registry: Optional[DatasetRegistry] = None,
        clock: Clock = SYSTEM_CLOCK,
        cache_version: str = "1",
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.url = url
        self.registry = registry or DatasetRegistry()
        self.cache_version = cache_version
        self._clock = clock
        self._engine = engine
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None
        self._open_lock = asyncio.Lock()
        self._open_attempted = False
        self.open_error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self._sessions is not None

    async def open(self) -> bool:
        """Open the database and create tables. Never raises."""

        async with self._open_lock:
            if self._open_attempted:
                return self.available
            self._open_attempted = True
            try:
                if self._engine is None:
                    self._engine = create_engine_for(self.url)
                async with self._engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
                self._sessions = session_factory(self._engine)
                await self._check_version()
            except (SQLAlchemyError, OSError, RuntimeError, StorageFailure) as exc:
                self._sessions = None
                self.open_error = str(exc)
                logger.error(
                    "cache.store.open_failed; continuing without persistent cache",
                    exc_info=True,
                    extra={"url": self.url},
                )
                return False
        logger.info("cache.store.opened", extra={"url": self.url, "version": self.cache_version})
        return True

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None
        self._open_attempted = False

    async def _check_version(self) -> None:
        stored = await self._read_meta(CACHE_VERSION_KEY)
        if stored == self.cache_version:
            return
        if stored is not None:
            async with self._session() as session:
                result = await session.execute(delete(DatasetEntry))
                await session.commit()
            logger.warning(
                "cache.store.version_changed; dropped %s entries",
                result.rowcount,
                extra={"previous": stored, "current": self.cache_version},
            )
        await self._write_meta(CACHE_VERSION_KEY, self.cache_version)

    def _session(self):
        if self._sessions is None:
            raise StorageFailure("persistent cache is not open")
        return session_scope(self._sessions)

    async def _guarded(self, operation: str, func: Callable[[], Awaitable[T]], default: T) -> T:
        if not self._open_attempted:
            await self.open()
        if not self.available:
            logger.debug("cache.store.unavailable", extra={"operation": operation})
            return default
        try:
            return await func()
        except (SQLAlchemyError, OSError, StorageFailure):
            logger.warning("cache.store.%s_failed", operation, exc_info=True)
            return default

    # Entries ----------------------------------------------------------------

    def is_valid(self, entry: Optional[CacheEntry], dataset_type: str) -> bool:
        """True iff the entry is strictly younger than the dataset TTL."""

        if entry is None:
            return False
        age = self._clock.time() - entry.timestamp
        return age < self.registry.ttl(dataset_type)

    async def get(self, dataset_type: str) -> Optional[CacheEntry]:
        """Return the stored entry regardless of age, or None."""

        async def _get() -> Optional[CacheEntry]:
            async with self._session() as session:
                row = await session.get(DatasetEntry, dataset_type)
                if row is None:
                    return None
                return CacheEntry(key=row.key, payload=_decode(row.payload), timestamp=row.timestamp)

        return await self._guarded("get", _get, None)

    async def get_valid(self, dataset_type: str) -> Optional[CacheEntry]:
        entry = await self.get(dataset_type)
        if entry is None:
            logger.debug("cache.store.miss", extra={"dataset": dataset_type})
            return None
        if not self.is_valid(entry, dataset_type):
            logger.info(
                "cache.store.expired",
                extra={"dataset": dataset_type, "age": humanize_duration(self._clock.time() - entry.timestamp)},
            )
            return None
        return entry

    async def put(self, dataset_type: str, payload: Any) -> Optional[CacheEntry]:
        """Replace the entry for `dataset_type`, stamped with the current time."""

        async def _put() -> CacheEntry:
            encoded = _encode(payload)
            timestamp = self._clock.time()
            async with self._session() as session:
                await session.merge(
                    DatasetEntry(
                        key=dataset_type,
                        dataset_type=dataset_type,
                        timestamp=timestamp,
                        payload=encoded,
                    )
                )
                await session.commit()
            logger.info(
                "cache.store.put",
                extra={"dataset": dataset_type, "size": self.registry.get(dataset_type).size(payload)},
            )
            return CacheEntry(key=dataset_type, payload=payload, timestamp=timestamp)

        return await self._guarded("put", _put, None)

    async def clear_expired(self) -> int:
        """Delete every invalid entry; returns how many were removed."""

        async def _clear() -> int:
            removed = 0
            async with self._session() as session:
                rows = (
                    await session.execute(
                        select(DatasetEntry.key, DatasetEntry.dataset_type, DatasetEntry.timestamp)
                    )
                ).all()
                for key, dataset_type, timestamp in rows:
                    entry = CacheEntry(key=key, payload=None, timestamp=timestamp)
                    if self.is_valid(entry, dataset_type):
                        continue
                    await session.execute(delete(DatasetEntry).where(DatasetEntry.key == key))
                    removed += 1
                    logger.info("cache.store.cleared_expired", extra={"dataset": dataset_type})
                await session.commit()
            return removed

        return await self._guarded("clear_expired", _clear, 0)

    async def clear_all(self) -> int:
        async def _clear() -> int:
            async with self._session() as session:
                result = await session.execute(delete(DatasetEntry))
                await session.commit()
            logger.warning("cache.store.cleared_all", extra={"removed": result.rowcount})
            return int(result.rowcount or 0)

        return await self._guarded("clear_all", _clear, 0)

    async def stats(self) -> List[CacheEntryStats]:
        async def _stats() -> List[CacheEntryStats]:
            now = self._clock.time()
            async with self._session() as session:
                rows = (await session.execute(select(DatasetEntry).order_by(DatasetEntry.key))).scalars().all()
            result: List[CacheEntryStats] = []
            for row in rows:
                spec = self.registry.get(row.dataset_type)
                expires_at = row.timestamp + spec.ttl_seconds
                remaining = expires_at - now
                try:
                    size = spec.size(_decode(row.payload))
                except StorageFailure:
                    size = 0
                result.append(
                    CacheEntryStats(
                        dataset_type=row.dataset_type,
                        timestamp=row.timestamp,
                        age_seconds=now - row.timestamp,
                        age=humanize_duration(now - row.timestamp),
                        size=size,
                        expires_at=expires_at,
                        expires="Expired" if remaining <= 0 else f"Expires in {humanize_duration(remaining)}",
                    )
                )
            return result

        return await self._guarded("stats", _stats, [])

    async def usage_bytes(self) -> int:
        """Approximate storage used by cached payloads."""

        async def _usage() -> int:
            async with self._session() as session:
                total = await session.scalar(
                    select(func.coalesce(func.sum(func.length(DatasetEntry.payload)), 0))
                )
            return int(total or 0)

        return await self._guarded("usage", _usage, 0)

    # Metadata ---------------------------------------------------------------

    async def _read_meta(self, key: str) -> Optional[str]:
        async with self._session() as session:
            row = await session.get(CacheMetadata, key)
            return row.value if row is not None else None

    async def _write_meta(self, key: str, value: str) -> None:
        async with self._session() as session:
            await session.merge(CacheMetadata(key=key, value=value))
            await session.commit()

    async def get_meta(self, key: str) -> Optional[str]:
        return await self._guarded("get_meta", lambda: self._read_meta(key), None)


__all__ = ["CacheEntry", "CacheEntryStats", "PersistentCacheStore"]
