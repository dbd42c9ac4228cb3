from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)


def _prepare_sqlite_path(url: str) -> None:
    parsed = make_url(url)
    if not (parsed.drivername or "").startswith("sqlite"):
        return
    database = parsed.database or ""
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def create_engine_for(url: str, *, echo: bool = False) -> AsyncEngine:
    """Build an async engine for the cache database."""

    try:
        parsed = make_url(url)
    except ArgumentError as exc:
        raise RuntimeError(f"Invalid cache database URL: {exc}") from exc

    logger.info(
        "Cache database dialect: %s (%s)",
        parsed.drivername,
        parsed.render_as_string(hide_password=True),
    )
    _prepare_sqlite_path(url)
    return create_async_engine(url, echo=echo, future=True)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    session = factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


__all__ = ["create_engine_for", "session_factory", "session_scope"]
