from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from fieldsync.core.env import load_env


DEFAULT_DATA_DIR = Path.home() / ".fieldsync" / "data"
DEFAULT_REMOTE_URL = "https://my.geotab.com/apiv1"
DEFAULT_QUOTA_BYTES = 50 * 1024 * 1024


@dataclass(frozen=True)
class RemoteSettings:
    """Everything the remote data client consumes, already validated."""

    enabled: bool
    mock_mode: bool
    url: str
    database: str
    username: str
    password: str
    refresh_interval: float
    call_timeout: float
    max_retries: int
    retry_base_delay: float
    rate_limit_window: float
    rate_limit_per_sec: float

    @property
    def has_credentials(self) -> bool:
        return bool(self.database and self.username and self.password)

    @property
    def cooldown_seconds(self) -> float:
        # The remote limiter resets on its own fixed clock; wait out two windows.
        return self.rate_limit_window * 2


@dataclass(frozen=True)
class Settings:
    environment: str  # development, production, staging, test
    data_dir: Path
    cache_url: str
    cache_version: str
    memory_ttl_seconds: float
    quota_bytes: int
    quota_interval: float
    deliver_late_results: bool
    log_level: str
    log_json: bool
    log_file: str
    remote: RemoteSettings


def _get_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


load_env()


def _default_data_dir() -> Path:
    env_dir = os.getenv("DATA_DIR")
    if env_dir and env_dir.strip():
        return Path(env_dir).expanduser()
    return DEFAULT_DATA_DIR


def _normalize_sqlite_url(url: str) -> str:
    if url.startswith("sqlite") and not url.startswith("sqlite+aiosqlite"):
        path = url.split("///", maxsplit=1)[-1]
        return f"sqlite+aiosqlite:///{path}"
    return url


def _remote_settings() -> RemoteSettings:
    return RemoteSettings(
        enabled=_get_bool("FIELDSYNC_REMOTE_ENABLED", default=False),
        mock_mode=_get_bool("FIELDSYNC_MOCK_MODE", default=False),
        url=_get_str("FIELDSYNC_REMOTE_URL", DEFAULT_REMOTE_URL) or DEFAULT_REMOTE_URL,
        database=_get_str("FIELDSYNC_REMOTE_DATABASE"),
        username=_get_str("FIELDSYNC_REMOTE_USERNAME"),
        password=os.getenv("FIELDSYNC_REMOTE_PASSWORD", ""),
        refresh_interval=_get_float("FIELDSYNC_REFRESH_INTERVAL", 30.0, minimum=1.0),
        call_timeout=_get_float("FIELDSYNC_CALL_TIMEOUT", 30.0, minimum=0.1),
        max_retries=_get_int("FIELDSYNC_MAX_RETRIES", 3, minimum=0),
        retry_base_delay=_get_float("FIELDSYNC_RETRY_BASE_DELAY", 5.0, minimum=0.0),
        rate_limit_window=_get_float("FIELDSYNC_RATE_LIMIT_WINDOW", 60.0, minimum=1.0),
        rate_limit_per_sec=_get_float("FIELDSYNC_RATE_LIMIT_PER_SEC", 0.0, minimum=0.0),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    if environment not in {"development", "production", "staging", "test"}:
        environment = "development"

    data_dir = _default_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    cache_url = _get_str("FIELDSYNC_CACHE_URL")
    if not cache_url:
        cache_url = f"sqlite+aiosqlite:///{data_dir / 'cache.db'}"
    cache_url = _normalize_sqlite_url(cache_url)

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_file = _get_str("LOG_FILE")
    if not log_file:
        log_file = str(data_dir / "logs" / "fieldsync.log")

    return Settings(
        environment=environment,
        data_dir=data_dir,
        cache_url=cache_url,
        cache_version=_get_str("FIELDSYNC_CACHE_VERSION", "1") or "1",
        memory_ttl_seconds=_get_float("FIELDSYNC_MEMORY_TTL", 30.0, minimum=0.0),
        quota_bytes=_get_int("FIELDSYNC_QUOTA_BYTES", DEFAULT_QUOTA_BYTES, minimum=1),
        quota_interval=_get_float("FIELDSYNC_QUOTA_INTERVAL", 300.0, minimum=1.0),
        deliver_late_results=_get_bool("FIELDSYNC_DELIVER_LATE_RESULTS", default=True),
        log_level=log_level,
        log_json=_get_bool("LOG_JSON", default=False),
        log_file=log_file,
        remote=_remote_settings(),
    )


__all__ = ["RemoteSettings", "Settings", "get_settings"]
