"""Authenticated, rate-limit aware client for the telemetry API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from fieldsync.core.clock import SYSTEM_CLOCK, Clock, Sleeper, default_sleep
from fieldsync.core.error_handler import cancel_tasks, safe_background_task
from fieldsync.core.errors import (
    AuthenticationFailure,
    ConfigurationMissing,
    NetworkFailure,
    NotAuthenticatedError,
    RateLimitExceeded,
    SyncError,
)
from fieldsync.core.metrics import SyncMetrics
from fieldsync.core.settings import RemoteSettings
from fieldsync.remote.auth import AuthState, AuthStateMachine, FailureDecision
from fieldsync.remote.mock import MockTransport
from fieldsync.remote.schemas import Credentials
from fieldsync.remote.transport import JsonRpcTransport, RemoteTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _TokenBucket:
    def __init__(self, rate_per_sec: float, capacity: int, *, clock: Clock, sleep: Sleeper) -> None:
        self._rate = max(rate_per_sec, 0.1)
        self._capacity = float(max(1, capacity))
        self._tokens = self._capacity
        self._clock = clock
        self._sleep = sleep
        self._updated = clock.monotonic()
        self._lock = asyncio.Lock()

    async def consume(self, tokens: float = 1.0) -> None:
        tokens = max(tokens, 0.0)
        while True:
            async with self._lock:
                now = self._clock.monotonic()
                delta = now - self._updated
                if delta > 0:
                    self._tokens = min(self._capacity, self._tokens + delta * self._rate)
                    self._updated = now
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return
                deficit = tokens - self._tokens
                wait_time = deficit / self._rate
            await self._sleep(max(wait_time, 0.05))


class RemoteDataClient:
    """Wraps a `RemoteTransport` with the auth state machine.

    `call()` never queues: it fails with `NotAuthenticatedError` unless the
    client is authenticated. Failed logins schedule their own retries
    (exponential backoff, or a fixed cooldown after a rate limit) when
    `auto_retry` is on.
    """

    def __init__(
        self,
        settings: RemoteSettings,
        *,
        transport: Optional[RemoteTransport] = None,
        clock: Clock = SYSTEM_CLOCK,
        sleep: Sleeper = default_sleep,
        metrics: Optional[SyncMetrics] = None,
        auto_retry: bool = True,
    ) -> None:
        if not settings.enabled:
            raise ConfigurationMissing("remote API is disabled")
        if not settings.mock_mode and not settings.has_credentials:
            raise ConfigurationMissing(
                "remote credentials are missing; set FIELDSYNC_REMOTE_DATABASE, "
                "FIELDSYNC_REMOTE_USERNAME and FIELDSYNC_REMOTE_PASSWORD"
            )
        self.settings = settings
        if transport is None:
            if settings.mock_mode:
                transport = MockTransport(clock=clock)
            else:
                transport = JsonRpcTransport(settings.url, timeout=settings.call_timeout)
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self.auto_retry = auto_retry
        self.auth = AuthStateMachine(
            clock=clock,
            cooldown_seconds=settings.cooldown_seconds,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
        )
        self._credentials: Optional[Credentials] = None
        self._auth_lock = asyncio.Lock()
        self._retry_task: Optional[asyncio.Task] = None
        self._bucket: Optional[_TokenBucket] = None
        if settings.rate_limit_per_sec > 0:
            self._bucket = _TokenBucket(
                settings.rate_limit_per_sec,
                capacity=max(1, int(settings.rate_limit_per_sec)),
                clock=clock,
                sleep=sleep,
            )
        self.last_error: Optional[SyncError] = None
        self.last_success_at: Optional[float] = None
        self._closed = False

    @property
    def state(self) -> AuthState:
        return self.auth.state

    @property
    def mock_mode(self) -> bool:
        return self.settings.mock_mode

    def is_rate_limited(self) -> bool:
        return self.auth.is_rate_limited()

    async def _with_timeout(self, coro: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.settings.call_timeout)
        except asyncio.TimeoutError as exc:
            raise NetworkFailure(f"{what} timed out after {self.settings.call_timeout:.0f}s") from exc

    # Authentication ---------------------------------------------------------

    async def authenticate(self) -> bool:
        """Attempt one login. Returns True once authenticated.

        Refuses (returns False) while rate limited, or once retries are
        exhausted; `reinitialize()` is the only way out of the latter.
        """

        if self.auth.terminal:
            logger.warning("remote.auth.terminal; call reinitialize() to retry")
            return False
        return await self._attempt()

    async def _attempt(self, *, scheduled: bool = False) -> bool:
        async with self._auth_lock:
            if self.auth.state is AuthState.AUTHENTICATED:
                return True
            if self.auth.terminal:
                return False
            # A caller queued behind a failed login waits out its backoff.
            if not scheduled and self.auth.backoff_remaining() > 0:
                logger.debug(
                    "remote.auth.skipped_backoff",
                    extra={"retry_in": round(self.auth.backoff_remaining(), 1)},
                )
                return False
            if self.auth.is_rate_limited():
                logger.info(
                    "remote.auth.skipped_rate_limited",
                    extra={"cooldown_remaining": round(self.auth.cooldown_remaining(), 1)},
                )
                return False

            self.auth.begin()
            logger.info("remote.auth.started", extra={"attempt": self.auth.retry_count + 1})
            try:
                self._credentials = await self._with_timeout(
                    self._transport.authenticate(
                        self.settings.database,
                        self.settings.username,
                        self.settings.password,
                    ),
                    "Authenticate",
                )
            except asyncio.CancelledError:
                self._credentials = None
                self.auth.abort()
                logger.info("remote.auth.cancelled")
                raise
            except Exception as exc:
                error = exc if isinstance(exc, SyncError) else NetworkFailure(f"Authenticate: {exc}")
                self._credentials = None
                self.last_error = error
                decision = self.auth.fail(error)
                await self._after_auth_failure(error, decision)
                return False

            self.auth.succeed()
            self.last_error = None
            logger.info("remote.auth.succeeded", extra={"mock_mode": self.mock_mode})
            return True

    async def _after_auth_failure(self, error: SyncError, decision: FailureDecision) -> None:
        if isinstance(error, RateLimitExceeded):
            logger.warning(
                "remote.auth.rate_limited",
                extra={"cooldown": decision.retry_in},
            )
            if self._metrics is not None:
                await self._metrics.record_rate_limit()
        elif decision.terminal:
            logger.error(
                "remote.auth.failed; retries exhausted",
                extra={"retries": self.auth.retry_count - 1, "error": str(error)},
            )
        else:
            logger.warning(
                "remote.auth.failed",
                extra={
                    "retry_count": self.auth.retry_count,
                    "retry_in": decision.retry_in,
                    "error": str(error),
                },
            )
        if decision.retry_in is not None:
            self._schedule_retry(decision.retry_in)

    def _schedule_retry(self, delay: float) -> None:
        if not self.auto_retry or self._closed:
            return
        current = asyncio.current_task()
        if self._retry_task is not None and not self._retry_task.done() and self._retry_task is not current:
            self._retry_task.cancel()
        self._retry_task = safe_background_task("remote:auth_retry", self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._closed or self.auth.terminal:
            return
        await self._attempt(scheduled=True)

    async def wait_for_retries(self) -> None:
        """Wait until no automatic retry is pending (test and shutdown helper)."""

        while self._retry_task is not None and not self._retry_task.done():
            task = self._retry_task
            try:
                await task
            except asyncio.CancelledError:
                if task is self._retry_task:
                    raise

    async def ensure_authenticated(self) -> None:
        """Authenticate if needed, or raise the error that prevents it."""

        if self.auth.state is AuthState.AUTHENTICATED:
            return
        if self.auth.is_rate_limited():
            raise RateLimitExceeded(
                "remote API rate limit cooldown in progress",
                retry_after=self.auth.cooldown_remaining(),
            )
        if self.auth.terminal:
            raise AuthenticationFailure(
                f"authentication failed after {self.auth.max_retries} retries: {self.last_error}"
            )
        remaining = self.auth.backoff_remaining()
        if remaining > 0:
            raise AuthenticationFailure(f"authentication retry scheduled in {remaining:.0f}s: {self.last_error}")
        if not await self._attempt():
            raise self.last_error or AuthenticationFailure("authentication failed")

    async def reinitialize(self) -> bool:
        """Clear the retry state and authenticate from scratch."""

        await cancel_tasks([self._retry_task])
        self._retry_task = None
        self.auth.reset()
        self._credentials = None
        self.last_error = None
        logger.info("remote.client.reinitialized")
        return await self._attempt()

    # Calls ------------------------------------------------------------------

    async def call(self, operation: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self.auth.state is not AuthState.AUTHENTICATED or self._credentials is None:
            raise NotAuthenticatedError(self.auth.state.value)
        if self._bucket is not None:
            await self._bucket.consume()
        try:
            result = await self._with_timeout(
                self._transport.call(operation, dict(params or {}), self._credentials),
                operation,
            )
        except SyncError as exc:
            self.last_error = exc
            decision = self.auth.call_failed(exc) if self.auth.state is AuthState.AUTHENTICATED else None
            if decision is not None:
                if isinstance(exc, RateLimitExceeded):
                    logger.warning("remote.call.rate_limited", extra={"operation": operation})
                    if self._metrics is not None:
                        await self._metrics.record_rate_limit()
                else:
                    logger.warning("remote.call.session_lost", extra={"operation": operation})
                    self._credentials = None
                if decision.retry_in is not None:
                    self._schedule_retry(decision.retry_in)
            raise
        self.last_success_at = self._clock.time()
        return result

    async def get_devices(self) -> List[Any]:
        return await self.call("Get", {"typeName": "Device"})

    async def get_device_statuses(self, device_ids: Optional[List[str]] = None) -> List[Any]:
        params: Dict[str, Any] = {"typeName": "DeviceStatusInfo"}
        if device_ids:
            params["search"] = {"deviceSearch": {"id": list(device_ids)}}
        return await self.call("Get", params)

    # Diagnostics ------------------------------------------------------------

    async def test_connection(self) -> Dict[str, Any]:
        try:
            await self.ensure_authenticated()
            devices = await self.get_devices()
        except SyncError as exc:
            return {"success": False, "message": str(exc), "mock_mode": self.mock_mode}
        count = len(devices or [])
        return {
            "success": True,
            "message": f"Connected successfully. Found {count} devices.",
            "device_count": count,
            "mock_mode": self.mock_mode,
        }

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.settings.enabled,
            "mock_mode": self.mock_mode,
            "authenticated": self.auth.state is AuthState.AUTHENTICATED,
            "auth": self.auth.snapshot(),
            "rate_limited": self.auth.state is AuthState.RATE_LIMITED,
            "retry_pending": self._retry_task is not None and not self._retry_task.done(),
            "last_success_at": self.last_success_at,
            "last_error": str(self.last_error) if self.last_error else None,
            "config": {
                "refresh_interval": self.settings.refresh_interval,
                "call_timeout": self.settings.call_timeout,
                "max_retries": self.settings.max_retries,
                "retry_base_delay": self.settings.retry_base_delay,
            },
        }

    async def close(self) -> None:
        self._closed = True
        await cancel_tasks([self._retry_task])
        self._retry_task = None
        await self._transport.close()


__all__ = ["RemoteDataClient"]
