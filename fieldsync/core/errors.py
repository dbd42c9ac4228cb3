"""Error taxonomy shared by the cache, remote and sync layers."""

from __future__ import annotations

from typing import Optional


class SyncError(RuntimeError):
    """Base class for every failure raised inside fieldsync."""


class AuthenticationFailure(SyncError):
    """The remote API rejected the credentials or the session expired."""


class NotAuthenticatedError(AuthenticationFailure):
    """A remote call was attempted while the client is not authenticated."""

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"remote client is not authenticated (state={state})")


class RateLimitExceeded(SyncError):
    """The remote limiter refused the request; retry only after `retry_after`."""

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class NetworkFailure(SyncError):
    """Transport error, HTTP error or timeout talking to the remote API."""


class StorageFailure(SyncError):
    """The persistent cache could not be opened, read or written."""


class ConfigurationMissing(SyncError):
    """Required remote configuration (credentials) is absent."""


__all__ = [
    "AuthenticationFailure",
    "ConfigurationMissing",
    "NetworkFailure",
    "NotAuthenticatedError",
    "RateLimitExceeded",
    "StorageFailure",
    "SyncError",
]
