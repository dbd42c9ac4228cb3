"""JSON-RPC transport for the telemetry API.

The transport only speaks the wire protocol and maps failures onto the
shared error taxonomy; retries, cooldowns and timeouts belong to the client.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from fieldsync.core.errors import AuthenticationFailure, NetworkFailure, RateLimitExceeded
from fieldsync.remote.schemas import Credentials, RpcError

logger = logging.getLogger(__name__)

RATE_LIMIT_ERRORS = frozenset({"OverLimitException"})
AUTH_ERRORS = frozenset(
    {
        "InvalidUserException",
        "InvalidSessionException",
        "SessionExpiredException",
        "DbUnavailableException",
    }
)


class RemoteTransport(Protocol):
    async def authenticate(self, database: str, username: str, password: str) -> Credentials:
        """Exchange a password for session credentials."""

    async def call(self, method: str, params: Dict[str, Any], credentials: Credentials) -> Any:
        """Invoke `method` and return its `result` member."""

    async def close(self) -> None:
        ...


def raise_for_rpc_error(error: Any) -> None:
    """Translate a JSON-RPC `error` member into a taxonomy exception."""

    parsed = RpcError.model_validate(error if isinstance(error, dict) else {"message": str(error)})
    names = set(parsed.names())
    message = parsed.message or ", ".join(sorted(names)) or "remote error"
    if names & RATE_LIMIT_ERRORS:
        raise RateLimitExceeded(message)
    if names & AUTH_ERRORS:
        raise AuthenticationFailure(message)
    raise NetworkFailure(message)


def _retry_after(headers: Any) -> Optional[float]:
    raw = headers.get("Retry-After") if headers is not None else None
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def _server_url(base_url: str, path: Optional[str]) -> str:
    # The login response names the server that owns the database.
    if not path or path == "ThisServer":
        return base_url
    parts = urlsplit(base_url)
    return urlunsplit((parts.scheme or "https", path, parts.path, "", ""))


class JsonRpcTransport:
    def __init__(self, url: str, *, timeout: float = 30.0) -> None:
        self._base_url = url.rstrip("/")
        self._url = self._base_url
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def url(self) -> str:
        return self._url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _post(self, url: str, method: str, params: Dict[str, Any]) -> Any:
        session = self._get_session()
        try:
            async with session.post(url, json={"method": method, "params": params}) as resp:
                if resp.status == 429:
                    raise RateLimitExceeded(
                        f"{method}: HTTP 429", retry_after=_retry_after(resp.headers)
                    )
                if resp.status in (401, 403):
                    raise AuthenticationFailure(f"{method}: HTTP {resp.status}")
                if resp.status >= 400:
                    text = await resp.text()
                    raise NetworkFailure(f"{method}: HTTP {resp.status}: {text[:500]}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise NetworkFailure(f"{method}: invalid JSON response") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkFailure(f"{method}: {exc.__class__.__name__}: {exc}") from exc

        if not isinstance(data, dict):
            raise NetworkFailure(f"{method}: unexpected response envelope")
        if data.get("error"):
            raise_for_rpc_error(data["error"])
        return data.get("result")

    async def authenticate(self, database: str, username: str, password: str) -> Credentials:
        result = await self._post(
            self._base_url,
            "Authenticate",
            {"database": database, "userName": username, "password": password},
        )
        if not isinstance(result, dict) or not result.get("credentials"):
            raise AuthenticationFailure("Authenticate returned no credentials")
        self._url = _server_url(self._base_url, result.get("path"))
        logger.info("remote.transport.authenticated", extra={"server": urlsplit(self._url).netloc})
        return Credentials.model_validate(result["credentials"])

    async def call(self, method: str, params: Dict[str, Any], credentials: Credentials) -> Any:
        payload = dict(params)
        payload["credentials"] = credentials.as_params()
        return await self._post(self._url, method, payload)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


__all__ = [
    "AUTH_ERRORS",
    "JsonRpcTransport",
    "RATE_LIMIT_ERRORS",
    "RemoteTransport",
    "raise_for_rpc_error",
]
