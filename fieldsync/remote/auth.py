"""Authentication / rate-limit state machine for the remote client.

Every transition is listed in `TRANSITIONS`; anything not listed raises
`InvalidTransition`. Errors are classified into exactly one event:

- `RateLimitExceeded` -> fixed cooldown, retry counter untouched
- anything else while authenticating -> exponential backoff
  (`base_delay * 2 ** (retry_count - 1)`) until `max_retries`, then terminal

A terminal machine never schedules another attempt; only `reset()` (the
client's `reinitialize()`) clears it. A cancelled login goes back to
unauthenticated without counting as a failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from fieldsync.core.clock import SYSTEM_CLOCK, Clock
from fieldsync.core.errors import AuthenticationFailure, RateLimitExceeded, SyncError

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    RATE_LIMITED = "rate_limited"


class AuthEvent(str, Enum):
    BEGIN = "begin"
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FAILURE = "failure"
    COOLDOWN_ELAPSED = "cooldown_elapsed"
    SESSION_LOST = "session_lost"
    CANCELLED = "cancelled"


TRANSITIONS: Mapping[Tuple[AuthState, AuthEvent], AuthState] = MappingProxyType(
    {
        (AuthState.UNAUTHENTICATED, AuthEvent.BEGIN): AuthState.AUTHENTICATING,
        (AuthState.AUTHENTICATING, AuthEvent.SUCCESS): AuthState.AUTHENTICATED,
        (AuthState.AUTHENTICATING, AuthEvent.RATE_LIMITED): AuthState.RATE_LIMITED,
        (AuthState.AUTHENTICATING, AuthEvent.FAILURE): AuthState.UNAUTHENTICATED,
        (AuthState.AUTHENTICATING, AuthEvent.CANCELLED): AuthState.UNAUTHENTICATED,
        (AuthState.AUTHENTICATED, AuthEvent.RATE_LIMITED): AuthState.RATE_LIMITED,
        (AuthState.AUTHENTICATED, AuthEvent.SESSION_LOST): AuthState.UNAUTHENTICATED,
        (AuthState.RATE_LIMITED, AuthEvent.COOLDOWN_ELAPSED): AuthState.UNAUTHENTICATED,
    }
)


class InvalidTransition(SyncError):
    def __init__(self, state: AuthState, event: AuthEvent) -> None:
        self.state = state
        self.event = event
        super().__init__(f"no transition from {state.value} on {event.value}")


@dataclass(frozen=True)
class FailureDecision:
    """Outcome of classifying one failure."""

    event: AuthEvent
    state: AuthState
    retry_in: Optional[float] = None
    terminal: bool = False


def classify(exc: BaseException, state: AuthState) -> Optional[AuthEvent]:
    """Map an error raised in `state` to the event it triggers.

    Returns None for errors that leave the auth state alone (a network
    failure on an authenticated call, for example).
    """

    if isinstance(exc, RateLimitExceeded):
        return AuthEvent.RATE_LIMITED
    if state is AuthState.AUTHENTICATING:
        return AuthEvent.FAILURE
    if state is AuthState.AUTHENTICATED and isinstance(exc, AuthenticationFailure):
        return AuthEvent.SESSION_LOST
    return None


class AuthStateMachine:
    def __init__(
        self,
        *,
        clock: Clock = SYSTEM_CLOCK,
        cooldown_seconds: float = 120.0,
        max_retries: int = 3,
        base_delay: float = 5.0,
    ) -> None:
        self._clock = clock
        self.cooldown_seconds = float(cooldown_seconds)
        self.max_retries = max(0, int(max_retries))
        self.base_delay = max(0.0, float(base_delay))
        self.state = AuthState.UNAUTHENTICATED
        self.rate_limit_reset_at: Optional[float] = None
        self.next_retry_at: Optional[float] = None
        self.retry_count = 0
        self.terminal = False

    def _apply(self, event: AuthEvent) -> AuthState:
        target = TRANSITIONS.get((self.state, event))
        if target is None:
            raise InvalidTransition(self.state, event)
        logger.debug(
            "remote.auth.transition",
            extra={"from_state": self.state.value, "event": event.value, "to_state": target.value},
        )
        self.state = target
        return target

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** max(0, attempt - 1))

    def begin(self) -> None:
        self.is_rate_limited()
        self._apply(AuthEvent.BEGIN)
        self.next_retry_at = None

    def succeed(self) -> None:
        self._apply(AuthEvent.SUCCESS)
        self.retry_count = 0
        self.terminal = False
        self.rate_limit_reset_at = None
        self.next_retry_at = None

    def fail(self, exc: BaseException) -> FailureDecision:
        """Record a failed authentication attempt."""

        event = classify(exc, self.state)
        if event is None:
            raise InvalidTransition(self.state, AuthEvent.FAILURE)
        now = self._clock.time()
        state = self._apply(event)

        if event is AuthEvent.RATE_LIMITED:
            self.rate_limit_reset_at = now + self.cooldown_seconds
            return FailureDecision(event, state, retry_in=self.cooldown_seconds)

        self.retry_count += 1
        if self.retry_count > self.max_retries:
            self.terminal = True
            self.next_retry_at = None
            return FailureDecision(event, state, terminal=True)

        delay = self.backoff_delay(self.retry_count)
        self.next_retry_at = now + delay
        return FailureDecision(event, state, retry_in=delay)

    def abort(self) -> None:
        """Undo `begin()` for a login that was cancelled; no retry is used."""

        if self.state is AuthState.AUTHENTICATING:
            self._apply(AuthEvent.CANCELLED)

    def call_failed(self, exc: BaseException) -> Optional[FailureDecision]:
        """Record an error from an authenticated call, if it affects auth."""

        event = classify(exc, self.state)
        if event is None:
            return None
        state = self._apply(event)
        if event is AuthEvent.RATE_LIMITED:
            self.rate_limit_reset_at = self._clock.time() + self.cooldown_seconds
            return FailureDecision(event, state, retry_in=self.cooldown_seconds)
        return FailureDecision(event, state)

    def is_rate_limited(self) -> bool:
        """True while the cooldown is running; leaves RateLimited once it ends."""

        if self.state is not AuthState.RATE_LIMITED:
            return False
        if self.rate_limit_reset_at is not None and self._clock.time() < self.rate_limit_reset_at:
            return True
        self._apply(AuthEvent.COOLDOWN_ELAPSED)
        self.rate_limit_reset_at = None
        logger.info("remote.auth.cooldown_elapsed")
        return False

    def cooldown_remaining(self) -> float:
        if self.rate_limit_reset_at is None:
            return 0.0
        return max(0.0, self.rate_limit_reset_at - self._clock.time())

    def backoff_remaining(self) -> float:
        if self.next_retry_at is None:
            return 0.0
        return max(0.0, self.next_retry_at - self._clock.time())

    def reset(self) -> None:
        self.state = AuthState.UNAUTHENTICATED
        self.rate_limit_reset_at = None
        self.next_retry_at = None
        self.retry_count = 0
        self.terminal = False

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "retry_count": self.retry_count,
            "terminal": self.terminal,
            "rate_limit_reset_at": self.rate_limit_reset_at,
            "next_retry_at": self.next_retry_at,
        }


__all__ = [
    "AuthEvent",
    "AuthState",
    "AuthStateMachine",
    "FailureDecision",
    "InvalidTransition",
    "TRANSITIONS",
    "classify",
]
