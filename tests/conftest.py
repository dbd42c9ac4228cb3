import asyncio
import os
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

TEST_ENV = {
    "ENVIRONMENT": "test",
    "FIELDSYNC_REMOTE_ENABLED": "false",
    "FIELDSYNC_MOCK_MODE": "false",
    "FIELDSYNC_REMOTE_DATABASE": "",
    "FIELDSYNC_REMOTE_USERNAME": "",
    "FIELDSYNC_REMOTE_PASSWORD": "",
    "FIELDSYNC_CACHE_URL": "",
    "FIELDSYNC_RATE_LIMIT_PER_SEC": "0",
    "LOG_LEVEL": "DEBUG",
    "LOG_JSON": "false",
    "LOG_FILE": "",
}

for key, value in TEST_ENV.items():
    os.environ[key] = value

from fieldsync.cache.policy import DatasetRegistry
from fieldsync.cache.store import PersistentCacheStore
from fieldsync.core.settings import RemoteSettings
from fieldsync.remote.schemas import Credentials


class FakeClock:
    """Manually advanced clock; `time()` and `monotonic()` move together."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self._monotonic = 0.0

    def time(self) -> float:
        return self.now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self.now += seconds
        self._monotonic += seconds


class ManualSleeper:
    """Sleep function that blocks until the test releases it.

    Released sleeps advance the attached clock by the requested delay, which
    makes timer-driven code step deterministically.
    """

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.clock = clock
        self.calls: List[float] = []
        self._waiters: List[tuple] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((seconds, future))
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, future in self._waiters if not future.done())

    def release(self) -> None:
        while self._waiters:
            seconds, future = self._waiters.pop(0)
            if future.done():
                continue
            if self.clock is not None:
                self.clock.advance(seconds)
            future.set_result(None)
            return


class InstantSleeper:
    """Records delays and returns at once (advancing the clock if given)."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
        await asyncio.sleep(0)


class ScriptedTransport:
    """In-process stand-in for the JSON-RPC transport.

    `auth_outcomes` is consumed one item per login: an exception is raised,
    an async callable is awaited before succeeding, anything else means
    success. `responses` maps a `typeName` to a value, an exception, or an
    async callable producing the value.
    """

    def __init__(
        self,
        *,
        auth_outcomes: Optional[List[Any]] = None,
        responses: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.auth_outcomes = list(auth_outcomes or [])
        self.responses = dict(responses or {})
        self.auth_calls = 0
        self.calls: List[str] = []
        self.closed = False

    async def authenticate(self, database: str, username: str, password: str) -> Credentials:
        self.auth_calls += 1
        if self.auth_outcomes:
            outcome = self.auth_outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                await outcome()
        return Credentials(database=database, user_name=username, session_id=f"session-{self.auth_calls}")

    async def call(self, method: str, params: Dict[str, Any], credentials: Credentials) -> Any:
        type_name = params.get("typeName", method)
        self.calls.append(type_name)
        response = self.responses.get(type_name, [])
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return await response()
        return response

    async def close(self) -> None:
        self.closed = True


FLEET_DEVICES = [
    {"id": "b1", "name": "Fiber Truck 1", "comment": "John Smith"},
    {"id": "b2", "name": "Cable Van 2", "comment": None},
    {"id": "b3", "name": "Electric Truck 1", "comment": "Mike Wilson"},
    {"id": "b4", "name": "Bucket Truck 7", "comment": "Lisa Davis"},
]

FLEET_STATUSES = [
    {"device": {"id": "b1"}, "latitude": 33.5, "longitude": -86.8, "speed": 56.3, "bearing": 45,
     "dateTime": "2024-05-01T12:00:00Z", "isDeviceCommunicating": True},
    {"device": {"id": "b2"}, "latitude": 32.3, "longitude": -86.3, "speed": 0, "bearing": 180,
     "dateTime": "2024-05-01T12:00:00Z", "isDeviceCommunicating": True},
    {"device": {"id": "b3"}, "latitude": 34.7, "longitude": -86.5, "speed": 40.2, "bearing": 90,
     "dateTime": "2024-05-01T12:00:00Z", "isDeviceCommunicating": True},
    {"device": {"id": "b4"}, "latitude": 30.6, "longitude": -88.0, "speed": None, "bearing": None,
     "dateTime": None, "isDeviceCommunicating": False},
]


def build_remote_settings(**overrides: Any) -> RemoteSettings:
    values: Dict[str, Any] = {
        "enabled": True,
        "mock_mode": False,
        "url": "https://telemetry.example.test/apiv1",
        "database": "fleet",
        "username": "dispatcher",
        "password": "secret",
        "refresh_interval": 30.0,
        "call_timeout": 1.0,
        "max_retries": 3,
        "retry_base_delay": 5.0,
        "rate_limit_window": 60.0,
        "rate_limit_per_sec": 0.0,
    }
    values.update(overrides)
    return RemoteSettings(**values)


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    """Force deterministic env for tests and reset cached settings."""

    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))

    from fieldsync.core import settings as settings_module

    settings_module.get_settings.cache_clear()
    yield
    settings_module.get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manual_sleeper(clock) -> ManualSleeper:
    return ManualSleeper(clock)


@pytest.fixture
def instant_sleeper(clock) -> InstantSleeper:
    return InstantSleeper(clock)


@pytest.fixture
def remote_settings() -> Callable[..., RemoteSettings]:
    return build_remote_settings


@pytest.fixture
def transport_factory() -> Callable[..., ScriptedTransport]:
    return ScriptedTransport


@pytest.fixture
def fleet_responses() -> Dict[str, Any]:
    return {"Device": list(FLEET_DEVICES), "DeviceStatusInfo": list(FLEET_STATUSES)}


@pytest.fixture
def cache_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"


@pytest_asyncio.fixture
async def store(cache_url, clock):
    store = PersistentCacheStore(cache_url, registry=DatasetRegistry(), clock=clock)
    await store.open()
    yield store
    await store.close()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def eventually() -> Callable[..., Any]:
    return wait_until
