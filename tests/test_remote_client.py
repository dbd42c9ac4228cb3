import asyncio

import pytest

from fieldsync.core.errors import (
    AuthenticationFailure,
    ConfigurationMissing,
    NetworkFailure,
    NotAuthenticatedError,
    RateLimitExceeded,
)
from fieldsync.core.metrics import SyncMetrics
from fieldsync.remote.auth import AuthState
from fieldsync.remote.client import RemoteDataClient
from fieldsync.remote.mock import MockTransport
from fieldsync.remote.transport import raise_for_rpc_error


def test_missing_credentials_disable_client(remote_settings):
    with pytest.raises(ConfigurationMissing):
        RemoteDataClient(remote_settings(password=""))
    with pytest.raises(ConfigurationMissing):
        RemoteDataClient(remote_settings(enabled=False))


def test_mock_mode_needs_no_credentials(remote_settings):
    client = RemoteDataClient(remote_settings(mock_mode=True, database="", username="", password=""))

    assert client.mock_mode is True


@pytest.mark.asyncio
async def test_call_before_authentication_fails_immediately(remote_settings, transport_factory):
    transport = transport_factory()
    client = RemoteDataClient(remote_settings(), transport=transport, auto_retry=False)

    with pytest.raises(NotAuthenticatedError) as excinfo:
        await client.call("Get", {"typeName": "Device"})

    assert excinfo.value.state == "unauthenticated"
    assert transport.calls == []


@pytest.mark.asyncio
async def test_authenticate_then_call(remote_settings, transport_factory, fleet_responses):
    transport = transport_factory(responses=fleet_responses)
    client = RemoteDataClient(remote_settings(), transport=transport, auto_retry=False)

    assert await client.authenticate() is True
    devices = await client.get_devices()

    assert client.state is AuthState.AUTHENTICATED
    assert len(devices) == 4
    assert transport.calls == ["Device"]
    assert client.status()["authenticated"] is True


@pytest.mark.asyncio
async def test_backoff_retries_then_stops(remote_settings, transport_factory, instant_sleeper):
    failures = [AuthenticationFailure("bad password") for _ in range(10)]
    transport = transport_factory(auth_outcomes=failures)
    client = RemoteDataClient(
        remote_settings(max_retries=3, retry_base_delay=5),
        transport=transport,
        sleep=instant_sleeper,
    )

    assert await client.authenticate() is False
    await client.wait_for_retries()

    assert instant_sleeper.calls == [5, 10, 20]
    assert transport.auth_calls == 4
    assert client.auth.terminal is True
    assert client.status()["retry_pending"] is False

    # Exhausted: neither explicit attempts nor fetches reach the transport.
    assert await client.authenticate() is False
    with pytest.raises(AuthenticationFailure):
        await client.ensure_authenticated()
    assert transport.auth_calls == 4
    await client.close()


@pytest.mark.asyncio
async def test_reinitialize_recovers_from_terminal_state(remote_settings, transport_factory):
    transport = transport_factory(auth_outcomes=[NetworkFailure("down")])
    client = RemoteDataClient(remote_settings(max_retries=0), transport=transport, auto_retry=False)

    assert await client.authenticate() is False
    assert client.auth.terminal

    assert await client.reinitialize() is True
    assert client.state is AuthState.AUTHENTICATED


@pytest.mark.asyncio
async def test_retry_eventually_succeeds(remote_settings, transport_factory, instant_sleeper):
    transport = transport_factory(auth_outcomes=[NetworkFailure("down"), NetworkFailure("down")])
    client = RemoteDataClient(remote_settings(), transport=transport, sleep=instant_sleeper)

    await client.authenticate()
    await client.wait_for_retries()

    assert client.state is AuthState.AUTHENTICATED
    assert instant_sleeper.calls == [5, 10]
    assert client.auth.retry_count == 0


@pytest.mark.asyncio
async def test_ensure_authenticated_honours_backoff(remote_settings, transport_factory, clock):
    transport = transport_factory(auth_outcomes=[NetworkFailure("down")])
    client = RemoteDataClient(remote_settings(), transport=transport, clock=clock, auto_retry=False)

    await client.authenticate()
    with pytest.raises(AuthenticationFailure, match="retry scheduled"):
        await client.ensure_authenticated()
    assert transport.auth_calls == 1

    clock.advance(5)
    await client.ensure_authenticated()
    assert client.state is AuthState.AUTHENTICATED
    assert transport.auth_calls == 2


@pytest.mark.asyncio
async def test_rate_limited_login_uses_fixed_cooldown(remote_settings, transport_factory, clock):
    transport = transport_factory(auth_outcomes=[RateLimitExceeded("OverLimitException")])
    metrics = SyncMetrics()
    client = RemoteDataClient(
        remote_settings(rate_limit_window=60),
        transport=transport,
        clock=clock,
        metrics=metrics,
        auto_retry=False,
    )

    assert await client.authenticate() is False
    assert client.state is AuthState.RATE_LIMITED
    assert client.auth.retry_count == 0
    assert client.is_rate_limited()

    with pytest.raises(RateLimitExceeded) as excinfo:
        await client.ensure_authenticated()
    assert excinfo.value.retry_after == pytest.approx(120)
    with pytest.raises(NotAuthenticatedError):
        await client.call("Get", {"typeName": "Device"})

    clock.advance(119)
    assert client.is_rate_limited()
    clock.advance(1)
    assert not client.is_rate_limited()

    await client.ensure_authenticated()
    assert client.state is AuthState.AUTHENTICATED
    assert (await metrics.snapshot()).rate_limit_total == 1


@pytest.mark.asyncio
async def test_cooldown_retry_authenticates_after_window(remote_settings, transport_factory, instant_sleeper):
    transport = transport_factory(auth_outcomes=[RateLimitExceeded()])
    client = RemoteDataClient(
        remote_settings(rate_limit_window=60),
        transport=transport,
        clock=instant_sleeper.clock,
        sleep=instant_sleeper,
    )

    await client.authenticate()
    await client.wait_for_retries()

    assert instant_sleeper.calls == [120]
    assert client.state is AuthState.AUTHENTICATED


@pytest.mark.asyncio
async def test_rate_limit_during_call_enters_cooldown(remote_settings, transport_factory, clock):
    transport = transport_factory(responses={"Device": RateLimitExceeded("OverLimitException")})
    client = RemoteDataClient(remote_settings(), transport=transport, clock=clock, auto_retry=False)
    await client.authenticate()

    with pytest.raises(RateLimitExceeded):
        await client.get_devices()

    assert client.state is AuthState.RATE_LIMITED
    assert client.is_rate_limited()


@pytest.mark.asyncio
async def test_session_loss_during_call_requires_new_login(remote_settings, transport_factory):
    transport = transport_factory(responses={"Device": AuthenticationFailure("InvalidUserException")})
    client = RemoteDataClient(remote_settings(), transport=transport, auto_retry=False)
    await client.authenticate()

    with pytest.raises(AuthenticationFailure):
        await client.get_devices()

    assert client.state is AuthState.UNAUTHENTICATED
    assert client.auth.retry_count == 0


@pytest.mark.asyncio
async def test_network_failure_during_call_keeps_session(remote_settings, transport_factory):
    transport = transport_factory(responses={"Device": NetworkFailure("HTTP 502")})
    client = RemoteDataClient(remote_settings(), transport=transport, auto_retry=False)
    await client.authenticate()

    with pytest.raises(NetworkFailure):
        await client.get_devices()

    assert client.state is AuthState.AUTHENTICATED


@pytest.mark.asyncio
async def test_call_timeout_is_network_failure(remote_settings, transport_factory):
    async def hang():
        await asyncio.sleep(5)
        return []

    transport = transport_factory(responses={"Device": hang})
    client = RemoteDataClient(remote_settings(call_timeout=0.05), transport=transport, auto_retry=False)
    await client.authenticate()

    with pytest.raises(NetworkFailure, match="timed out"):
        await client.get_devices()


@pytest.mark.asyncio
async def test_mock_mode_connection_test(remote_settings):
    client = RemoteDataClient(remote_settings(mock_mode=True), transport=MockTransport())

    result = await client.test_connection()

    assert result["success"] is True
    assert result["device_count"] == 4
    assert result["mock_mode"] is True


@pytest.mark.asyncio
async def test_connection_test_reports_failure(remote_settings, transport_factory):
    transport = transport_factory(auth_outcomes=[AuthenticationFailure("Incorrect login credentials")])
    client = RemoteDataClient(remote_settings(), transport=transport, auto_retry=False)

    result = await client.test_connection()

    assert result["success"] is False
    assert "Incorrect login credentials" in result["message"]


@pytest.mark.asyncio
async def test_token_bucket_throttles_calls(remote_settings, transport_factory, instant_sleeper, clock):
    transport = transport_factory(responses={"Device": []})
    client = RemoteDataClient(
        remote_settings(rate_limit_per_sec=1),
        transport=transport,
        clock=clock,
        sleep=instant_sleeper,
        auto_retry=False,
    )
    await client.authenticate()

    await client.get_devices()
    await client.get_devices()

    assert instant_sleeper.calls == [1.0]
    assert transport.calls == ["Device", "Device"]


@pytest.mark.parametrize(
    "error, expected",
    [
        ({"name": "JSONRPCError", "errors": [{"name": "OverLimitException"}]}, RateLimitExceeded),
        ({"name": "InvalidUserException", "message": "Incorrect login credentials"}, AuthenticationFailure),
        ({"name": "JSONRPCError", "errors": [{"name": "DbUnavailableException"}]}, AuthenticationFailure),
        ({"name": "ArgumentException", "message": "typeName"}, NetworkFailure),
        ("plain text error", NetworkFailure),
    ],
)
def test_rpc_error_mapping(error, expected):
    with pytest.raises(expected):
        raise_for_rpc_error(error)


@pytest.mark.asyncio
async def test_cancelled_login_leaves_client_ready_to_retry(remote_settings, transport_factory, eventually):
    gate = asyncio.Event()
    transport = transport_factory(auth_outcomes=[gate.wait])
    client = RemoteDataClient(remote_settings(), transport=transport, auto_retry=False)

    login = asyncio.create_task(client.ensure_authenticated())
    await eventually(lambda: transport.auth_calls == 1)
    login.cancel()
    with pytest.raises(asyncio.CancelledError):
        await login

    assert client.state is AuthState.UNAUTHENTICATED
    assert client.auth.retry_count == 0

    await client.ensure_authenticated()
    assert client.state is AuthState.AUTHENTICATED
    assert transport.auth_calls == 2


@pytest.mark.asyncio
async def test_close_during_retry_login_unwinds_auth_state(
    remote_settings, transport_factory, instant_sleeper, eventually
):
    gate = asyncio.Event()
    transport = transport_factory(auth_outcomes=[NetworkFailure("down"), gate.wait])
    client = RemoteDataClient(remote_settings(), transport=transport, sleep=instant_sleeper)

    await client.authenticate()
    await eventually(lambda: transport.auth_calls == 2)
    await client.close()

    assert client.state is AuthState.UNAUTHENTICATED
    assert client.auth.retry_count == 1
    assert client.status()["retry_pending"] is False
    assert transport.closed


@pytest.mark.asyncio
async def test_callers_queued_behind_failed_login_wait_out_backoff(remote_settings, transport_factory, clock):
    transport = transport_factory(auth_outcomes=[NetworkFailure("down"), NetworkFailure("still down")])
    client = RemoteDataClient(remote_settings(), transport=transport, clock=clock, auto_retry=False)
    await client.authenticate()
    clock.advance(5)

    results = await asyncio.gather(
        client.ensure_authenticated(),
        client.ensure_authenticated(),
        return_exceptions=True,
    )

    assert all(isinstance(result, NetworkFailure) for result in results)
    assert transport.auth_calls == 2
    assert client.auth.retry_count == 2
    assert client.auth.backoff_remaining() == 10
