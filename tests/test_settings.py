import os

import pytest

from fieldsync.core.env import load_env
from fieldsync.core.settings import DEFAULT_REMOTE_URL, get_settings


def test_defaults(tmp_path):
    settings = get_settings()

    assert settings.environment == "test"
    assert settings.data_dir == tmp_path / "data"
    assert settings.cache_url == f"sqlite+aiosqlite:///{tmp_path / 'data' / 'cache.db'}"
    assert settings.cache_version == "1"
    assert settings.memory_ttl_seconds == 30.0
    assert settings.quota_interval == 300.0
    assert settings.deliver_late_results is True
    assert settings.log_file.endswith("fieldsync.log")

    remote = settings.remote
    assert remote.enabled is False
    assert remote.url == DEFAULT_REMOTE_URL
    assert remote.refresh_interval == 30.0
    assert remote.call_timeout == 30.0
    assert remote.max_retries == 3
    assert remote.retry_base_delay == 5.0
    assert remote.cooldown_seconds == 120.0
    assert remote.has_credentials is False


def test_settings_are_cached_until_cleared(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("FIELDSYNC_MAX_RETRIES", "7")

    assert get_settings() is first

    get_settings.cache_clear()
    assert get_settings().remote.max_retries == 7


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("FIELDSYNC_REFRESH_INTERVAL", "soon")
    monkeypatch.setenv("FIELDSYNC_MAX_RETRIES", "-2")
    monkeypatch.setenv("FIELDSYNC_CALL_TIMEOUT", "0")

    remote = get_settings().remote

    assert remote.refresh_interval == 30.0
    assert remote.max_retries == 3
    assert remote.call_timeout == 30.0


def test_remote_credentials_and_flags(monkeypatch):
    monkeypatch.setenv("FIELDSYNC_REMOTE_ENABLED", "yes")
    monkeypatch.setenv("FIELDSYNC_REMOTE_DATABASE", "fleet")
    monkeypatch.setenv("FIELDSYNC_REMOTE_USERNAME", "dispatcher")
    monkeypatch.setenv("FIELDSYNC_REMOTE_PASSWORD", "secret")
    monkeypatch.setenv("FIELDSYNC_RATE_LIMIT_WINDOW", "30")
    monkeypatch.setenv("FIELDSYNC_DELIVER_LATE_RESULTS", "false")

    settings = get_settings()

    assert settings.remote.enabled is True
    assert settings.remote.has_credentials is True
    assert settings.remote.cooldown_seconds == 60.0
    assert settings.deliver_late_results is False


def test_plain_sqlite_url_is_upgraded_to_async_driver(monkeypatch, tmp_path):
    monkeypatch.setenv("FIELDSYNC_CACHE_URL", f"sqlite:///{tmp_path / 'other.db'}")

    assert get_settings().cache_url == f"sqlite+aiosqlite:///{tmp_path / 'other.db'}"


def test_unknown_environment_defaults_to_development(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "qa-cluster")

    assert get_settings().environment == "development"


def test_load_env_never_overrides_shell(monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# comment\n"
        "FIELDSYNC_TEST_FROM_FILE='quoted value'\n"
        "export FIELDSYNC_TEST_EXPORTED=1\n"
        "FIELDSYNC_TEST_SHELL=file\n"
        "not a pair\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("FIELDSYNC_TEST_SHELL", "shell")
    monkeypatch.delenv("FIELDSYNC_TEST_FROM_FILE", raising=False)
    monkeypatch.delenv("FIELDSYNC_TEST_EXPORTED", raising=False)

    load_env(env_file)

    try:
        assert os.environ["FIELDSYNC_TEST_FROM_FILE"] == "quoted value"
        assert os.environ["FIELDSYNC_TEST_EXPORTED"] == "1"
        assert os.environ["FIELDSYNC_TEST_SHELL"] == "shell"
    finally:
        os.environ.pop("FIELDSYNC_TEST_FROM_FILE", None)
        os.environ.pop("FIELDSYNC_TEST_EXPORTED", None)


@pytest.mark.parametrize("raw", ["1", "true", "YES", "on"])
def test_truthy_values(monkeypatch, raw):
    monkeypatch.setenv("FIELDSYNC_MOCK_MODE", raw)

    assert get_settings().remote.mock_mode is True
