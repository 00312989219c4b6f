from __future__ import annotations

import pytest
from pydantic import ValidationError

from campaign_planner import config


@pytest.fixture
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path, clean_settings):
    monkeypatch.setattr(config, "load_dotenv", lambda **_: None)
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("KV_STORE_PATH", "memory")
    monkeypatch.setenv("SQLITE_ENABLED", "false")
    return monkeypatch


def test_env_int_uses_default_for_blank(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_VALUE", "")
    assert config._env_int("TEST_INT_VALUE", 7) == 7


def test_env_int_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT_INVALID", "not_a_number")
    assert config._env_int("TEST_INT_INVALID", 42) == 42


def test_env_float_invalid_value_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_FLOAT_INVALID", "not_a_float")
    assert config._env_float("TEST_FLOAT_INVALID", 2.5) == 2.5


@pytest.mark.parametrize(("raw", "expected"), [("1", True), ("YES", True), ("false", False), ("0", False)])
def test_env_bool(monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool) -> None:
    monkeypatch.setenv("TEST_BOOL", raw)
    assert config._env_bool("TEST_BOOL", not expected) is expected


def test_optional_path_treats_memory_as_none() -> None:
    assert config._optional_path("memory") is None
    assert config._optional_path(":memory:") is None
    assert config._optional_path(None) is None
    assert config._optional_path("data/kv.json").endswith("data/kv.json")


def test_resolve_path_relative_to_project_root() -> None:
    root = config._project_root()
    assert config._resolve_path("data/x.json") == str((root / "data" / "x.json").resolve())


def test_load_settings_from_env(isolated_env, tmp_path) -> None:
    isolated_env.setenv("CAMPAIGN_PORT", "9001")
    isolated_env.setenv("SAVE_DEBOUNCE_MS", "250")
    isolated_env.setenv("DIVERGENCE_POLL_SECONDS", "2.5")
    isolated_env.setenv("GITHUB_SYNC_TOKEN", "t")
    isolated_env.setenv("GITHUB_SYNC_OWNER", "acme")
    isolated_env.setenv("GITHUB_SYNC_REPO", "plans")

    settings = config.load_settings()

    assert settings.server.port == 9001
    assert settings.storage.kv_path is None
    assert settings.storage.sqlite_enabled is False
    assert settings.persistence.debounce_ms == 250
    assert settings.monitor.poll_interval_seconds == 2.5
    assert settings.remote.configured
    assert (tmp_path / "backups").is_dir()
    assert config.load_settings() is settings


def test_remote_not_configured_without_token(isolated_env) -> None:
    isolated_env.delenv("GITHUB_SYNC_TOKEN", raising=False)
    isolated_env.setenv("GITHUB_SYNC_OWNER", "acme")
    isolated_env.setenv("GITHUB_SYNC_REPO", "plans")

    assert not config.load_settings().remote.configured


def test_load_settings_raises_runtime_error_on_validation(isolated_env) -> None:
    # debounce is capped at one minute
    isolated_env.setenv("SAVE_DEBOUNCE_MS", "600000")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()


def test_soft_threshold_must_not_exceed_hard() -> None:
    with pytest.raises(ValidationError, match="soft_threshold"):
        config.GuardSettings(soft_threshold=0.99, hard_threshold=0.9)


def test_inverted_thresholds_from_env_are_rejected(isolated_env) -> None:
    isolated_env.setenv("STORAGE_SOFT_THRESHOLD", "0.97")
    isolated_env.setenv("STORAGE_HARD_THRESHOLD", "0.9")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        config.load_settings()
