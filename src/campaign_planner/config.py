"""Configuration management for the campaign planner storage core."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class StorageSettings(BaseModel):
    kv_path: str | None = Field(
        default="./data/kv_store.json",
        description="JSON document backing the key-value store. None keeps it in memory.",
    )
    kv_capacity_bytes: int = Field(default=5 * 1024 * 1024, ge=1024)
    sqlite_enabled: bool = Field(default=True)
    sqlite_path: str = Field(default="./data/campaign_planner.sqlite")
    sqlite_wal: bool = Field(default=True)
    backup_dir: str = Field(default="./data/backups")
    budget_defaults_path: str | None = Field(default=None)


class PersistenceSettings(BaseModel):
    campaign_key: str = Field(default="campaignData")
    budget_key: str = Field(default="regionalBudgets")
    campaign_status_key: str = Field(default="autoSaveStatus")
    budget_status_key: str = Field(default="budgetSaveStatus")
    debounce_ms: int = Field(default=500, ge=0, le=60_000)
    remote_push_on_commit: bool = Field(default=False)


class MonitorSettings(BaseModel):
    enabled: bool = Field(default=True)
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    advisory_cooldown_seconds: float = Field(default=60.0, ge=0)
    error_streak_threshold: int = Field(default=3, ge=1, le=100)


class GuardSettings(BaseModel):
    soft_threshold: float = Field(default=0.80, gt=0, le=1)
    hard_threshold: float = Field(default=0.95, gt=0, le=1)
    max_retained_records: int = Field(default=1000, ge=1)
    max_item_bytes: int = Field(default=512 * 1024, ge=1)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    known_prefixes: tuple[str, ...] = Field(
        default=(
            "campaignData",
            "regionalBudgets",
            "autoSaveStatus",
            "budgetSaveStatus",
            "dataMigration_",
            "kv_",
        )
    )

    @model_validator(mode="after")
    def _check_thresholds(self) -> "GuardSettings":
        if self.soft_threshold > self.hard_threshold:
            raise ValueError("soft_threshold must not exceed hard_threshold")
        return self


class RemoteSyncSettings(BaseModel):
    """Target of the optional remote mirror.

    Sync is considered configured only when token, owner and repo are all set.
    """

    token: str | None = Field(default=None)
    owner: str | None = Field(default=None)
    repo: str | None = Field(default=None)
    path: str = Field(default="campaign-data/campaigns.json")
    branch: str = Field(default="main")
    api_url: str = Field(default="https://api.github.com")
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    @property
    def configured(self) -> bool:
        return bool(self.token and self.owner and self.repo)


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1024, le=65535)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    guard: GuardSettings = Field(default_factory=GuardSettings)
    remote: RemoteSyncSettings = Field(default_factory=RemoteSyncSettings)


ENV_KEYS = {
    "host": "CAMPAIGN_HOST",
    "port": "CAMPAIGN_PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "kv_path": "KV_STORE_PATH",
    "kv_capacity": "KV_STORE_CAPACITY_BYTES",
    "sqlite_enabled": "SQLITE_ENABLED",
    "sqlite_path": "SQLITE_PATH",
    "backup_dir": "BACKUP_DIR",
    "budget_defaults_path": "BUDGET_DEFAULTS_PATH",
    "debounce_ms": "SAVE_DEBOUNCE_MS",
    "remote_push_on_commit": "REMOTE_PUSH_ON_COMMIT",
    "poll_interval": "DIVERGENCE_POLL_SECONDS",
    "github_token": "GITHUB_SYNC_TOKEN",
    "github_owner": "GITHUB_SYNC_OWNER",
    "github_repo": "GITHUB_SYNC_REPO",
    "github_path": "GITHUB_SYNC_PATH",
    "github_branch": "GITHUB_SYNC_BRANCH",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})
_NONE_VALUES = frozenset({"", "none", "memory", ":memory:"})


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate.resolve())
    return str((_project_root() / candidate).resolve())


def _optional_path(value: str | None) -> str | None:
    if value is None or value.strip().lower() in _NONE_VALUES:
        return None
    return _resolve_path(value)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    storage_defaults = StorageSettings()
    guard_defaults = GuardSettings()
    monitor_defaults = MonitorSettings()
    remote_defaults = RemoteSyncSettings()

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "storage": {
            "kv_path": _optional_path(os.getenv(ENV_KEYS["kv_path"], storage_defaults.kv_path)),
            "kv_capacity_bytes": _env_int(
                ENV_KEYS["kv_capacity"], storage_defaults.kv_capacity_bytes
            ),
            "sqlite_enabled": _env_bool(
                ENV_KEYS["sqlite_enabled"], storage_defaults.sqlite_enabled
            ),
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], storage_defaults.sqlite_path)
            ),
            "sqlite_wal": _env_bool("SQLITE_WAL", storage_defaults.sqlite_wal),
            "backup_dir": _resolve_path(
                os.getenv(ENV_KEYS["backup_dir"], storage_defaults.backup_dir)
            ),
            "budget_defaults_path": _optional_path(os.getenv(ENV_KEYS["budget_defaults_path"])),
        },
        "persistence": {
            "debounce_ms": _env_int(ENV_KEYS["debounce_ms"], PersistenceSettings().debounce_ms),
            "remote_push_on_commit": _env_bool(
                ENV_KEYS["remote_push_on_commit"],
                PersistenceSettings().remote_push_on_commit,
            ),
        },
        "monitor": {
            "enabled": _env_bool("DIVERGENCE_MONITOR_ENABLED", monitor_defaults.enabled),
            "poll_interval_seconds": _env_float(
                ENV_KEYS["poll_interval"], monitor_defaults.poll_interval_seconds
            ),
            "advisory_cooldown_seconds": _env_float(
                "DIVERGENCE_ADVISORY_COOLDOWN_SECONDS",
                monitor_defaults.advisory_cooldown_seconds,
            ),
            "error_streak_threshold": _env_int(
                "DIVERGENCE_ERROR_STREAK", monitor_defaults.error_streak_threshold
            ),
        },
        "guard": {
            "soft_threshold": _env_float("STORAGE_SOFT_THRESHOLD", guard_defaults.soft_threshold),
            "hard_threshold": _env_float("STORAGE_HARD_THRESHOLD", guard_defaults.hard_threshold),
            "max_retained_records": _env_int(
                "STORAGE_MAX_RETAINED_RECORDS", guard_defaults.max_retained_records
            ),
            "max_item_bytes": _env_int("STORAGE_MAX_ITEM_BYTES", guard_defaults.max_item_bytes),
            "sweep_interval_seconds": _env_float(
                "STORAGE_SWEEP_SECONDS", guard_defaults.sweep_interval_seconds
            ),
        },
        "remote": {
            "token": os.getenv(ENV_KEYS["github_token"]) or None,
            "owner": os.getenv(ENV_KEYS["github_owner"]) or None,
            "repo": os.getenv(ENV_KEYS["github_repo"]) or None,
            "path": os.getenv(ENV_KEYS["github_path"], remote_defaults.path),
            "branch": os.getenv(ENV_KEYS["github_branch"], remote_defaults.branch),
            "api_url": os.getenv("GITHUB_API_URL", remote_defaults.api_url),
            "timeout_seconds": _env_float(
                "GITHUB_SYNC_TIMEOUT_SECONDS", remote_defaults.timeout_seconds
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.storage.backup_dir).mkdir(parents=True, exist_ok=True)
    if settings.storage.sqlite_enabled:
        Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
