from __future__ import annotations

import asyncio
import contextlib
import os
from typing import Any

import pytest

from campaign_planner.config import (
    GuardSettings,
    MonitorSettings,
    PersistenceSettings,
    Settings,
    StorageSettings,
    _load_settings_cached,
)
from campaign_planner.domain.campaign import new_campaign
from campaign_planner.domain.schema import CAMPAIGN_SCHEMA
from campaign_planner.notifications import AdvisoryBus
from campaign_planner.persistence.multi_layer import MultiLayerPersistence
from campaign_planner.persistence.repository import RecordRepository
from campaign_planner.recovery.service import DataRecoveryService
from campaign_planner.storage.kv_store import KeyValueStore, MemoryBackend
from campaign_planner.storage.size_guard import StorageSizeGuard
from campaign_planner.storage.sqlite_layer import SqliteLayer


def pytest_sessionstart(session: pytest.Session) -> None:
    # Keep settings loaded during tests away from the project data directory.
    os.environ.setdefault("KV_STORE_PATH", "memory")
    os.environ.setdefault("SQLITE_ENABLED", "false")


@pytest.fixture
def clean_settings():
    _load_settings_cached.cache_clear()
    yield
    _load_settings_cached.cache_clear()


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def kv(backend: MemoryBackend) -> KeyValueStore:
    return KeyValueStore(backend)


@pytest.fixture
def sqlite_layer():
    layer = SqliteLayer(":memory:")
    yield layer
    layer.close_sync()


@pytest.fixture
def advisories() -> AdvisoryBus:
    return AdvisoryBus()


@pytest.fixture
def persistence(kv: KeyValueStore, sqlite_layer: SqliteLayer, advisories: AdvisoryBus):
    return MultiLayerPersistence([kv, sqlite_layer], advisories=advisories)


@pytest.fixture
def recovery(persistence: MultiLayerPersistence, tmp_path) -> DataRecoveryService:
    return DataRecoveryService(persistence, backup_dir=tmp_path / "backups")


def make_repository(
    persistence: MultiLayerPersistence,
    recovery: DataRecoveryService,
    advisories: AdvisoryBus | None = None,
    **overrides: Any,
) -> RecordRepository:
    options: dict[str, Any] = {
        "schema": CAMPAIGN_SCHEMA,
        "persistence": persistence,
        "recovery": recovery,
        "debounce_seconds": 0.05,
        "status_key": "autoSaveStatus",
        "advisories": advisories,
    }
    options.update(overrides)
    return RecordRepository("campaignData", **options)


def campaigns(*names: str, leads: int = 100) -> list[dict[str, Any]]:
    return [
        new_campaign(id=f"c-{index}", campaignName=name, expectedLeads=leads, forecastedCost=1000)
        for index, name in enumerate(names, start=1)
    ]


def bulky_campaigns(count: int, size: int = 2400) -> list[dict[str, Any]]:
    return [
        new_campaign(id=f"c-{index}", campaignName=f"Campaign {index}", description="x" * size)
        for index in range(1, count + 1)
    ]


def guarded_persistence(capacity: int = 16_000) -> tuple[MultiLayerPersistence, StorageSizeGuard]:
    """A single small store whose guard keeps two records above 70% usage."""
    store = KeyValueStore(MemoryBackend(), capacity_bytes=capacity)
    guard = StorageSizeGuard(
        store, GuardSettings(soft_threshold=0.6, hard_threshold=0.7, max_retained_records=2)
    )
    return MultiLayerPersistence([store], guard=guard), guard


@pytest.fixture
def memory_settings(tmp_path) -> Settings:
    return Settings(
        storage=StorageSettings(
            kv_path=None,
            sqlite_path=":memory:",
            sqlite_wal=False,
            backup_dir=str(tmp_path / "backups"),
        ),
        persistence=PersistenceSettings(debounce_ms=50),
        monitor=MonitorSettings(enabled=False),
        guard=GuardSettings(),
    )
