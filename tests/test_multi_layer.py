from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from campaign_planner.errors import StorageLayerError
from campaign_planner.persistence.multi_layer import MultiLayerPersistence
from campaign_planner.storage.kv_store import KeyValueStore, MemoryBackend
from campaign_planner.storage.size_guard import StorageSizeGuard
from campaign_planner.sync.remote import RemoteSyncResult


class BrokenLayer:
    name = "broken"

    async def read(self, key):
        raise StorageLayerError(self.name, "unavailable")

    async def write(self, key, value):
        raise StorageLayerError(self.name, "unavailable")

    async def delete(self, key):
        raise StorageLayerError(self.name, "unavailable")

    async def clear(self):
        raise StorageLayerError(self.name, "unavailable")

    async def keys(self):
        return []

    async def close(self):
        return None


@pytest.mark.asyncio
async def test_read_falls_back_when_primary_is_corrupt(persistence, kv, sqlite_layer) -> None:
    kv.set_item("campaignData", "{corrupt")
    await sqlite_layer.write("campaignData", json.dumps([{"id": "from-sqlite"}]))

    value, source = await persistence.read_with_source("campaignData")

    assert value == [{"id": "from-sqlite"}]
    assert source == "sqlite"
    # the valid copy is written back into the primary layer
    assert json.loads(kv.get_item("campaignData")) == [{"id": "from-sqlite"}]


@pytest.mark.asyncio
async def test_read_rejects_wrong_structure(persistence, kv, sqlite_layer) -> None:
    kv.set_item("campaignData", json.dumps({"id": "not-a-list"}))
    await sqlite_layer.write("campaignData", json.dumps([1, 2]))

    assert await persistence.read("campaignData", default=[]) == []


@pytest.mark.asyncio
async def test_read_cold_start_returns_default(persistence) -> None:
    assert await persistence.read("campaignData", default="fallback") == "fallback"
    assert await persistence.read_with_source("campaignData") == (None, None)


@pytest.mark.asyncio
async def test_salvage_returns_any_parseable_value(persistence, kv) -> None:
    kv.set_item("campaignData", json.dumps({"id": "x"}))

    assert await persistence.salvage("campaignData") == {"id": "x"}
    assert await persistence.salvage("missing") is None


@pytest.mark.asyncio
async def test_write_reaches_every_layer(persistence, kv, sqlite_layer) -> None:
    outcome = await persistence.write("campaignData", [{"id": "a"}])

    assert outcome.success
    assert outcome.failed_layers == []
    assert kv.get_json("campaignData") == [{"id": "a"}]
    assert json.loads(await sqlite_layer.read("campaignData")) == [{"id": "a"}]


@pytest.mark.asyncio
async def test_secondary_failure_does_not_abort_primary(kv) -> None:
    persistence = MultiLayerPersistence([kv, BrokenLayer()])

    outcome = await persistence.write("campaignData", [{"id": "a"}])

    assert outcome.success
    assert outcome.failed_layers == ["broken"]
    assert "unavailable" in outcome.error_summary()
    assert await persistence.read("campaignData") == [{"id": "a"}]


@pytest.mark.asyncio
async def test_primary_failure_still_writes_secondary(sqlite_layer) -> None:
    persistence = MultiLayerPersistence([BrokenLayer(), sqlite_layer])

    outcome = await persistence.write("campaignData", [{"id": "a"}])

    assert not outcome.success
    assert json.loads(await sqlite_layer.read("campaignData")) == [{"id": "a"}]
    assert await persistence.read("campaignData") == [{"id": "a"}]


@pytest.mark.asyncio
async def test_quota_failure_enforces_and_retries(advisories) -> None:
    store = KeyValueStore(MemoryBackend(), capacity_bytes=2000)
    store.set_item("orphan", "x" * 1900)
    guard = StorageSizeGuard(store, advisories=advisories)
    persistence = MultiLayerPersistence([store], guard=guard, advisories=advisories)

    outcome = await persistence.write("campaignData", [{"id": "x" * 200}])

    assert outcome.success
    assert store.get_item("orphan") is None


@pytest.mark.asyncio
async def test_quota_failure_after_enforce_advises_backup(advisories) -> None:
    store = KeyValueStore(MemoryBackend(), capacity_bytes=1024)
    guard = StorageSizeGuard(store, advisories=advisories)
    persistence = MultiLayerPersistence([store], guard=guard, advisories=advisories)

    outcome = await persistence.write("campaignData", [{"id": "x" * 2000}])

    assert not outcome.success
    assert any(a.action == "export_backup" for a in advisories.history)


def test_write_primary_sync_only_touches_primary(kv, sqlite_layer) -> None:
    persistence = MultiLayerPersistence([kv, sqlite_layer])

    assert persistence.write_primary_sync("campaignData", [{"id": "a"}]) is True
    assert kv.get_json("campaignData") == [{"id": "a"}]
    assert sqlite_layer.read_sync("campaignData") is None


def test_write_primary_sync_requires_key_value_primary(sqlite_layer) -> None:
    persistence = MultiLayerPersistence([sqlite_layer])

    assert persistence.write_primary_sync("campaignData", []) is False


@pytest.mark.asyncio
async def test_push_remote_reports_failures_without_raising(kv) -> None:
    remote = AsyncMock()
    remote.save.side_effect = RuntimeError("boom")
    persistence = MultiLayerPersistence([kv], remote=remote)

    result = await persistence.push_remote([{"id": "a"}])

    assert result == RemoteSyncResult(False, "boom")


@pytest.mark.asyncio
async def test_push_remote_without_remote_is_none(persistence) -> None:
    assert await persistence.push_remote([]) is None


@pytest.mark.asyncio
async def test_clear_all_reports_per_layer(kv) -> None:
    kv.set_item("a", "1")
    persistence = MultiLayerPersistence([kv, BrokenLayer()])

    outcomes = await persistence.clear_all()

    assert [(o.layer, o.success) for o in outcomes] == [("local_storage", True), ("broken", False)]
    assert kv.entries() == {}


def test_requires_a_layer() -> None:
    with pytest.raises(ValueError):
        MultiLayerPersistence([])
