from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import bulky_campaigns, campaigns, guarded_persistence, make_repository

from campaign_planner.config import MonitorSettings
from campaign_planner.persistence.multi_layer import MultiLayerPersistence
from campaign_planner.storage.kv_store import KeyValueStore
from campaign_planner.sync.divergence import (
    Direction,
    DivergenceMonitor,
    SyncState,
    classify,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    ("local", "remote", "state", "direction"),
    [
        ([], [], SyncState.SYNCED, None),
        (["a", "b"], ["b", "a"], SyncState.SYNCED, None),
        (["a", "b"], ["a"], SyncState.DIVERGING, Direction.LOCAL_AHEAD),
        (["a"], ["a", "b"], SyncState.DIVERGING, Direction.REMOTE_AHEAD),
        ([], ["a"], SyncState.DIVERGING, Direction.REMOTE_AHEAD),
        (["a", "a"], ["a"], SyncState.DIVERGING, Direction.LOCAL_AHEAD),
        (["a", "c"], ["a", "b"], SyncState.DIVERGING, Direction.LOCAL_AHEAD),
    ],
)
def test_classify(local, remote, state, direction) -> None:
    report = classify(local, remote)

    assert report.state is state
    assert report.direction is direction


def test_classify_reports_missing_ids() -> None:
    report = classify(["a", "c"], ["a", "b"])

    assert report.missing_remotely == frozenset({"c"})
    assert report.missing_locally == frozenset({"b"})
    assert report.to_dict()["direction"] == "local_ahead"


@pytest.fixture
def shared_sessions(backend, recovery):
    def _session(**overrides):
        persistence = MultiLayerPersistence([KeyValueStore(backend)])
        return make_repository(persistence, recovery, debounce_seconds=10, **overrides)

    return _session


@pytest.mark.asyncio
async def test_local_ahead_pushes_snapshot(shared_sessions) -> None:
    repository = shared_sessions()
    await repository.load()
    monitor = DivergenceMonitor(repository)
    repository.mutate(campaigns("Launch"))

    report = await monitor.check()

    assert report.direction is Direction.LOCAL_AHEAD
    assert monitor.state is SyncState.DIVERGING
    assert repository.persistence.primary.get_json("campaignData") == repository.records
    assert (await monitor.check()).state is SyncState.SYNCED
    await repository.close()


@pytest.mark.asyncio
async def test_local_ahead_always_calls_push(shared_sessions) -> None:
    repository = shared_sessions()
    await repository.load()
    backing = AsyncMock()
    backing.read.return_value = "[]"
    monitor = DivergenceMonitor(repository, backing=backing)
    repository.mutate(campaigns("Launch"))

    await monitor.check()

    backing.write.assert_awaited_once()
    assert backing.write.await_args.args[0] == "campaignData"
    await repository.close()


@pytest.mark.asyncio
async def test_remote_ahead_refreshes_idle_session(shared_sessions, advisories) -> None:
    writer = shared_sessions()
    reader = shared_sessions()
    await writer.load()
    await reader.load()
    monitor = DivergenceMonitor(reader, advisories=advisories)
    refreshes = []
    monitor.subscribe_refresh(refreshes.append)

    writer.mutate(campaigns("Launch"))
    await writer.force_save()
    report = await monitor.check()

    assert report.direction is Direction.REMOTE_AHEAD
    assert refreshes[0].missing_ids == frozenset({"c-1"})
    assert [r["id"] for r in reader.records] == ["c-1"]
    assert any(a.source == "divergence:campaignData" for a in advisories.history)
    assert (await monitor.check()).state is SyncState.SYNCED
    await writer.close()
    await reader.close()


@pytest.mark.asyncio
async def test_remote_ahead_does_not_clobber_pending_edits(shared_sessions) -> None:
    writer = shared_sessions()
    reader = shared_sessions()
    await writer.load()
    writer.mutate(campaigns("One", "Two"))
    await writer.force_save()
    await reader.load()

    # reader deletes a record; its commit is still pending
    reader.mutate(reader.records[:1])
    monitor = DivergenceMonitor(reader)
    refreshes = []
    monitor.subscribe_refresh(refreshes.append)

    report = await monitor.check()

    assert report.direction is Direction.REMOTE_AHEAD
    assert refreshes == []
    assert len(reader.records) == 1
    await writer.close()
    await reader.close()


@pytest.mark.asyncio
async def test_remote_ahead_advisory_rate_limited(shared_sessions, advisories) -> None:
    writer = shared_sessions()
    reader = shared_sessions()
    await writer.load()
    await reader.load()
    clock = FakeClock()
    monitor = DivergenceMonitor(reader, advisories=advisories, auto_refresh=False, clock=clock)
    writer.mutate(campaigns("Launch"))
    await writer.force_save()

    await monitor.check()
    await monitor.check()
    clock.now += 30
    await monitor.check()
    first_window = [a for a in advisories.history if a.source.startswith("divergence")]
    clock.now += 31
    await monitor.check()
    second_window = [a for a in advisories.history if a.source.startswith("divergence")]

    assert len(first_window) == 1
    assert len(second_window) == 2
    await writer.close()
    await reader.close()


@pytest.mark.asyncio
async def test_read_failures_escalate_after_streak(shared_sessions, advisories) -> None:
    repository = shared_sessions()
    await repository.load()
    monitor = DivergenceMonitor(
        repository, settings=MonitorSettings(error_streak_threshold=3), advisories=advisories
    )
    repository.persistence.primary.set_item("campaignData", "{corrupt")

    for _ in range(4):
        report = await monitor.check()

    assert report.state is SyncState.ERROR
    assert monitor.error_streak == 4
    escalations = [a for a in advisories.history if a.action == "reset_and_reload"]
    assert len(escalations) == 1
    assert escalations[0].persistent is True

    repository.persistence.primary.set_item("campaignData", "[]")
    assert (await monitor.check()).state is SyncState.SYNCED
    assert monitor.error_streak == 0
    await repository.close()


@pytest.mark.asyncio
async def test_mutation_triggers_immediate_check(shared_sessions) -> None:
    repository = shared_sessions()
    await repository.load()
    monitor = DivergenceMonitor(repository, settings=MonitorSettings(poll_interval_seconds=60))
    monitor.start()
    assert monitor.running

    repository.mutate(campaigns("Launch"))
    await asyncio.sleep(0.05)

    assert monitor.last_report is not None
    assert monitor.last_report.direction is Direction.LOCAL_AHEAD
    assert repository.persistence.primary.get_json("campaignData")[0]["id"] == "c-1"

    monitor.stop()
    assert not monitor.running
    await repository.close()


@pytest.mark.asyncio
async def test_polling_runs_on_repository_scheduler(shared_sessions) -> None:
    repository = shared_sessions()
    await repository.load()
    monitor = DivergenceMonitor(repository, settings=MonitorSettings(poll_interval_seconds=0.02))
    monitor.start()

    await asyncio.sleep(0.1)
    assert monitor.last_report is not None
    assert monitor.state is SyncState.SYNCED

    await repository.close()
    assert not monitor.running


@pytest.mark.asyncio
async def test_capacity_eviction_is_not_pushed_back(recovery) -> None:
    persistence, guard = guarded_persistence()
    repository = make_repository(persistence, recovery, debounce_seconds=10)
    await repository.load()
    repository.mutate(bulky_campaigns(5))
    await repository.force_save()
    assert guard.get_usage().fraction_used >= 0.7
    monitor = DivergenceMonitor(repository)

    guard.enforce()
    report = await monitor.check()

    assert report.state is SyncState.SYNCED
    assert report.direction is None
    stored = persistence.primary.get_json("campaignData")
    assert [record["id"] for record in stored] == ["c-4", "c-5"]
    assert guard.get_usage().fraction_used < 0.7
    await repository.close()
