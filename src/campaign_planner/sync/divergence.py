"""Detects drift between a repository's working copy and its backing store.

This is a polling heuristic, not a merge protocol. Only record identifiers and
counts are compared. When two sessions edit the same record, the later full
snapshot wins and the other edit is lost.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence

from campaign_planner.config import MonitorSettings
from campaign_planner.errors import CampaignStorageError
from campaign_planner.events import EventBus, RecordsMutated, RefreshRequested, Unsubscribe
from campaign_planner.notifications import AdvisoryBus
from campaign_planner.persistence.repository import RecordRepository
from campaign_planner.storage.base import StorageLayer
from campaign_planner.utils.serialization import dumps, is_record_collection

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    SYNCED = "synced"
    DIVERGING = "diverging"
    ERROR = "error"


class Direction(str, Enum):
    LOCAL_AHEAD = "local_ahead"
    REMOTE_AHEAD = "remote_ahead"


@dataclass(frozen=True)
class DivergenceReport:
    state: SyncState
    direction: Direction | None = None
    local_count: int = 0
    remote_count: int = 0
    missing_locally: frozenset[str] = field(default_factory=frozenset)
    missing_remotely: frozenset[str] = field(default_factory=frozenset)
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "direction": self.direction.value if self.direction else None,
            "localCount": self.local_count,
            "remoteCount": self.remote_count,
            "missingLocally": sorted(self.missing_locally),
            "missingRemotely": sorted(self.missing_remotely),
            "error": self.error,
        }


def classify(local_ids: Sequence[str], remote_ids: Sequence[str]) -> DivergenceReport:
    """Compare identifier lists from the working copy and the backing store.

    Local extras take precedence: if both sides have ids the other lacks, the
    local snapshot is pushed and overwrites the backing store.
    """
    local, remote = set(local_ids), set(remote_ids)
    counts = {"local_count": len(local_ids), "remote_count": len(remote_ids)}
    missing_remotely = frozenset(local - remote)
    missing_locally = frozenset(remote - local)

    if not missing_remotely and not missing_locally and len(local_ids) == len(remote_ids):
        return DivergenceReport(SyncState.SYNCED, **counts)
    if missing_remotely or not missing_locally:
        return DivergenceReport(
            SyncState.DIVERGING,
            Direction.LOCAL_AHEAD,
            missing_locally=missing_locally,
            missing_remotely=missing_remotely,
            **counts,
        )
    return DivergenceReport(
        SyncState.DIVERGING, Direction.REMOTE_AHEAD, missing_locally=missing_locally, **counts
    )


class DivergenceMonitor:
    """Polls the backing store and reconciles it with one repository.

    Local ahead: the working copy is written to the backing store. Remote
    ahead: a ``RefreshRequested`` event is published and, unless the
    repository has unsaved edits, it is reloaded. Read failures put the
    monitor in ``ERROR`` and escalate to a persistent advisory after a streak.
    """

    def __init__(
        self,
        repository: RecordRepository,
        *,
        backing: StorageLayer | None = None,
        settings: MonitorSettings | None = None,
        advisories: AdvisoryBus | None = None,
        auto_refresh: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._backing = backing or repository.persistence.primary
        self._settings = settings or MonitorSettings()
        self._advisories = advisories
        self._auto_refresh = auto_refresh
        self._clock = clock

        self._refresh: EventBus[RefreshRequested] = EventBus(f"refresh:{repository.key}")
        self._state = SyncState.SYNCED
        self._last_report: DivergenceReport | None = None
        self._error_streak = 0
        self._escalated = False
        self._last_advisory_at: float | None = None
        self._lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None
        self._unsubscribe: Unsubscribe | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def last_report(self) -> DivergenceReport | None:
        return self._last_report

    @property
    def error_streak(self) -> int:
        return self._error_streak

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def subscribe_refresh(self, listener: Callable[[RefreshRequested], None]) -> Unsubscribe:
        return self._refresh.subscribe(listener)

    def start(self) -> None:
        """Begin polling on the repository's scheduler and watch its mutations."""
        if self.running:
            return
        scheduler = self._repository.scheduler
        self._poll_task = scheduler.every(
            self._settings.poll_interval_seconds,
            self._poll,
            name=f"divergence:{self._repository.key}",
        )
        self._unsubscribe = self._repository.subscribe_mutations(self._on_mutation)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def check(self) -> DivergenceReport:
        async with self._lock:
            report = await self._compare()
            self._state = report.state
            self._last_report = report
            return report

    async def _poll(self) -> None:
        if self._repository.loaded:
            await self.check()

    def _on_mutation(self, event: RecordsMutated) -> None:
        try:
            self._repository.scheduler.spawn(
                self._poll(), name=f"divergence-check:{event.key}"
            )
        except RuntimeError as exc:
            logger.debug("Skipping immediate divergence check: %s", exc)

    async def _compare(self) -> DivergenceReport:
        key = self._repository.key
        local = self._repository.records
        try:
            raw = await self._backing.read(key)
            remote = [] if raw is None else json.loads(raw)
            if not is_record_collection(remote):
                raise ValueError("backing store value is not a list of records")
        except (CampaignStorageError, ValueError) as exc:
            return self._record_error(exc)

        self._error_streak = 0
        self._escalated = False
        schema = self._repository.schema
        report = classify(schema.identifiers(local), schema.identifiers(remote))

        if report.direction is Direction.LOCAL_AHEAD:
            try:
                await self._backing.write(key, dumps(local))
            except CampaignStorageError as exc:
                return self._record_error(exc)
            logger.info(
                "Local %s ahead of backing store (%d vs %d); pushed local snapshot",
                key,
                report.local_count,
                report.remote_count,
            )
        elif report.direction is Direction.REMOTE_AHEAD:
            await self._handle_remote_ahead(report)
        return report

    async def _handle_remote_ahead(self, report: DivergenceReport) -> None:
        key = self._repository.key
        if self._repository.is_dirty:
            # pending local edits will overwrite the backing store on commit
            logger.debug("Backing store ahead for %s but local edits are pending", key)
            return

        logger.info("Backing store has %d %s records missing locally", len(report.missing_locally), key)
        self._refresh.publish(RefreshRequested(key=key, missing_ids=report.missing_locally))
        now = self._clock()
        cooldown = self._settings.advisory_cooldown_seconds
        if self._advisories and (self._last_advisory_at is None or now - self._last_advisory_at >= cooldown):
            self._last_advisory_at = now
            self._advisories.advise(
                "info",
                "Newer data was saved in another session; refreshing.",
                source=f"divergence:{key}",
            )
        if self._auto_refresh:
            await self._repository.reload()

    def _record_error(self, exc: Exception) -> DivergenceReport:
        key = self._repository.key
        self._error_streak += 1
        logger.warning("Divergence check for %s failed (%d in a row): %s", key, self._error_streak, exc)
        if (
            self._error_streak >= self._settings.error_streak_threshold
            and not self._escalated
            and self._advisories
        ):
            self._escalated = True
            self._advisories.advise(
                "error",
                "Stored data could not be read repeatedly. Reset and reload to recover.",
                source=f"divergence:{key}",
                persistent=True,
                action="reset_and_reload",
            )
        return DivergenceReport(SyncState.ERROR, error=str(exc))
