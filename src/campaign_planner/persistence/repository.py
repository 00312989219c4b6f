"""Stateful owner of one record collection's in-memory working copy.

The repository loads a collection once, hands out copies, accepts whole
collection replacements through ``mutate`` and persists them with a trailing
debounce. Nothing public here raises: failures become ``SaveReport`` outcomes,
``SaveStatus.last_error`` and advisories.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable

from campaign_planner.domain.schema import RecordSchema
from campaign_planner.events import (
    EventBus,
    RecordsEvicted,
    RecordsMutated,
    SaveCompleted,
    StorageChange,
    Unsubscribe,
)
from campaign_planner.notifications import AdvisoryBus, AdvisoryLevel
from campaign_planner.persistence.multi_layer import (
    LayerOutcome,
    MultiLayerPersistence,
    WriteOutcome,
)
from campaign_planner.persistence.status import SaveStatus, read_beacon, write_beacon
from campaign_planner.scheduling import Debouncer, Scheduler
from campaign_planner.storage.kv_store import KeyValueStore
from campaign_planner.sync.remote import RemoteSyncResult
from campaign_planner.utils.time import utc_now

if TYPE_CHECKING:
    from campaign_planner.recovery.service import DataRecoveryService

logger = logging.getLogger(__name__)

Records = list[dict[str, Any]]


@dataclass(frozen=True)
class SaveReport:
    """Outcome of an explicit save; local and remote are reported separately."""

    local: WriteOutcome
    remote: RemoteSyncResult | None = None

    @property
    def success(self) -> bool:
        return self.local.success

    def to_dict(self) -> dict[str, Any]:
        report: dict[str, Any] = {
            "success": self.local.success,
            "local": {
                "success": self.local.success,
                "failedLayers": self.local.failed_layers,
                "error": self.local.error_summary(),
            },
            "remote": None,
        }
        if self.remote is not None:
            report["remote"] = {"success": self.remote.success, "message": self.remote.message}
        return report


class RecordRepository:
    def __init__(
        self,
        key: str,
        *,
        schema: RecordSchema,
        persistence: MultiLayerPersistence,
        recovery: DataRecoveryService,
        scheduler: Scheduler | None = None,
        debounce_seconds: float = 0.5,
        status_key: str | None = None,
        advisories: AdvisoryBus | None = None,
        default_records: Callable[[], Records] | None = None,
        normalize: Callable[[Records], Records] | None = None,
        remote_sync: bool = True,
        push_remote_on_commit: bool = False,
    ) -> None:
        self._key = key
        self._schema = schema
        self._persistence = persistence
        self._recovery = recovery
        self._scheduler = scheduler or Scheduler(f"repository:{key}")
        self._status_key = status_key
        self._advisories = advisories
        self._default_records = default_records
        self._normalize = normalize
        self._remote_sync = remote_sync
        self._push_remote_on_commit = remote_sync and push_remote_on_commit

        self._records: Records = []
        self._loaded = False
        self._dirty = False
        self._generation = 0
        self._status = SaveStatus()
        self._closed = False

        self._saved: EventBus[SaveCompleted] = EventBus(f"saved:{key}")
        self._mutations: EventBus[RecordsMutated] = EventBus(f"mutations:{key}")
        self._debouncer = Debouncer(
            self._scheduler, debounce_seconds, self._debounced_commit, name=f"commit:{key}"
        )
        self._beacon_unsubscribe: Unsubscribe | None = None
        if status_key and isinstance(persistence.primary, KeyValueStore):
            self._beacon_unsubscribe = persistence.primary.subscribe(self._on_storage_change)
        self._eviction_unsubscribe: Unsubscribe | None = None
        if persistence.guard is not None:
            self._eviction_unsubscribe = persistence.guard.subscribe_evictions(self._on_eviction)

    @property
    def key(self) -> str:
        return self._key

    @property
    def schema(self) -> RecordSchema:
        return self._schema

    @property
    def persistence(self) -> MultiLayerPersistence:
        return self._persistence

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def records(self) -> Records:
        return [dict(record) for record in self._records]

    @property
    def status(self) -> SaveStatus:
        return self._status

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def is_dirty(self) -> bool:
        """True while local edits have not reached the storage layers."""
        return self._dirty or self._debouncer.pending

    def subscribe_saved(self, listener: Callable[[SaveCompleted], None]) -> Unsubscribe:
        return self._saved.subscribe(listener)

    def subscribe_mutations(self, listener: Callable[[RecordsMutated], None]) -> Unsubscribe:
        return self._mutations.subscribe(listener)

    async def load(self) -> Records:
        try:
            records = await self._read_records()
        except Exception as exc:
            logger.exception("Loading %s failed", self._key)
            self._advise("warning", f"Could not load saved {self._schema.name}; starting empty: {exc}")
            records = []
        self._records = records
        self._loaded = True
        self._dirty = False
        if self._status_key and isinstance(self._persistence.primary, KeyValueStore):
            self._status = SaveStatus(
                last_saved=read_beacon(self._persistence.primary, self._status_key)
            )
        logger.info("Loaded %d %s records", len(records), self._schema.name)
        return self.records

    async def reload(self) -> Records:
        """Discard the working copy and load the collection again."""
        self._debouncer.cancel()
        await self._debouncer.wait_idle()
        return await self.load()

    def mutate(self, records: Iterable[dict[str, Any]]) -> None:
        """Replace the working copy and schedule a debounced commit.

        Records pass through the schema first, so derived fields always
        reflect their inputs.
        """
        if self._closed:
            logger.warning("Ignoring mutation of %s after close", self._key)
            return
        self._records = self._schema.repair(list(records))
        self._schedule_commit()
        self._mutations.publish(RecordsMutated(key=self._key, record_count=len(self._records)))

    def on_unload(self) -> bool:
        """Flush pending edits synchronously to the primary store only."""
        pending = self._debouncer.cancel()
        if not (pending or self._dirty):
            return True
        written = self._persistence.write_primary_sync(self._key, self._records)
        if written:
            self._dirty = False
            self._write_beacon(utc_now())
            logger.info("Flushed %d %s records on unload", len(self._records), self._schema.name)
        else:
            logger.error("Unload flush of %s failed; latest edits may be lost", self._key)
        return written

    async def force_save(self) -> SaveReport:
        self._debouncer.cancel()
        await self._debouncer.wait_idle()
        snapshot = self.records
        local = await self._commit(snapshot, source="force_save")
        remote = await self._persistence.push_remote(snapshot) if self._remote_sync else None
        if remote is not None and not remote.success:
            self._advise("warning", f"Saved locally, but remote sync failed: {remote.message}")
        return SaveReport(local=local, remote=remote)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._debouncer.cancel()
        if self._beacon_unsubscribe is not None:
            self._beacon_unsubscribe()
            self._beacon_unsubscribe = None
        if self._eviction_unsubscribe is not None:
            self._eviction_unsubscribe()
            self._eviction_unsubscribe = None
        await self._scheduler.close()

    async def _read_records(self) -> Records:
        value, source = await self._persistence.read_with_source(self._key)
        if source is None:
            salvaged = await self._persistence.salvage(self._key)
            if salvaged is None:
                records = self._default_records() if self._default_records else []
            else:
                logger.warning("No layer holds valid %s data; repairing salvaged value", self._key)
                records = self._recovery.repair(salvaged, self._schema)
                self._advise("info", f"Recovered {len(records)} {self._schema.name} from damaged storage")
        elif not self._schema.is_well_formed(value):
            logger.warning("Repairing malformed %s records read from %s", self._key, source)
            records = self._recovery.repair(value, self._schema)
        else:
            records = value
        if self._normalize is not None:
            records = self._normalize(records)
        return records

    def _schedule_commit(self) -> None:
        self._generation += 1
        self._dirty = True
        try:
            self._debouncer.trigger()
        except RuntimeError as exc:
            logger.warning("Cannot schedule commit of %s (%s); kept in memory", self._key, exc)

    async def _debounced_commit(self) -> None:
        snapshot = self.records
        outcome = await self._commit(snapshot, source="commit")
        if outcome.success and self._push_remote_on_commit:
            await self._persistence.push_remote(snapshot)

    async def _commit(self, snapshot: Records, *, source: str) -> WriteOutcome:
        generation = self._generation
        self._status = self._status.started()
        try:
            outcome = await self._persistence.write(self._key, snapshot)
        except Exception as exc:
            logger.exception("Commit of %s failed unexpectedly", self._key)
            outcome = WriteOutcome(
                self._key,
                tuple(LayerOutcome(layer.name, False, str(exc)) for layer in self._persistence.layers),
            )

        if not outcome.success:
            error = outcome.error_summary() or "primary layer write failed"
            self._status = self._status.failed(error)
            self._advise("warning", f"Saving {self._schema.name} failed: {error}")
            return outcome

        timestamp = utc_now()
        self._status = self._status.succeeded(timestamp)
        if generation == self._generation:
            self._dirty = False
        self._write_beacon(timestamp)
        self._saved.publish(
            SaveCompleted(key=self._key, timestamp=timestamp, record_count=len(snapshot), source=source)
        )
        return outcome

    def _write_beacon(self, timestamp: datetime) -> None:
        primary = self._persistence.primary
        if self._status_key and isinstance(primary, KeyValueStore):
            self._status = replace(self._status, last_saved=timestamp)
            write_beacon(primary, self._status_key, self._key, timestamp)

    def _on_storage_change(self, change: StorageChange) -> None:
        if change.key != self._status_key or change.new_value is None:
            return
        primary = self._persistence.primary
        if not isinstance(primary, KeyValueStore):
            return
        timestamp = read_beacon(primary, change.key)
        if timestamp is None or timestamp == self._status.last_saved:
            return
        self._status = replace(self._status, last_saved=timestamp)
        self._saved.publish(
            SaveCompleted(
                key=self._key,
                timestamp=timestamp,
                record_count=len(self._records),
                source="storage",
            )
        )

    def _on_eviction(self, event: RecordsEvicted) -> None:
        if event.key != self._key or not self._loaded or self._closed:
            return
        if self.is_dirty:
            # the pending commit must not write evicted records back
            kept = [r for r in self._records if str(r.get("id")) not in event.removed_ids]
            if len(kept) != len(self._records):
                logger.info(
                    "Dropping %d evicted %s records from pending edits",
                    len(self._records) - len(kept),
                    self._key,
                )
                self._records = kept
                self._schedule_commit()
            return
        records = self._schema.repair(event.records or [])
        if self._normalize is not None:
            records = self._normalize(records)
        self._records = records
        logger.info("Adopted %d %s records left by storage eviction", len(records), self._key)

    def _advise(self, level: AdvisoryLevel, message: str) -> None:
        if self._advisories is not None:
            self._advisories.advise(level, message, source=f"repository:{self._key}")
