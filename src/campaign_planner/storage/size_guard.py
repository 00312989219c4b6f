"""Capacity monitoring and eviction for the primary key-value store."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from campaign_planner.config import GuardSettings
from campaign_planner.errors import CampaignStorageError
from campaign_planner.events import EventBus, RecordsEvicted, Unsubscribe
from campaign_planner.notifications import AdvisoryBus
from campaign_planner.scheduling import Scheduler
from campaign_planner.storage.kv_store import KeyValueStore
from campaign_planner.utils.serialization import byte_size, dumps, is_record_collection

logger = logging.getLogger(__name__)

_LARGE_ITEM_BYTES = 1024 * 1024
_MANY_ITEMS = 50


@dataclass(frozen=True)
class StorageUsage:
    bytes_used: int
    capacity_bytes: int
    per_key: dict[str, int] = field(default_factory=dict)

    @property
    def fraction_used(self) -> float:
        if self.capacity_bytes <= 0:
            return 1.0
        return self.bytes_used / self.capacity_bytes

    @property
    def percent_of_cap(self) -> float:
        return round(self.fraction_used * 100, 2)

    def largest(self, limit: int = 5) -> list[tuple[str, int]]:
        return sorted(self.per_key.items(), key=lambda item: item[1], reverse=True)[:limit]


def minimal_projection(record: dict[str, Any]) -> dict[str, Any]:
    """Drop empty and zero-valued fields, keeping the id."""
    projected = {"id": record.get("id")}
    for key, value in record.items():
        if key == "id" or value in ("", None, 0, False) or value == [] or value == {}:
            continue
        projected[key] = value
    return projected


class StorageSizeGuard:
    """Keeps the key-value store under its capacity.

    Above the soft threshold only an advisory is raised. At or above the hard
    threshold ``enforce`` evicts data in three escalating steps and stops as
    soon as usage drops back under the hard threshold.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: GuardSettings | None = None,
        advisories: AdvisoryBus | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or GuardSettings()
        self._advisories = advisories
        self._evictions: EventBus[RecordsEvicted] = EventBus("evictions")

    @property
    def settings(self) -> GuardSettings:
        return self._settings

    def subscribe_evictions(self, listener: Callable[[RecordsEvicted], None]) -> Unsubscribe:
        """Owners of a stored collection learn what the guard left behind."""
        return self._evictions.subscribe(listener)

    def get_usage(self) -> StorageUsage:
        per_key = {key: byte_size(key, value) for key, value in self._store.entries().items()}
        return StorageUsage(
            bytes_used=sum(per_key.values()),
            capacity_bytes=self._store.capacity_bytes,
            per_key=per_key,
        )

    def is_known_key(self, key: str) -> bool:
        return any(key.startswith(prefix) for prefix in self._settings.known_prefixes)

    def recommendations(self, usage: StorageUsage | None = None) -> list[str]:
        usage = usage or self.get_usage()
        recommendations: list[str] = []
        if usage.fraction_used >= self._settings.hard_threshold:
            recommendations.append("Storage is critically full; export a backup and clean up")
        elif usage.fraction_used >= self._settings.soft_threshold:
            recommendations.append("Storage is near capacity; consider cleanup")
        if any(size > _LARGE_ITEM_BYTES for size in usage.per_key.values()):
            recommendations.append("Large data items found; consider compression or cleanup")
        if len(usage.per_key) > _MANY_ITEMS:
            recommendations.append("Many storage items; consider removing unused data")
        return recommendations

    def check(self) -> StorageUsage:
        """Advise above the soft threshold, enforce at the hard threshold."""
        usage = self.get_usage()
        if usage.fraction_used >= self._settings.hard_threshold:
            self.enforce()
            return self.get_usage()
        if usage.fraction_used >= self._settings.soft_threshold and self._advisories:
            self._advisories.advise(
                "warning",
                f"Storage is {usage.percent_of_cap:.0f}% full; consider exporting a backup",
                source="storage",
            )
        return usage

    def enforce(self) -> int:
        """Evict data until usage is under the hard threshold.

        Returns the number of bytes reclaimed; 0 when already under the limit.
        """
        if not self._over_hard():
            return 0

        logger.warning("Storage over hard threshold, enforcing capacity limits")
        reclaimed = self._trim_collections()
        if self._over_hard():
            reclaimed += self._remove_unrecognized_keys()
        if self._over_hard():
            reclaimed += self._clear_oversized_keys()

        if self._over_hard():
            logger.error("Capacity enforcement could not get storage under the hard threshold")
            if self._advisories:
                self._advisories.advise(
                    "error",
                    "Storage is full and could not be cleaned up. Export a backup now.",
                    source="storage",
                    persistent=True,
                    action="export_backup",
                )
        logger.info("Capacity enforcement reclaimed %d bytes", reclaimed)
        return reclaimed

    def start(self, scheduler: Scheduler) -> None:
        async def _sweep() -> None:
            self.check()

        scheduler.every(
            self._settings.sweep_interval_seconds,
            _sweep,
            name="storage-sweep",
            run_immediately=True,
        )

    def _over_hard(self) -> bool:
        return self.get_usage().fraction_used >= self._settings.hard_threshold

    def _replace(
        self,
        key: str,
        value: list[dict[str, Any]],
        reason: str,
        removed_ids: frozenset[str] = frozenset(),
    ) -> int:
        before = self.get_usage().per_key.get(key, 0)
        try:
            self._store.set_item(key, dumps(value))
        except CampaignStorageError as exc:
            logger.warning("Could not rewrite %s during %s: %s", key, reason, exc)
            return 0
        freed = before - self.get_usage().per_key.get(key, 0)
        logger.warning("Evicted %s from %s: freed %d bytes", reason, key, freed)
        self._evictions.publish(RecordsEvicted(key=key, removed_ids=removed_ids, records=value))
        return max(freed, 0)

    def _remove(self, key: str, reason: str) -> int:
        freed = self.get_usage().per_key.get(key, 0)
        removed_ids = _record_ids(self._store.get_item(key))
        self._store.remove_item(key)
        logger.warning("Removed %s %s: freed %d bytes", reason, key, freed)
        self._evictions.publish(RecordsEvicted(key=key, removed_ids=removed_ids))
        return freed

    def _trim_collections(self) -> int:
        reclaimed = 0
        limit = self._settings.max_retained_records
        for key, raw in self._store.entries().items():
            if not self.is_known_key(key):
                continue
            try:
                records = json.loads(raw)
            except ValueError:
                continue
            if not is_record_collection(records) or len(records) <= limit:
                continue

            excess = set(_oldest_indices(records, len(records) - limit))
            projected = [
                minimal_projection(record) if index in excess else record
                for index, record in enumerate(records)
            ]
            reclaimed += self._replace(key, projected, f"{len(excess)} old records (compressed)")
            if not self._over_hard():
                break

            kept = [record for index, record in enumerate(records) if index not in excess]
            removed = frozenset(str(records[index].get("id")) for index in excess)
            reclaimed += self._replace(key, kept, f"{len(excess)} old records", removed)
            if not self._over_hard():
                break
        return reclaimed

    def _remove_unrecognized_keys(self) -> int:
        reclaimed = 0
        for key in list(self._store.entries()):
            if self.is_known_key(key):
                continue
            reclaimed += self._remove(key, "unrecognized key")
            if not self._over_hard():
                break
        return reclaimed

    def _clear_oversized_keys(self) -> int:
        reclaimed = 0
        for key, size in self.get_usage().largest(limit=len(self._store.entries())):
            if size <= self._settings.max_item_bytes:
                break
            reclaimed += self._remove(key, "oversized key")
            if not self._over_hard():
                break
        return reclaimed


def _record_ids(raw: str | None) -> frozenset[str]:
    if raw is None:
        return frozenset()
    try:
        value = json.loads(raw)
    except ValueError:
        return frozenset()
    if not is_record_collection(value):
        return frozenset()
    return frozenset(str(record.get("id")) for record in value)

def _oldest_indices(records: list[dict[str, Any]], count: int) -> list[int]:
    """Indices of the ``count`` oldest records.

    Records with a ``createdAt`` stamp are ordered by it; unstamped records
    count as older than stamped ones and keep their list order.
    """

    def _age_key(index: int) -> tuple[int, str, int]:
        created = records[index].get("createdAt")
        if isinstance(created, str) and created:
            return (1, created, index)
        return (0, "", index)

    ordered = sorted(range(len(records)), key=_age_key)
    return ordered[:count]
