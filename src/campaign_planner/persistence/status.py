"""Save status of a repository and its persisted beacon."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from campaign_planner.errors import CampaignStorageError
from campaign_planner.storage.kv_store import KeyValueStore
from campaign_planner.utils.time import format_elapsed, parse_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaveStatus:
    last_saved: datetime | None = None
    in_flight: bool = False
    last_error: str | None = None

    @property
    def formatted_last_saved(self) -> str:
        return format_elapsed(self.last_saved)

    def started(self) -> "SaveStatus":
        return replace(self, in_flight=True, last_error=None)

    def succeeded(self, timestamp: datetime) -> "SaveStatus":
        return SaveStatus(last_saved=timestamp, in_flight=False, last_error=None)

    def failed(self, error: str) -> "SaveStatus":
        return replace(self, in_flight=False, last_error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastSaved": self.last_saved.isoformat() if self.last_saved else None,
            "formattedLastSaved": self.formatted_last_saved,
            "inFlight": self.in_flight,
            "lastError": self.last_error,
        }


def write_beacon(store: KeyValueStore, status_key: str, record_key: str, timestamp: datetime) -> bool:
    """Persist ``{timestamp, key}`` so "last saved" survives a restart."""
    try:
        store.set_json(status_key, {"timestamp": timestamp.isoformat(), "key": record_key})
    except CampaignStorageError as exc:
        logger.warning("Could not write save beacon %s: %s", status_key, exc)
        return False
    return True


def read_beacon(store: KeyValueStore, status_key: str) -> datetime | None:
    beacon = store.get_json(status_key)
    if not isinstance(beacon, dict):
        return None
    return parse_iso(beacon.get("timestamp"))
