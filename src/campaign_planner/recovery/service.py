"""Corruption repair, full reset and JSON backups."""

from __future__ import annotations

import inspect
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

from campaign_planner.domain.schema import CAMPAIGN_SCHEMA, RecordSchema
from campaign_planner.notifications import AdvisoryBus, AdvisoryLevel
from campaign_planner.persistence.multi_layer import LayerOutcome, MultiLayerPersistence
from campaign_planner.utils.serialization import dumps
from campaign_planner.utils.time import utc_now

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0"

ReloadCallback = Callable[[], Union[None, Awaitable[None]]]


def backup_filename(when: datetime | None = None) -> str:
    stamp = (when or utc_now()).strftime("%Y-%m-%d")
    return f"campaign-backup-{stamp}.json"


class DataRecoveryService:
    """Repairs damaged collections and resets or backs up stored data.

    ``reset_all`` clears every storage layer and then calls the reload
    callback supplied by the host, which is expected to reload repositories.
    """

    def __init__(
        self,
        persistence: MultiLayerPersistence,
        *,
        backup_dir: str | Path,
        schema: RecordSchema = CAMPAIGN_SCHEMA,
        on_reload: ReloadCallback | None = None,
        advisories: AdvisoryBus | None = None,
    ) -> None:
        self._persistence = persistence
        self._backup_dir = Path(backup_dir)
        self._schema = schema
        self._on_reload = on_reload
        self._advisories = advisories

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def set_reload_callback(self, callback: ReloadCallback | None) -> None:
        self._on_reload = callback

    def repair(self, raw: Any, schema: RecordSchema | None = None) -> list[dict[str, Any]]:
        """Coerce ``raw`` into a well-formed collection. Never raises."""
        schema = schema or self._schema
        try:
            return schema.repair(raw)
        except Exception:
            logger.exception("Repair of %s data failed; treating as empty", schema.name)
            return []

    async def reset_all(self) -> list[LayerOutcome]:
        outcomes = await self._persistence.clear_all()
        failed = [outcome.layer for outcome in outcomes if not outcome.success]
        if failed:
            logger.error("Reset left data in layers: %s", ", ".join(failed))
        else:
            logger.warning("All storage layers cleared")
        if self._on_reload is not None:
            result = self._on_reload()
            if inspect.isawaitable(result):
                await result
        return outcomes

    def build_backup(self, records: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "records": records,
            "timestamp": utc_now().isoformat().replace("+00:00", "Z"),
            "version": BACKUP_VERSION,
        }

    def export_backup(
        self, records: list[dict[str, Any]], directory: str | Path | None = None
    ) -> Path | None:
        """Write a dated backup file and return its path.

        A backup written earlier on the same day is overwritten. Returns None
        and posts an error advisory when the file cannot be written.
        """
        target_dir = Path(directory) if directory is not None else self._backup_dir
        path = target_dir / backup_filename()
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(dumps(self.build_backup(records), pretty=True), encoding="utf-8")
        except OSError as exc:
            logger.error("Could not write backup %s: %s", path, exc)
            self._advise("error", f"Backup export failed: {exc}")
            return None
        logger.info("Exported %d records to %s", len(records), path)
        return path

    def load_backup(
        self, path: str | Path, schema: RecordSchema | None = None
    ) -> list[dict[str, Any]] | None:
        """Read a backup file; its records are repaired before being returned.

        Unreadable files and other JSON documents give None plus a warning
        advisory.
        """
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Cannot read backup %s: %s", path, exc)
            self._advise("warning", f"Cannot read backup {Path(path).name}: {exc}")
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
            logger.warning("%s is not a campaign backup", path)
            self._advise("warning", f"{Path(path).name} is not a campaign backup")
            return None
        version = payload.get("version")
        if version != BACKUP_VERSION:
            logger.warning("Backup %s has version %r, expected %s", path, version, BACKUP_VERSION)
        return self.repair(payload["records"], schema)

    def _advise(self, level: AdvisoryLevel, message: str) -> None:
        if self._advisories is not None:
            self._advisories.advise(level, message, source="recovery")
