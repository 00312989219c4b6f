"""Fan-out writes and fallback reads across the storage layers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from campaign_planner.errors import CampaignStorageError, StorageQuotaExceededError
from campaign_planner.notifications import AdvisoryBus
from campaign_planner.storage.base import StorageLayer
from campaign_planner.storage.kv_store import KeyValueStore
from campaign_planner.storage.size_guard import StorageSizeGuard
from campaign_planner.sync.remote import RemoteSyncAdapter, RemoteSyncResult
from campaign_planner.utils.serialization import dumps, is_record_collection

logger = logging.getLogger(__name__)

StructureCheck = Callable[[Any], bool]


@dataclass(frozen=True)
class LayerOutcome:
    layer: str
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class WriteOutcome:
    key: str
    layers: tuple[LayerOutcome, ...]

    @property
    def success(self) -> bool:
        """A write counts as successful when the primary layer took it."""
        return bool(self.layers) and self.layers[0].success

    @property
    def failed_layers(self) -> list[str]:
        return [outcome.layer for outcome in self.layers if not outcome.success]

    def error_summary(self) -> str | None:
        errors = [f"{o.layer}: {o.error}" for o in self.layers if not o.success]
        return "; ".join(errors) or None


class MultiLayerPersistence:
    """Reads from the first healthy layer and writes to all of them.

    Layers are given in priority order: the fast, small primary store first,
    larger fallbacks after it. The optional remote adapter is never written by
    ``write``; callers push to it explicitly with ``push_remote``.
    """

    def __init__(
        self,
        layers: Sequence[StorageLayer],
        *,
        remote: RemoteSyncAdapter | None = None,
        guard: StorageSizeGuard | None = None,
        advisories: AdvisoryBus | None = None,
    ) -> None:
        if not layers:
            raise ValueError("at least one storage layer is required")
        self._layers = list(layers)
        self._remote = remote
        self._guard = guard
        self._advisories = advisories

    @property
    def layers(self) -> list[StorageLayer]:
        return list(self._layers)

    @property
    def primary(self) -> StorageLayer:
        return self._layers[0]

    @property
    def guard(self) -> StorageSizeGuard | None:
        return self._guard

    @property
    def remote(self) -> RemoteSyncAdapter | None:
        return self._remote

    async def read(
        self,
        key: str,
        default: Any = None,
        *,
        check: StructureCheck = is_record_collection,
    ) -> Any:
        value, source = await self.read_with_source(key, check=check)
        return default if source is None else value

    async def read_with_source(
        self, key: str, *, check: StructureCheck = is_record_collection
    ) -> tuple[Any, str | None]:
        """Return ``(value, layer_name)`` from the first layer with valid data.

        ``(None, None)`` means no layer had usable data, which is the normal
        cold-start case. A value found below the primary layer is copied back
        up to the layers above it.
        """
        for index, layer in enumerate(self._layers):
            try:
                raw = await layer.read(key)
            except CampaignStorageError as exc:
                logger.warning("Layer %s unreadable for %s: %s", layer.name, key, exc)
                continue
            if raw is None:
                continue
            try:
                value = json.loads(raw)
            except ValueError as exc:
                logger.warning("Layer %s holds unparseable data for %s: %s", layer.name, key, exc)
                continue
            if not check(value):
                logger.warning("Layer %s holds malformed data for %s", layer.name, key)
                continue
            if index > 0:
                await self._backfill(key, raw, self._layers[:index])
            return value, layer.name
        return None, None

    async def salvage(self, key: str) -> Any:
        """First parseable value for ``key`` regardless of shape, for repair."""
        for layer in self._layers:
            try:
                raw = await layer.read(key)
            except CampaignStorageError:
                continue
            if raw is None:
                continue
            try:
                return json.loads(raw)
            except ValueError:
                continue
        return None

    async def write(self, key: str, value: Any) -> WriteOutcome:
        try:
            payload = dumps(value)
        except (TypeError, ValueError) as exc:
            logger.error("Cannot serialize %s: %s", key, exc)
            return WriteOutcome(
                key, tuple(LayerOutcome(layer.name, False, str(exc)) for layer in self._layers)
            )

        outcomes: list[LayerOutcome] = []
        for index, layer in enumerate(self._layers):
            outcomes.append(await self._write_layer(layer, key, payload, is_primary=index == 0))
        outcome = WriteOutcome(key, tuple(outcomes))
        if outcome.failed_layers:
            logger.warning("Write of %s failed on %s", key, ", ".join(outcome.failed_layers))
        return outcome

    def write_primary_sync(self, key: str, value: Any) -> bool:
        """Best-effort synchronous write to the primary store only."""
        primary = self.primary
        if not isinstance(primary, KeyValueStore):
            logger.warning("Primary layer %s cannot be written synchronously", primary.name)
            return False
        try:
            primary.set_item(key, dumps(value))
        except (CampaignStorageError, TypeError, ValueError) as exc:
            logger.error("Synchronous write of %s failed: %s", key, exc)
            return False
        return True

    async def push_remote(self, value: Any) -> RemoteSyncResult | None:
        """Push a snapshot to the remote store; None when no remote is configured."""
        if self._remote is None:
            return None
        try:
            result = await self._remote.save(value)
        except Exception as exc:
            logger.warning("Remote sync raised: %s", exc)
            return RemoteSyncResult(False, str(exc))
        if not result.success:
            logger.warning("Remote sync failed: %s", result.message)
        return result

    async def clear_all(self) -> list[LayerOutcome]:
        outcomes: list[LayerOutcome] = []
        for layer in self._layers:
            try:
                await layer.clear()
                outcomes.append(LayerOutcome(layer.name, True))
            except (CampaignStorageError, OSError) as exc:
                logger.error("Failed to clear layer %s: %s", layer.name, exc)
                outcomes.append(LayerOutcome(layer.name, False, str(exc)))
        return outcomes

    async def close(self) -> None:
        for layer in self._layers:
            await layer.close()

    async def _write_layer(
        self, layer: StorageLayer, key: str, payload: str, *, is_primary: bool
    ) -> LayerOutcome:
        try:
            await layer.write(key, payload)
            return LayerOutcome(layer.name, True)
        except StorageQuotaExceededError as exc:
            if not (is_primary and self._guard):
                return LayerOutcome(layer.name, False, str(exc))
            logger.warning("Quota exceeded writing %s, enforcing capacity limits", key)
            self._guard.enforce()
            try:
                await layer.write(key, payload)
                return LayerOutcome(layer.name, True)
            except CampaignStorageError as retry_exc:
                if self._advisories:
                    self._advisories.advise(
                        "error",
                        "Storage is full and your latest changes could not be saved locally. "
                        "Export a backup to keep them.",
                        source="persistence",
                        persistent=True,
                        action="export_backup",
                    )
                return LayerOutcome(layer.name, False, str(retry_exc))
        except (CampaignStorageError, OSError) as exc:
            return LayerOutcome(layer.name, False, str(exc))

    async def _backfill(self, key: str, raw: str, layers: Sequence[StorageLayer]) -> None:
        for layer in layers:
            try:
                await layer.write(key, raw)
                logger.info("Restored %s into layer %s", key, layer.name)
            except (CampaignStorageError, OSError) as exc:
                logger.warning("Could not restore %s into %s: %s", key, layer.name, exc)
