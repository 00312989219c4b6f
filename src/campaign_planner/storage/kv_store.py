"""Primary key-value store with JSON values and per-key corruption isolation."""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from campaign_planner.errors import StorageLayerError, StorageQuotaExceededError
from campaign_planner.events import EventBus, StorageChange, Unsubscribe
from campaign_planner.storage.base import StorageLayer
from campaign_planner.utils.serialization import byte_size, dumps

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY_BYTES = 5 * 1024 * 1024


class KeyValueBackend(ABC):
    """Raw string storage shared by every store opened on it.

    Changes are announced on ``changes`` so that other stores on the same
    backend (another session on the same data) can react to them.
    """

    def __init__(self) -> None:
        self.changes: EventBus[StorageChange] = EventBus("storage-changes")
        self._lock = threading.RLock()

    @abstractmethod
    def _snapshot(self) -> dict[str, str]: ...

    @abstractmethod
    def _commit(self, data: dict[str, str]) -> None: ...

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._snapshot().get(key)

    def items(self) -> dict[str, str]:
        with self._lock:
            return dict(self._snapshot())

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._snapshot()
            old = data.get(key)
            data[key] = value
            self._commit(data)
        self.changes.publish(StorageChange(key=key, old_value=old, new_value=value))

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._snapshot()
            if key not in data:
                return
            old = data.pop(key)
            self._commit(data)
        self.changes.publish(StorageChange(key=key, old_value=old, new_value=None))

    def clear(self) -> None:
        with self._lock:
            old = self._snapshot()
            self._commit({})
        for key, value in old.items():
            self.changes.publish(StorageChange(key=key, old_value=value, new_value=None))


class MemoryBackend(KeyValueBackend):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        super().__init__()
        self._data: dict[str, str] = dict(initial or {})

    def _snapshot(self) -> dict[str, str]:
        return dict(self._data)

    def _commit(self, data: dict[str, str]) -> None:
        self._data = data


class JsonFileBackend(KeyValueBackend):
    """Backend persisted as one JSON object on disk, rewritten atomically."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._data = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            quarantine = self._path.with_suffix(self._path.suffix + ".corrupt")
            logger.error(
                "Key-value file %s is unreadable (%s); moved to %s", self._path, exc, quarantine
            )
            try:
                os.replace(self._path, quarantine)
            except OSError as move_exc:
                logger.warning("Could not quarantine %s: %s", self._path, move_exc)
            return {}
        if not isinstance(raw, dict):
            logger.error("Key-value file %s does not hold an object; starting empty", self._path)
            return {}
        return {str(key): value for key, value in raw.items() if isinstance(value, str)}

    def _snapshot(self) -> dict[str, str]:
        return dict(self._data)

    def _commit(self, data: dict[str, str]) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise StorageLayerError("local_storage", f"failed to write {self._path}: {exc}") from exc
        self._data = data


class KeyValueStore(StorageLayer):
    """Single-key read/write/delete over a backend with a byte capacity.

    Reads are synchronous and cheap; the async ``StorageLayer`` methods wrap
    them so the store can sit at the head of a multi-layer stack.
    """

    name = "local_storage"

    def __init__(
        self,
        backend: KeyValueBackend | None = None,
        capacity_bytes: int = DEFAULT_CAPACITY_BYTES,
    ) -> None:
        self._backend = backend if backend is not None else MemoryBackend()
        self._capacity_bytes = capacity_bytes

    @property
    def capacity_bytes(self) -> int:
        return self._capacity_bytes

    @property
    def backend(self) -> KeyValueBackend:
        return self._backend

    def get_item(self, key: str) -> str | None:
        return self._backend.get(key)

    def set_item(self, key: str, value: str) -> None:
        entries = self._backend.items()
        current = sum(byte_size(k, v) for k, v in entries.items() if k != key)
        required = current + byte_size(key, value)
        if required > self._capacity_bytes:
            raise StorageQuotaExceededError(key, required, self._capacity_bytes)
        self._backend.set(key, value)

    def remove_item(self, key: str) -> None:
        self._backend.remove(key)

    def clear_all(self) -> None:
        self._backend.clear()

    def entries(self) -> dict[str, str]:
        return self._backend.items()

    def get_json(self, key: str, default: Any = None) -> Any:
        """Parse the value under ``key``.

        A corrupt value only affects its own key: it is logged and ``default``
        is returned, while the raw string is left in place for repair.
        """
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.warning("Stored value for %s is not valid JSON: %s", key, exc)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set_item(key, dumps(value))

    def subscribe(self, listener: Callable[[StorageChange], None]) -> Unsubscribe:
        return self._backend.changes.subscribe(listener)

    async def read(self, key: str) -> str | None:
        return self.get_item(key)

    async def write(self, key: str, value: str) -> None:
        self.set_item(key, value)

    async def delete(self, key: str) -> None:
        self.remove_item(key)

    async def clear(self) -> None:
        self.clear_all()

    async def keys(self) -> list[str]:
        return list(self.entries())
