"""Typed publish/subscribe primitives shared by the storage components."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventBus(Generic[T]):
    """Synchronous fan-out of typed events to registered listeners.

    A listener that raises is logged and skipped so one faulty subscriber
    cannot break delivery to the others.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[T], None]) -> Unsubscribe:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: T) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener on %s failed", self._name)

    def __len__(self) -> int:
        return len(self._listeners)


@dataclass(frozen=True)
class SaveCompleted:
    key: str
    timestamp: datetime
    record_count: int
    source: str = "commit"


@dataclass(frozen=True)
class RecordsMutated:
    key: str
    record_count: int


@dataclass(frozen=True)
class RefreshRequested:
    key: str
    missing_ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class StorageChange:
    key: str
    old_value: str | None
    new_value: str | None


@dataclass(frozen=True)
class RecordsEvicted:
    """The size guard rewrote or removed a stored record collection.

    ``records`` is the collection left in storage, or None when the key was
    removed outright.
    """

    key: str
    removed_ids: frozenset[str] = field(default_factory=frozenset)
    records: list[dict[str, Any]] | None = None
