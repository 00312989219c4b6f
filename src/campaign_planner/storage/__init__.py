"""Storage layers and capacity management."""

from campaign_planner.storage.base import StorageLayer
from campaign_planner.storage.kv_store import (
    JsonFileBackend,
    KeyValueBackend,
    KeyValueStore,
    MemoryBackend,
)
from campaign_planner.storage.size_guard import StorageSizeGuard, StorageUsage
from campaign_planner.storage.sqlite_layer import SqliteLayer

__all__ = [
    "JsonFileBackend",
    "KeyValueBackend",
    "KeyValueStore",
    "MemoryBackend",
    "SqliteLayer",
    "StorageLayer",
    "StorageSizeGuard",
    "StorageUsage",
]
