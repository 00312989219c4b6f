"""Exception types raised inside the storage layers.

These never escape the repository boundary; they are caught there, logged,
and turned into outcome objects or advisories.
"""

from __future__ import annotations


class CampaignStorageError(Exception):
    """Base error for storage failures, with a short machine-readable code."""

    def __init__(self, message: str, code: str = "storage_error") -> None:
        super().__init__(message)
        self.code = code


class StorageQuotaExceededError(CampaignStorageError):
    """Raised when a write would push a store past its capacity."""

    def __init__(self, key: str, required_bytes: int, capacity_bytes: int) -> None:
        super().__init__(
            f"Writing {key!r} needs {required_bytes} bytes, capacity is {capacity_bytes}",
            "quota_exceeded",
        )
        self.key = key
        self.required_bytes = required_bytes
        self.capacity_bytes = capacity_bytes


class StorageLayerError(CampaignStorageError):
    """Raised when a storage layer cannot complete a read or write."""

    def __init__(self, layer: str, message: str) -> None:
        super().__init__(f"{layer}: {message}", "layer_error")
        self.layer = layer


class RemoteSyncError(CampaignStorageError):
    """Raised by remote sync adapters for misconfiguration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "remote_sync_error")
