"""Uniform interface over the storage layers."""

from __future__ import annotations

from abc import ABC, abstractmethod


class StorageLayer(ABC):
    """A named key/value layer holding JSON-serialized strings.

    Implementations raise ``CampaignStorageError`` subclasses on failure;
    callers above the persistence boundary never see them.
    """

    name: str = "layer"

    @abstractmethod
    async def read(self, key: str) -> str | None:
        """Return the stored string, or None when the key is absent."""

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key held by this layer."""

    @abstractmethod
    async def keys(self) -> list[str]:
        """List the keys currently held."""

    async def close(self) -> None:
        return None
