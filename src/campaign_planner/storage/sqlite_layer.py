"""SQLite-backed secondary layer with larger capacity than the key-value store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path

from campaign_planner.errors import StorageLayerError
from campaign_planner.storage.base import StorageLayer
from campaign_planner.utils.time import utc_now_iso


class SqliteLayer(StorageLayer):
    name = "sqlite"

    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS records (
                key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageLayerError(self.name, "database is closed")

    def read_sync(self, key: str) -> str | None:
        with self._lock:
            self._ensure_open()
            try:
                row = self._conn.execute(
                    "SELECT data FROM records WHERE key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageLayerError(self.name, f"read failed for {key}: {exc}") from exc
        return None if row is None else row["data"]

    def write_sync(self, key: str, value: str) -> None:
        with self._lock:
            self._ensure_open()
            try:
                self._conn.execute(
                    """
                    INSERT INTO records (key, data, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, utc_now_iso()),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageLayerError(self.name, f"write failed for {key}: {exc}") from exc

    def delete_sync(self, key: str) -> None:
        with self._lock:
            self._ensure_open()
            try:
                self._conn.execute("DELETE FROM records WHERE key = ?", (key,))
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageLayerError(self.name, f"delete failed for {key}: {exc}") from exc

    def clear_sync(self) -> int:
        with self._lock:
            self._ensure_open()
            try:
                cursor = self._conn.execute("DELETE FROM records")
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageLayerError(self.name, f"clear failed: {exc}") from exc
            return cursor.rowcount

    def keys_sync(self) -> list[str]:
        with self._lock:
            self._ensure_open()
            try:
                rows = self._conn.execute("SELECT key FROM records ORDER BY key").fetchall()
            except sqlite3.Error as exc:
                raise StorageLayerError(self.name, f"listing keys failed: {exc}") from exc
        return [row["key"] for row in rows]

    def updated_at(self, key: str) -> str | None:
        with self._lock:
            self._ensure_open()
            try:
                row = self._conn.execute(
                    "SELECT updated_at FROM records WHERE key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageLayerError(self.name, f"read failed for {key}: {exc}") from exc
        return None if row is None else row["updated_at"]

    async def read(self, key: str) -> str | None:
        return await asyncio.to_thread(self.read_sync, key)

    async def write(self, key: str, value: str) -> None:
        await asyncio.to_thread(self.write_sync, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.delete_sync, key)

    async def clear(self) -> None:
        await asyncio.to_thread(self.clear_sync)

    async def keys(self) -> list[str]:
        return await asyncio.to_thread(self.keys_sync)

    def close_sync(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    async def close(self) -> None:
        self.close_sync()
