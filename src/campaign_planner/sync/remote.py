"""Remote mirror of record collections in a GitHub repository.

The remote store is opportunistic: every failure is reported through the
returned ``RemoteSyncResult`` and logged, never raised.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from campaign_planner.config import RemoteSyncSettings
from campaign_planner.errors import RemoteSyncError
from campaign_planner.utils.serialization import dumps

logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_SAFE_REF_RE = re.compile(r"^[A-Za-z0-9._/+-]+$")
_SAFE_PATH_RE = re.compile(r"^[A-Za-z0-9._/-]+$")

_COMMITTER = {"name": "Marketing Campaign Tool", "email": "campaign-tool@example.com"}


@dataclass(frozen=True)
class RemoteSyncResult:
    success: bool
    message: str = ""
    data: Any = field(default=None, compare=False)


class RemoteSyncAdapter(Protocol):
    async def save(self, data: Any) -> RemoteSyncResult: ...


def _validate_target(settings: RemoteSyncSettings) -> None:
    """Reject owner/repo/path/branch values that could rewrite the request URL."""
    for label, value in (("owner", settings.owner), ("repo", settings.repo)):
        if not value or not _SAFE_NAME_RE.match(value):
            raise RemoteSyncError(f"{label} contains invalid characters: {str(value)[:120]}")
    if not _SAFE_REF_RE.match(settings.branch) or settings.branch.startswith("-"):
        raise RemoteSyncError(f"branch contains invalid characters: {settings.branch[:120]}")
    if ".." in settings.path or not _SAFE_PATH_RE.match(settings.path.strip("/")):
        raise RemoteSyncError(f"path contains invalid characters: {settings.path[:120]}")
    if not settings.api_url.startswith("https://"):
        raise RemoteSyncError(f"api_url must use HTTPS scheme, got: {settings.api_url[:120]}")


class GitHubContentsSync:
    """Pushes full snapshots to a file through the GitHub contents API."""

    def __init__(
        self,
        settings: RemoteSyncSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self._settings.configured

    def _url(self) -> str:
        settings = self._settings
        path = settings.path.strip("/")
        return f"{settings.api_url.rstrip('/')}/repos/{settings.owner}/{settings.repo}/contents/{path}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"token {self._settings.token}",
            "Accept": "application/vnd.github.v3+json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self._settings.timeout_seconds,
            headers=self._headers(),
        )

    async def save(self, data: Any) -> RemoteSyncResult:
        if not self.configured:
            return RemoteSyncResult(False, "Remote sync is not configured")
        try:
            _validate_target(self._settings)
        except RemoteSyncError as exc:
            logger.error("Remote sync target rejected: %s", exc)
            return RemoteSyncResult(False, str(exc))

        encoded = base64.b64encode(dumps(data, pretty=True).encode("utf-8")).decode("ascii")
        body: dict[str, Any] = {
            "message": "Update campaign planning data",
            "content": encoded,
            "branch": self._settings.branch,
            "committer": _COMMITTER,
        }

        try:
            async with self._client() as client:
                existing = await client.get(self._url(), params={"ref": self._settings.branch})
                if existing.status_code == 200:
                    body["sha"] = existing.json().get("sha")
                elif existing.status_code != 404:
                    existing.raise_for_status()

                response = await client.put(self._url(), json=body)
                response.raise_for_status()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Remote sync to %s failed: %s", self._settings.path, exc)
            return RemoteSyncResult(False, f"Remote sync failed: {exc}")

        logger.info("Remote sync saved %s", self._settings.path)
        return RemoteSyncResult(True, f"Data saved to {self._settings.path}")

    async def load(self) -> RemoteSyncResult:
        """Fetch the mirrored snapshot; ``data`` holds the decoded JSON on success."""
        if not self.configured:
            return RemoteSyncResult(False, "Remote sync is not configured")
        try:
            _validate_target(self._settings)
            async with self._client() as client:
                response = await client.get(self._url(), params={"ref": self._settings.branch})
                if response.status_code == 404:
                    return RemoteSyncResult(
                        False, f"File not found at {self._settings.path}. Save first to create it."
                    )
                response.raise_for_status()
                payload = response.json()
            decoded = base64.b64decode(payload.get("content", "")).decode("utf-8")
            data = json.loads(decoded)
        except RemoteSyncError as exc:
            return RemoteSyncResult(False, str(exc))
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Remote load from %s failed: %s", self._settings.path, exc)
            return RemoteSyncResult(False, f"Remote load failed: {exc}")

        count = len(data) if isinstance(data, list) else 0
        return RemoteSyncResult(True, f"Loaded {count} records from {self._settings.path}", data)
