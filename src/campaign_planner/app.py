"""Application context assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from campaign_planner.config import Settings
from campaign_planner.domain.budget import load_budget_defaults, merge_with_defaults
from campaign_planner.domain.schema import BUDGET_SCHEMA, CAMPAIGN_SCHEMA
from campaign_planner.notifications import AdvisoryBus
from campaign_planner.persistence.multi_layer import MultiLayerPersistence
from campaign_planner.persistence.repository import RecordRepository
from campaign_planner.recovery.migrations import run_data_migrations
from campaign_planner.recovery.service import DataRecoveryService
from campaign_planner.scheduling import Scheduler
from campaign_planner.storage.base import StorageLayer
from campaign_planner.storage.kv_store import (
    JsonFileBackend,
    KeyValueBackend,
    KeyValueStore,
    MemoryBackend,
)
from campaign_planner.storage.size_guard import StorageSizeGuard
from campaign_planner.storage.sqlite_layer import SqliteLayer
from campaign_planner.sync.divergence import DivergenceMonitor
from campaign_planner.sync.remote import GitHubContentsSync

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application-wide dependency container.

    Built explicitly by ``build_app_context``; two contexts created over the
    same ``KeyValueBackend`` behave like two sessions sharing one store.
    """

    settings: Settings
    kv: KeyValueStore
    persistence: MultiLayerPersistence
    guard: StorageSizeGuard
    advisories: AdvisoryBus
    recovery: DataRecoveryService
    scheduler: Scheduler
    repositories: dict[str, RecordRepository] = field(default_factory=dict)
    monitors: dict[str, DivergenceMonitor] = field(default_factory=dict)
    started: bool = False

    def repository(self, collection: str) -> RecordRepository | None:
        return self.repositories.get(collection)

    async def reload_all(self) -> None:
        for repository in self.repositories.values():
            await repository.reload()

    async def startup(self) -> None:
        await run_data_migrations(self.persistence, self.kv)
        for repository in self.repositories.values():
            await repository.load()
        if self.settings.monitor.enabled:
            for monitor in self.monitors.values():
                monitor.start()
        self.guard.start(self.scheduler)
        self.started = True
        logger.info("Campaign planner storage started")

    async def shutdown(self) -> None:
        """Flush pending edits to the primary store, then release every resource."""
        for repository in self.repositories.values():
            repository.on_unload()
        for monitor in self.monitors.values():
            monitor.stop()
        for repository in self.repositories.values():
            await repository.close()
        await self.scheduler.close()
        await self.persistence.close()
        self.started = False
        logger.info("Campaign planner storage stopped")


def _build_backend(settings: Settings) -> KeyValueBackend:
    if settings.storage.kv_path is None:
        return MemoryBackend()
    return JsonFileBackend(settings.storage.kv_path)


def build_app_context(
    settings: Settings,
    *,
    backend: KeyValueBackend | None = None,
) -> AppContext:
    advisories = AdvisoryBus()
    kv = KeyValueStore(
        backend if backend is not None else _build_backend(settings),
        capacity_bytes=settings.storage.kv_capacity_bytes,
    )
    layers: list[StorageLayer] = [kv]
    if settings.storage.sqlite_enabled:
        layers.append(SqliteLayer(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal))

    guard = StorageSizeGuard(kv, settings.guard, advisories)
    remote = GitHubContentsSync(settings.remote) if settings.remote.configured else None
    persistence = MultiLayerPersistence(layers, remote=remote, guard=guard, advisories=advisories)
    recovery = DataRecoveryService(
        persistence, backup_dir=settings.storage.backup_dir, advisories=advisories
    )

    context = AppContext(
        settings=settings,
        kv=kv,
        persistence=persistence,
        guard=guard,
        advisories=advisories,
        recovery=recovery,
        scheduler=Scheduler("app"),
    )
    recovery.set_reload_callback(context.reload_all)

    persistence_settings = settings.persistence
    debounce_seconds = persistence_settings.debounce_ms / 1000
    budget_defaults = load_budget_defaults(settings.storage.budget_defaults_path)

    context.repositories["campaigns"] = RecordRepository(
        persistence_settings.campaign_key,
        schema=CAMPAIGN_SCHEMA,
        persistence=persistence,
        recovery=recovery,
        debounce_seconds=debounce_seconds,
        status_key=persistence_settings.campaign_status_key,
        advisories=advisories,
        push_remote_on_commit=persistence_settings.remote_push_on_commit,
    )
    context.repositories["budgets"] = RecordRepository(
        persistence_settings.budget_key,
        schema=BUDGET_SCHEMA,
        persistence=persistence,
        recovery=recovery,
        debounce_seconds=debounce_seconds,
        status_key=persistence_settings.budget_status_key,
        advisories=advisories,
        default_records=lambda: [dict(record) for record in budget_defaults],
        normalize=lambda records: merge_with_defaults(records, budget_defaults),
        remote_sync=False,
    )
    for name, repository in context.repositories.items():
        context.monitors[name] = DivergenceMonitor(
            repository, settings=settings.monitor, advisories=advisories
        )
    return context
