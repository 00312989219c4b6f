"""One-off migration of legacy key-value data into every storage layer."""

from __future__ import annotations

import json
import logging

from campaign_planner.errors import CampaignStorageError
from campaign_planner.persistence.multi_layer import MultiLayerPersistence
from campaign_planner.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

MIGRATION_FLAG = "dataMigration_v1_completed"
LEGACY_CAMPAIGN_KEY = "campaignData"
LEGACY_PREFIX = "kv_"


async def run_data_migrations(persistence: MultiLayerPersistence, kv: KeyValueStore) -> bool:
    """Copy legacy values into all layers once.

    Returns True when the migration ran, False when the completion flag was
    already set. The flag is set even when there was nothing to migrate.
    """
    if kv.get_item(MIGRATION_FLAG) == "true":
        return False

    migrated = 0
    legacy = kv.get_json(LEGACY_CAMPAIGN_KEY)
    if isinstance(legacy, list) and legacy:
        logger.info("Migrating %d campaigns to all storage layers", len(legacy))
        outcome = await persistence.write(LEGACY_CAMPAIGN_KEY, legacy)
        if outcome.success:
            migrated += 1

    for key, raw in kv.entries().items():
        if not key.startswith(LEGACY_PREFIX):
            continue
        target = key[len(LEGACY_PREFIX):]
        if not target or kv.get_item(target) is not None:
            continue
        try:
            value = json.loads(raw)
        except ValueError as exc:
            logger.warning("Skipping unparseable legacy value %s: %s", key, exc)
            continue
        outcome = await persistence.write(target, value)
        if outcome.success:
            migrated += 1
            logger.info("Migrated legacy key %s to %s", key, target)

    try:
        kv.set_item(MIGRATION_FLAG, "true")
    except CampaignStorageError as exc:
        logger.warning("Could not record migration completion: %s", exc)
    logger.info("Data migration complete: %d keys migrated", migrated)
    return True
