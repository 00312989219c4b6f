"""Per-collection record schemas used for validation and repair."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from campaign_planner.domain.budget import BudgetRecord
from campaign_planner.domain.campaign import Campaign
from campaign_planner.domain.coercion import coerce_id
from campaign_planner.utils.serialization import is_record_collection

logger = logging.getLogger(__name__)


class RecordSchema:
    """Describes one record collection stored under a single key."""

    def __init__(self, name: str, model: type[BaseModel]) -> None:
        self.name = name
        self._model = model
        self.required_fields: frozenset[str] = frozenset(
            field.alias or field_name for field_name, field in model.model_fields.items()
        )

    def default_record(self, record_id: object = None) -> dict[str, Any]:
        data = {} if record_id is None else {"id": record_id}
        return self._model.model_validate(data).model_dump(by_alias=True, mode="json")

    def repair_record(self, raw: object) -> dict[str, Any]:
        if not isinstance(raw, dict):
            return self.default_record()
        try:
            return self._model.model_validate(raw).model_dump(by_alias=True, mode="json")
        except (ValidationError, TypeError, ValueError) as exc:
            logger.warning("Replacing unrepairable %s record with defaults: %s", self.name, exc)
            return self.default_record(coerce_id(raw.get("id")))

    def repair(self, raw: object) -> list[dict[str, Any]]:
        if not isinstance(raw, list):
            return []
        return [self.repair_record(item) for item in raw]

    def is_well_formed(self, value: object) -> bool:
        """True when every record already equals its repaired form.

        Stale derived fields count as malformed, so stored metrics that no
        longer match their inputs are recomputed on load.
        """
        if not is_record_collection(value):
            return False
        for record in value:  # type: ignore[union-attr]
            record_id = record.get("id")
            if not isinstance(record_id, str) or not record_id:
                return False
            if not self.required_fields.issubset(record.keys()):
                return False
            if self.repair_record(record) != record:
                return False
        return True

    def identifiers(self, records: list[dict[str, Any]]) -> list[str]:
        return [str(record.get("id")) for record in records if isinstance(record, dict)]


CAMPAIGN_SCHEMA = RecordSchema("campaigns", Campaign)
BUDGET_SCHEMA = RecordSchema("budgets", BudgetRecord)
