"""Regional budget records, default allocations and utilization metrics."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from campaign_planner.domain.coercion import (
    coerce_amount,
    coerce_flag,
    coerce_id,
    coerce_optional_amount,
    coerce_optional_text,
    new_record_id,
)

logger = logging.getLogger(__name__)

# Management-assigned allocations used when no defaults file is configured.
DEFAULT_REGIONAL_BUDGETS: dict[str, int] = {
    "North APAC": 358_000,
    "South APAC": 385_500,
    "SAARC": 265_000,
    "Digital": 68_000,
}
DEFAULT_LOCKED_BY = "management"


class ProgramCost(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default_factory=new_record_id)
    forecasted_cost: int | float = Field(default=0, alias="forecastedCost")
    actual_cost: int | float = Field(default=0, alias="actualCost")

    @field_validator("id", mode="before")
    @classmethod
    def _validate_id(cls, value: Any) -> str:
        return coerce_id(value)

    @field_validator("forecasted_cost", "actual_cost", mode="before")
    @classmethod
    def _validate_amount(cls, value: Any) -> int | float:
        return coerce_amount(value)


class BudgetRecord(BaseModel):
    """Budget assigned to one owner or region.

    A locked record always reports ``assignedBudget == lockedValue``; edits to
    the assigned value of a locked record are discarded on validation.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default_factory=new_record_id)
    assigned_budget: int | float | None = Field(default=None, alias="assignedBudget")
    locked_by_owner: bool = Field(default=False, alias="lockedByOwner")
    locked_value: int | float | None = Field(default=None, alias="lockedValue")
    locked_by: str | None = Field(default=None, alias="lockedBy")
    locked_timestamp: int | None = Field(default=None, alias="lockedTimestamp")
    programs: list[ProgramCost] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _validate_id(cls, value: Any) -> str:
        return coerce_id(value)

    @field_validator("assigned_budget", "locked_value", mode="before")
    @classmethod
    def _validate_budget(cls, value: Any) -> int | float | None:
        return coerce_optional_amount(value)

    @field_validator("locked_by_owner", mode="before")
    @classmethod
    def _validate_locked(cls, value: Any) -> bool:
        return coerce_flag(value)

    @field_validator("locked_by", mode="before")
    @classmethod
    def _validate_locked_by(cls, value: Any) -> str | None:
        return coerce_optional_text(value)

    @field_validator("locked_timestamp", mode="before")
    @classmethod
    def _validate_timestamp(cls, value: Any) -> int | None:
        amount = coerce_optional_amount(value)
        return None if amount is None else int(amount)

    @field_validator("programs", mode="before")
    @classmethod
    def _validate_programs(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [item if isinstance(item, dict) else {} for item in value]

    @model_validator(mode="after")
    def _enforce_lock(self) -> "BudgetRecord":
        if self.locked_by_owner:
            if self.locked_value is None:
                self.locked_value = self.assigned_budget
            self.assigned_budget = self.locked_value
        return self

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def default_budget_records(
    allocations: dict[str, int | float] | None = None,
    *,
    locked_by: str = DEFAULT_LOCKED_BY,
) -> list[dict[str, Any]]:
    allocations = DEFAULT_REGIONAL_BUDGETS if allocations is None else allocations
    locked_at = int(time.time() * 1000)
    return [
        BudgetRecord(
            id=region,
            assigned_budget=amount,
            locked_by_owner=True,
            locked_value=amount,
            locked_by=locked_by,
            locked_timestamp=locked_at,
        ).to_record()
        for region, amount in allocations.items()
    ]


def load_budget_defaults(path: str | None) -> list[dict[str, Any]]:
    """Load default allocations from a YAML file shaped like ``budgets: {Region: 1000}``.

    Without a path the built-in management allocations are used.
    """
    if path is None:
        return default_budget_records()
    defaults_path = Path(path)
    if not defaults_path.exists():
        raise FileNotFoundError(f"Budget defaults file not found: {defaults_path}")
    with defaults_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    allocations = data.get("budgets") or {}
    if not isinstance(allocations, dict):
        raise ValueError(f"'budgets' must be a mapping in {defaults_path}")
    locked_by = str(data.get("locked_by") or DEFAULT_LOCKED_BY)
    return default_budget_records(
        {str(region): coerce_amount(amount) for region, amount in allocations.items()},
        locked_by=locked_by,
    )


def merge_with_defaults(
    stored: Iterable[dict[str, Any]], defaults: Iterable[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Overlay stored budgets on the defaults.

    Every default region is present in the result. For regions the defaults
    lock, the default lock wins over whatever was stored.
    """
    merged: dict[str, dict[str, Any]] = {record["id"]: dict(record) for record in defaults}
    for record in stored:
        region = record.get("id")
        if not isinstance(region, str):
            continue
        base = merged.get(region)
        if base is not None and base.get("lockedByOwner"):
            overlay = dict(record)
            for lock_field in ("lockedByOwner", "lockedValue", "lockedBy", "lockedTimestamp"):
                overlay[lock_field] = base.get(lock_field)
            merged[region] = BudgetRecord.model_validate(overlay).to_record()
        else:
            merged[region] = BudgetRecord.model_validate(record).to_record()
    return list(merged.values())


@dataclass(frozen=True)
class RegionalMetrics:
    total_forecasted: int | float
    total_actual: int | float
    assigned_budget: int | float | None
    forecasted_percent: float
    actual_percent: float
    forecasted_exceeds_budget: bool
    actual_exceeds_budget: bool


def calculate_regional_metrics(budgets: Iterable[dict[str, Any]], region: str) -> RegionalMetrics:
    record = next((item for item in budgets if item.get("id") == region), None)
    if record is None:
        return RegionalMetrics(0, 0, None, 0.0, 0.0, False, False)

    budget = BudgetRecord.model_validate(record)
    total_forecasted = sum(program.forecasted_cost for program in budget.programs)
    total_actual = sum(program.actual_cost for program in budget.programs)
    assigned = budget.assigned_budget

    if assigned is None or assigned == 0:
        forecasted_percent = actual_percent = 0.0
    else:
        forecasted_percent = min(100.0, total_forecasted / assigned * 100)
        actual_percent = min(100.0, total_actual / assigned * 100)

    return RegionalMetrics(
        total_forecasted=total_forecasted,
        total_actual=total_actual,
        assigned_budget=assigned,
        forecasted_percent=forecasted_percent,
        actual_percent=actual_percent,
        forecasted_exceeds_budget=assigned is not None and total_forecasted > assigned,
        actual_exceeds_budget=assigned is not None and total_actual > assigned,
    )
