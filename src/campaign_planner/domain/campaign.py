"""Campaign record model and derived-metric calculation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from campaign_planner.domain.coercion import (
    coerce_amount,
    coerce_flag,
    coerce_id,
    coerce_optional_amount,
    coerce_optional_text,
    coerce_string_list,
    coerce_text,
    new_record_id,
    round_half_up,
)
from campaign_planner.utils.time import utc_now_iso

CAMPAIGN_STATUSES: tuple[str, ...] = ("Planning", "On Track", "Shipped", "Cancelled")
DEFAULT_STATUS = "Planning"

MQL_RATE = 0.10
SQL_RATE = 0.06
OPPORTUNITY_RATE = 0.80
PIPELINE_PER_OPPORTUNITY = 50_000
IN_ACCOUNT_PIPELINE_MULTIPLIER = 20

_IN_ACCOUNT_MARKERS = ("In-Account", "In Account")


@dataclass(frozen=True)
class DerivedMetrics:
    mql: int
    sql: int
    opportunities: int
    pipeline_forecast: int | float


def is_in_account_event(campaign_type: str | None) -> bool:
    if not campaign_type:
        return False
    return any(marker in campaign_type for marker in _IN_ACCOUNT_MARKERS)


def calculate_metrics(
    expected_leads: object, forecasted_cost: object, campaign_type: str | None
) -> DerivedMetrics:
    """Derive MQL, SQL, opportunities and pipeline from the planning fields.

    In-Account events without leads are valued at 20x their forecasted cost.
    Every other campaign runs the lead funnel: 10% of leads become MQLs, 6% of
    leads become SQLs, 80% of SQLs become opportunities worth 50k each.
    """
    leads = coerce_amount(expected_leads)
    cost = coerce_amount(forecasted_cost)

    if is_in_account_event(campaign_type) and leads == 0:
        return DerivedMetrics(
            mql=0,
            sql=0,
            opportunities=0,
            pipeline_forecast=cost * IN_ACCOUNT_PIPELINE_MULTIPLIER,
        )

    mql = round_half_up(leads * MQL_RATE)
    sql = round_half_up(leads * SQL_RATE)
    opportunities = round_half_up(sql * OPPORTUNITY_RATE)
    return DerivedMetrics(
        mql=mql,
        sql=sql,
        opportunities=opportunities,
        pipeline_forecast=opportunities * PIPELINE_PER_OPPORTUNITY,
    )


class Campaign(BaseModel):
    """A planned marketing campaign.

    Validation never fails on bad field values: each one is coerced to a
    type-correct default, and the derived metrics are always recomputed.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default_factory=new_record_id)
    campaign_name: str = Field(default="", alias="campaignName")
    description: str = Field(default="")
    campaign_type: str = Field(default="", alias="campaignType")
    strategic_pillar: list[str] = Field(default_factory=list, alias="strategicPillar")
    revenue_play: str = Field(default="", alias="revenuePlay")
    fy: str = Field(default="")
    quarter_month: str = Field(default="", alias="quarterMonth")
    region: str = Field(default="")
    country: str = Field(default="")
    owner: str = Field(default="")
    forecasted_cost: int | float = Field(default=0, alias="forecastedCost")
    expected_leads: int | float = Field(default=0, alias="expectedLeads")
    mql: int = Field(default=0)
    sql: int = Field(default=0)
    opportunities: int = Field(default=0)
    pipeline_forecast: int | float = Field(default=0, alias="pipelineForecast")
    status: str = Field(default=DEFAULT_STATUS)
    po_raised: bool = Field(default=False, alias="poRaised")
    campaign_code: str = Field(default="", alias="campaignCode")
    salesforce_campaign_code: str = Field(default="", alias="salesforceCampaignCode")
    issue_link: str = Field(default="", alias="issueLink")
    actual_cost: int | float | None = Field(default=None, alias="actualCost")
    actual_leads: int | float | None = Field(default=None, alias="actualLeads")
    actual_mqls: int | float | None = Field(default=None, alias="actualMQLs")
    created_at: str | None = Field(default=None, alias="createdAt")

    @field_validator("id", mode="before")
    @classmethod
    def _validate_id(cls, value: Any) -> str:
        return coerce_id(value)

    @field_validator(
        "campaign_name",
        "description",
        "campaign_type",
        "revenue_play",
        "fy",
        "quarter_month",
        "region",
        "country",
        "owner",
        "campaign_code",
        "salesforce_campaign_code",
        "issue_link",
        mode="before",
    )
    @classmethod
    def _validate_text(cls, value: Any) -> str:
        return coerce_text(value)

    @field_validator("strategic_pillar", mode="before")
    @classmethod
    def _validate_pillars(cls, value: Any) -> list[str]:
        return coerce_string_list(value)

    @field_validator(
        "forecasted_cost",
        "expected_leads",
        "mql",
        "sql",
        "opportunities",
        "pipeline_forecast",
        mode="before",
    )
    @classmethod
    def _validate_amount(cls, value: Any) -> int | float:
        return coerce_amount(value)

    @field_validator("actual_cost", "actual_leads", "actual_mqls", mode="before")
    @classmethod
    def _validate_actuals(cls, value: Any) -> int | float | None:
        return coerce_optional_amount(value)

    @field_validator("status", mode="before")
    @classmethod
    def _validate_status(cls, value: Any) -> str:
        text = coerce_text(value).strip().lower()
        for status in CAMPAIGN_STATUSES:
            if status.lower() == text:
                return status
        return DEFAULT_STATUS

    @field_validator("po_raised", mode="before")
    @classmethod
    def _validate_po_raised(cls, value: Any) -> bool:
        return coerce_flag(value)

    @field_validator("created_at", mode="before")
    @classmethod
    def _validate_created_at(cls, value: Any) -> str | None:
        return coerce_optional_text(value)

    @model_validator(mode="after")
    def _apply_derived_metrics(self) -> "Campaign":
        metrics = calculate_metrics(self.expected_leads, self.forecasted_cost, self.campaign_type)
        self.mql = metrics.mql
        self.sql = metrics.sql
        self.opportunities = metrics.opportunities
        self.pipeline_forecast = metrics.pipeline_forecast
        return self

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def new_campaign(**fields: Any) -> dict[str, Any]:
    """Build a fresh campaign record stamped with an id and creation time."""
    fields.setdefault("createdAt", utc_now_iso())
    return Campaign.model_validate(fields).to_record()
