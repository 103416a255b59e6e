"""Pydantic request/response schemas for the rdtrack API."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, PositiveInt, field_validator

from rdtrack.lifecycle import (
    Category, Importance, ProductArea, RevenueEstimateStatus, RiskLevel, Stage, normalize_stage,
)


def _blank_to_none(v: Any) -> Any:
    return None if v == "" else v


class TechAreaIn(BaseModel):
    group_name: str | None = None
    code: str | None = None
    label: str | None = None


class AttachmentIn(BaseModel):
    filename: str
    url: str | None = None


class _InfluenceMixin(BaseModel):
    influence_revenue: float | None = None
    influence_kol: float | None = None
    influence_reuse: float | None = None
    influence_strategic: float | None = None
    influence_tender: float | None = None

    @field_validator(
        "influence_revenue", "influence_kol", "influence_reuse",
        "influence_strategic", "influence_tender", mode="before",
    )
    @classmethod
    def influence_blank(cls, v: Any) -> Any:
        return _blank_to_none(v)


class RequestCreate(_InfluenceMixin):
    title: str = Field(min_length=1)
    customer_name: str = Field(min_length=1)
    product_area: ProductArea
    product_model: str | None = None
    category: Category = Category.CUSTOMIZATION
    expected_revenue: int | None = None
    revenue_estimate_status: RevenueEstimateStatus | None = None
    revenue_estimate_note: str | None = None
    technical_notes: str | None = None
    importance_flag: Importance = Importance.MUST
    customer_deadline: datetime | None = None
    current_status: str | None = None
    created_by_dept: str | None = None
    created_by_user_id: str | None = None
    created_by_name: str | None = None
    region: str | None = None
    raw_customer_text: str = Field(min_length=1)
    sales_summary: str = Field(min_length=1)
    rd_group_ids: list[str] = []
    keywords: list[str] = []
    tech_areas: list[TechAreaIn] = []
    attachments: list[AttachmentIn] = []
    rice_reach: PositiveInt | None = None
    rice_impact: PositiveInt | None = None
    rice_confidence: PositiveInt | None = None
    rice_effort: PositiveInt | None = None
    regulatory_required: bool = False
    regulatory_risk_level: RiskLevel | None = None
    regulatory_notes: str | None = None
    strategic_alignment: PositiveInt | None = None
    resource_estimate_weeks: PositiveInt | None = None
    kpi_metric: str | None = None
    kpi_target: PositiveInt | None = None

    @field_validator("expected_revenue", "revenue_estimate_status", "customer_deadline", mode="before")
    @classmethod
    def blank_is_none(cls, v: Any) -> Any:
        return _blank_to_none(v)


class RequestUpdate(BaseModel):
    """Partial update. ``None`` means "leave unchanged"; lists replace the whole collection.

    ``expected_revenue`` is the exception: sending ``""`` or ``null`` clears it.
    """
    title: str | None = None
    customer_name: str | None = None
    product_area: ProductArea | None = None
    product_model: str | None = None
    category: Category | None = None
    expected_revenue: int | None = None
    importance_flag: Importance | None = None
    customer_deadline: datetime | None = None
    current_stage: Stage | None = None
    current_status: str | None = None
    region: str | None = None
    raw_customer_text: str | None = None
    sales_summary: str | None = None
    revenue_estimate_status: RevenueEstimateStatus | None = None
    revenue_estimate_note: str | None = None
    created_by_dept: str | None = None
    created_by_name: str | None = None
    rice_reach: PositiveInt | None = None
    rice_impact: PositiveInt | None = None
    rice_confidence: PositiveInt | None = None
    rice_effort: PositiveInt | None = None
    regulatory_required: bool | None = None
    regulatory_risk_level: RiskLevel | None = None
    regulatory_notes: str | None = None
    keywords: list[str] | None = None
    tech_areas: list[TechAreaIn] | None = None
    attachments: list[AttachmentIn] | None = None
    rd_group_ids: list[str] | None = None
    technical_notes: str | None = None

    @field_validator("current_stage", mode="before")
    @classmethod
    def normalize_current_stage(cls, v: Any) -> Any:
        return normalize_stage(v) if isinstance(v, str) else v

    @field_validator("expected_revenue", "revenue_estimate_status", "customer_deadline", mode="before")
    @classmethod
    def blank_is_none(cls, v: Any) -> Any:
        return _blank_to_none(v)


class StageTargetIn(BaseModel):
    stage: str | None = None
    target_date: str | None = None


class KeywordOut(BaseModel):
    id: int
    keyword: str


class TechAreaOut(BaseModel):
    id: int
    group_name: str
    code: str
    label: str


class AttachmentOut(BaseModel):
    id: int
    filename: str
    url: str | None = None


class RDGroupOut(BaseModel):
    id: str
    name: str
    category: str


class RequestRDGroupOut(BaseModel):
    rd_group_id: str
    role: str
    rd_group: RDGroupOut


class StageHistoryOut(BaseModel):
    id: int
    stage: str
    entered_at: str
    exited_at: str | None = None


class StageTargetOut(BaseModel):
    id: int
    request_id: str
    stage: str
    target_date: str
    set_by_user_id: str | None = None
    set_by_name: str | None = None
    updated_at: str | None = None


class StageTargetHistoryOut(BaseModel):
    id: int
    request_id: str
    stage: str
    previous_target: str | None = None
    new_target: str
    changed_by_user_id: str | None = None
    changed_by_name: str | None = None
    changed_at: str


class RequestOut(BaseModel):
    id: str
    title: str
    customer_name: str
    product_area: str
    product_model: str | None = None
    category: str
    region: str | None = None
    expected_revenue: int | None = None
    revenue_estimate_status: str | None = None
    revenue_estimate_note: str | None = None
    importance_flag: str
    rice_reach: int | None = None
    rice_impact: int | None = None
    rice_confidence: int | None = None
    rice_effort: int | None = None
    rice_score: float | None = None
    customer_influence_score: int | None = None
    influence_detail: str | None = None
    regulatory_required: bool
    regulatory_risk_level: str | None = None
    regulatory_notes: str | None = None
    strategic_alignment: int | None = None
    resource_estimate_weeks: int | None = None
    kpi_metric: str | None = None
    kpi_target: int | None = None
    current_stage: str
    current_status: str
    created_by_dept: str
    created_by_user_id: str
    created_by_name: str | None = None
    submitted_at: str
    customer_deadline: str
    raw_customer_text: str
    sales_summary: str
    technical_notes: str | None = None
    keywords: list[KeywordOut] = []
    tech_areas: list[TechAreaOut] = []
    rd_groups: list[RequestRDGroupOut] = []
    stage_history: list[StageHistoryOut] = []


class RequestDetail(RequestOut):
    attachments: list[AttachmentOut] = []
    stage_targets: list[StageTargetOut] = []
    stage_target_history: list[StageTargetHistoryOut] = []


class RequestListResponse(BaseModel):
    items: list[RequestOut]
    total: int


class SimilarRequestOut(BaseModel):
    id: str
    title: str
    product_area: str
    submitted_at: str
    current_stage: str


class StageTargetResponse(BaseModel):
    target: StageTargetOut
    targets: list[StageTargetOut]
    history: list[StageTargetHistoryOut]
    previous_target: str | None = None


class TransitionItem(BaseModel):
    request_id: str
    title: str
    customer_name: str
    product_area: str
    current_stage: str
    from_stage: str | None = None
    to_stage: str
    entered_at: str


class TransitionBucket(BaseModel):
    key: str
    label: str
    items: list[TransitionItem]


class TransitionStatsOut(BaseModel):
    window_days: int
    transitions: list[TransitionBucket]


class KeywordCount(BaseModel):
    keyword: str
    count: int


class RDGroupLoad(BaseModel):
    id: str
    group: str
    category: str
    active_requests: int


class ImportResult(BaseModel):
    total_rows: int
    imported: int
    skipped: int
