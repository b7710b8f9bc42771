from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from coupon_insights.services.cohorts import CohortAnalysis, CohortInsights
from coupon_insights.services.domain import EventType, Funnel


class EventCreate(BaseModel):
    """Payload describing a single behavioral event."""

    user_id: str = Field(..., min_length=1, max_length=64)
    event_name: str = Field(..., min_length=1, max_length=128)
    properties: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] | None = Field(
        default=None,
        description="Platform, source, device, location and similar client metadata.",
    )
    timestamp: datetime | None = Field(
        default=None,
        description="When the event happened; defaults to the time it is received.",
    )


class EventBatchCreate(BaseModel):
    events: list[EventCreate] = Field(..., min_length=1, max_length=1000)


class EventItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    session_id: str | None = None
    event_type: EventType
    event_name: str
    timestamp: datetime
    properties: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class BatchItemResultItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    index: int
    ok: bool
    event_id: str | None = None
    error: str | None = None


class BatchCollectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    succeeded: int
    failed: int
    results: list[BatchItemResultItem]


class SessionStart(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    platform: str = "telegram"
    source: str = "bot"
    context: dict[str, Any] | None = None


class SessionItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    platform: str
    source: str
    started_at: datetime
    last_activity_at: datetime
    ended_at: datetime | None = None
    duration_ms: int | None = None
    event_count: int
    unique_actions: int
    conversion_event_count: int


class FunnelStepCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    event_name: str = Field(..., min_length=1, max_length=128)
    event_properties: dict[str, Any] | None = Field(
        default=None,
        description="Property values an event must carry to match the step.",
    )
    required: bool = True


class FunnelCreate(BaseModel):
    """Definition of an ordered conversion funnel."""

    name: str = Field(..., min_length=1, max_length=120)
    description: str | None = None
    steps: list[FunnelStepCreate] = Field(..., min_length=1)
    time_window_seconds: float = Field(
        default=86400.0,
        gt=0,
        description="Maximum duration from a journey's first event to its final step.",
    )


class FunnelStepItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    match_event_name: str
    order: int
    match_properties: dict[str, Any] | None = None
    required: bool


class FunnelItem(BaseModel):
    id: str
    name: str
    description: str | None = None
    steps: list[FunnelStepItem]
    time_window_seconds: float
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, funnel: Funnel) -> "FunnelItem":
        return cls(
            id=funnel.id,
            name=funnel.name,
            description=funnel.description,
            steps=[FunnelStepItem.model_validate(step) for step in funnel.steps],
            time_window_seconds=funnel.time_window.total_seconds(),
            created_at=funnel.created_at,
        )


class DateRangeItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    start: datetime
    end: datetime


class FunnelStepAnalysisItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step_id: str
    step_name: str
    users_entered: int = Field(..., ge=0)
    users_completed: int = Field(..., ge=0)
    conversion_rate: float = Field(..., ge=0, le=1)
    dropoff_rate: float = Field(..., ge=0, le=1)
    average_time_to_complete_ms: float = Field(..., ge=0)


class DropoffPointItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_step: str
    to_step: str
    dropoff_count: int
    dropoff_rate: float
    reasons: list[str]


class FunnelAnalysisItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    funnel_id: str
    date_range: DateRangeItem
    total_users: int
    converted_users: int
    conversion_rate: float
    average_conversion_time_ms: float
    steps: list[FunnelStepAnalysisItem]
    dropoff_points: list[DropoffPointItem]


class SegmentAnalysisItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    segment: str
    user_count: int
    analysis: FunnelAnalysisItem


class FunnelComparisonItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    baseline: FunnelAnalysisItem
    variation: FunnelAnalysisItem
    z_score: float
    p_value: float
    is_significant: bool
    confidence_level: float
    winner: Literal["baseline", "variation", "inconclusive"]


class SegmentPerformanceItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    segment: str
    conversion_rate: float
    user_count: int


class FunnelInsightsItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    overall_conversion_rate: float
    biggest_dropoff_step: str | None = None
    dropoff_rate: float
    average_time_to_convert_ms: float
    top_performing_segments: list[SegmentPerformanceItem]
    recommendations: list[str]


class CohortAnalysisRequest(BaseModel):
    name: str = Field(default="Cohort Analysis", min_length=1, max_length=120)
    acquisition_event: str = Field(..., min_length=1)
    retention_event: str = Field(
        default="any_activity",
        description="Event name that counts as retained activity, or 'any_activity'.",
    )
    time_unit: Literal["day", "week", "month"] = "week"
    periods: int = Field(default=12, ge=1, le=104)
    start: datetime
    end: datetime


class CohortItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    start_date: datetime
    end_date: datetime
    user_count: int
    retention_rates: list[float]


class CohortInsightsItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    best_performing_cohort: str | None = None
    worst_performing_cohort: str | None = None
    retention_trend: Literal["improving", "declining", "stable"]
    key_insights: list[str]
    recommendations: list[str]


class CohortAnalysisItem(BaseModel):
    id: str
    name: str
    date_range: DateRangeItem
    cohorts: list[CohortItem]
    retention_matrix: list[list[float]]
    average_retention: list[float]
    retention_trend: Literal["improving", "declining", "stable"]
    dispersion: float
    insights: CohortInsightsItem | None = None

    @classmethod
    def from_domain(
        cls, analysis: CohortAnalysis, insights: CohortInsights | None = None
    ) -> "CohortAnalysisItem":
        return cls(
            id=analysis.id,
            name=analysis.name,
            date_range=DateRangeItem.model_validate(analysis.date_range),
            cohorts=[CohortItem.model_validate(cohort) for cohort in analysis.cohorts],
            retention_matrix=analysis.retention_matrix,
            average_retention=analysis.average_retention,
            retention_trend=analysis.retention_trend,
            dispersion=analysis.dispersion,
            insights=CohortInsightsItem.model_validate(insights) if insights else None,
        )


class ForecastPointItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    metric: str
    current_value: float
    forecasted_value: float
    confidence: float = Field(..., ge=0.5, le=1)
    trend: Literal["up", "down", "stable"]
    period: str


class SeriesPointItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period: str
    value: float


class SeasonalityItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    detected: bool
    pattern: str
    strength: float
    lag: int | None = None
    peaks: list[str]
    troughs: list[str]


class AnomalyItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period: str
    actual: float
    expected: float
    deviation: float


class TrendAnalysisItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    metric: str
    historical: list[SeriesPointItem]
    trend_line: list[SeriesPointItem]
    slope: float
    intercept: float
    seasonality: SeasonalityItem
    anomalies: list[AnomalyItem]


class ProjectionPointItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period: str
    optimistic: float
    realistic: float
    pessimistic: float
    confidence: float


class GrowthFactorItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    factor: str
    impact: float
    description: str


class GrowthProjectionItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    metric: str
    current_value: float
    base_growth_rate: float
    projections: list[ProjectionPointItem]
    factors: list[GrowthFactorItem]


class ForecastInsightsItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    insights: list[str]
    recommendations: list[str]
    risks: list[str]
    opportunities: list[str]
