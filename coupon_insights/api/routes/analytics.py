from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from coupon_insights.api.deps import (
    get_cohort_service,
    get_collector_service,
    get_forecasting_service,
    get_funnel_service,
)
from coupon_insights.core.errors import EventStoreTimeoutError
from coupon_insights.schemas.analytics import (
    BatchCollectionResponse,
    CohortAnalysisItem,
    CohortAnalysisRequest,
    EventBatchCreate,
    EventCreate,
    EventItem,
    ForecastInsightsItem,
    ForecastPointItem,
    FunnelAnalysisItem,
    FunnelComparisonItem,
    FunnelCreate,
    FunnelInsightsItem,
    FunnelItem,
    GrowthProjectionItem,
    SegmentAnalysisItem,
    SessionItem,
    SessionStart,
    TrendAnalysisItem,
)
from coupon_insights.services.cohorts import CohortAnalysisService, CohortConfig
from coupon_insights.services.collector import EventCollectorService, EventInput
from coupon_insights.services.domain import DateRange
from coupon_insights.services.forecasting import ForecastingService
from coupon_insights.services.funnels import FunnelAnalysisService, FunnelStepConfig


router = APIRouter()

_HANDLED = (ValueError, LookupError, EventStoreTimeoutError)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, EventStoreTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc))
    if isinstance(exc, LookupError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _date_range(start: datetime, end: datetime) -> DateRange:
    try:
        return DateRange(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post(
    "/events",
    response_model=EventItem,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Validate, enrich and buffer a single event.",
)
async def collect_event(
    payload: EventCreate,
    collector: EventCollectorService = Depends(get_collector_service),
) -> EventItem:
    try:
        event = await collector.collect_event(
            payload.user_id,
            payload.event_name,
            payload.properties,
            payload.context,
            timestamp=payload.timestamp,
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return EventItem.model_validate(event)


@router.post(
    "/events/batch",
    response_model=BatchCollectionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Collect many events, reporting per-item success.",
)
async def collect_event_batch(
    payload: EventBatchCreate,
    collector: EventCollectorService = Depends(get_collector_service),
) -> BatchCollectionResponse:
    result = await collector.collect_event_batch(
        [
            EventInput(
                user_id=item.user_id,
                event_name=item.event_name,
                properties=item.properties,
                context=item.context,
                timestamp=item.timestamp,
            )
            for item in payload.events
        ]
    )
    return BatchCollectionResponse.model_validate(result)


@router.post(
    "/sessions",
    response_model=SessionItem,
    status_code=status.HTTP_201_CREATED,
    summary="Explicitly open a session, closing any session still open for the user.",
)
async def start_session(
    payload: SessionStart,
    collector: EventCollectorService = Depends(get_collector_service),
) -> SessionItem:
    try:
        session = await collector.start_session(
            payload.user_id, payload.platform, payload.source, payload.context
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return SessionItem.model_validate(session)


@router.post(
    "/sessions/{session_id}/end",
    response_model=SessionItem,
    summary="Close an open session and finalize its duration.",
)
async def end_session(
    session_id: str,
    collector: EventCollectorService = Depends(get_collector_service),
) -> SessionItem:
    session = await collector.end_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Open session '{session_id}' not found.",
        )
    return SessionItem.model_validate(session)


@router.post(
    "/funnels",
    response_model=FunnelItem,
    status_code=status.HTTP_201_CREATED,
    summary="Define an immutable conversion funnel.",
)
async def define_funnel(
    payload: FunnelCreate,
    service: FunnelAnalysisService = Depends(get_funnel_service),
) -> FunnelItem:
    try:
        funnel = await service.define_funnel(
            payload.name,
            [
                FunnelStepConfig(
                    name=step.name,
                    event_name=step.event_name,
                    event_properties=step.event_properties,
                    required=step.required,
                )
                for step in payload.steps
            ],
            timedelta(seconds=payload.time_window_seconds),
            payload.description,
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return FunnelItem.from_domain(funnel)


@router.get(
    "/funnels/compare",
    response_model=FunnelComparisonItem,
    summary="A/B compare two funnels over the same date range.",
)
async def compare_funnels(
    baseline_id: str = Query(..., description="Funnel used as the control."),
    variation_id: str = Query(..., description="Funnel used as the variant."),
    start: datetime = Query(...),
    end: datetime = Query(...),
    service: FunnelAnalysisService = Depends(get_funnel_service),
) -> FunnelComparisonItem:
    try:
        comparison = await service.compare_funnel_variations(
            baseline_id, variation_id, _date_range(start, end)
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return FunnelComparisonItem.model_validate(comparison)


@router.get(
    "/funnels/{funnel_id}/analysis",
    response_model=FunnelAnalysisItem,
    summary="Step-wise conversion and dropoff statistics for a funnel.",
)
async def analyze_funnel(
    funnel_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    include_dropoff: bool = Query(True, description="Attach ranked dropoff points."),
    service: FunnelAnalysisService = Depends(get_funnel_service),
) -> FunnelAnalysisItem:
    try:
        analysis = await service.analyze_funnel(
            funnel_id, _date_range(start, end), include_dropoff_analysis=include_dropoff
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return FunnelAnalysisItem.model_validate(analysis)


@router.get(
    "/funnels/{funnel_id}/segments",
    response_model=list[SegmentAnalysisItem],
    summary="Funnel analysis partitioned by a segment key, ranked by conversion.",
)
async def segment_funnel(
    funnel_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    segment_by: str = Query("platform", min_length=1),
    service: FunnelAnalysisService = Depends(get_funnel_service),
) -> list[SegmentAnalysisItem]:
    try:
        segments = await service.segment_funnel_analysis(
            funnel_id, _date_range(start, end), segment_by
        )
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return [SegmentAnalysisItem.model_validate(segment) for segment in segments]


@router.get(
    "/funnels/{funnel_id}/insights",
    response_model=FunnelInsightsItem,
    summary="Headline funnel metrics with recommendations.",
)
async def funnel_insights(
    funnel_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    service: FunnelAnalysisService = Depends(get_funnel_service),
) -> FunnelInsightsItem:
    try:
        insights = await service.get_funnel_insights(funnel_id, _date_range(start, end))
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return FunnelInsightsItem.model_validate(insights)


@router.post(
    "/cohorts/analysis",
    response_model=CohortAnalysisItem,
    summary="Retention matrix for acquisition cohorts.",
)
async def analyze_cohorts(
    payload: CohortAnalysisRequest,
    service: CohortAnalysisService = Depends(get_cohort_service),
) -> CohortAnalysisItem:
    try:
        config = CohortConfig(
            name=payload.name,
            acquisition_event=payload.acquisition_event,
            retention_event=payload.retention_event,
            time_unit=payload.time_unit,
            periods=payload.periods,
        )
        analysis = await service.analyze_cohorts(config, _date_range(payload.start, payload.end))
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return CohortAnalysisItem.from_domain(analysis, service.get_cohort_insights(analysis))


@router.get(
    "/forecasts/insights",
    response_model=ForecastInsightsItem,
    summary="Narrative insights, risks and opportunities from revenue and user forecasts.",
)
async def forecast_insights(
    start: datetime = Query(...),
    end: datetime = Query(...),
    service: ForecastingService = Depends(get_forecasting_service),
) -> ForecastInsightsItem:
    try:
        insights = await service.get_forecast_insights(_date_range(start, end))
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return ForecastInsightsItem.model_validate(insights)


@router.get(
    "/forecasts/{metric}",
    response_model=list[ForecastPointItem],
    summary="Point forecasts for a metric.",
)
async def forecast_metric(
    metric: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    periods: int = Query(3, ge=1, le=24),
    service: ForecastingService = Depends(get_forecasting_service),
) -> list[ForecastPointItem]:
    try:
        points = await service.forecast(metric, _date_range(start, end), periods)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return [ForecastPointItem.model_validate(point) for point in points]


@router.get(
    "/trends/{metric}",
    response_model=TrendAnalysisItem,
    summary="Fitted trend line, seasonality and anomalies for a metric.",
)
async def analyze_trend(
    metric: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    service: ForecastingService = Depends(get_forecasting_service),
) -> TrendAnalysisItem:
    try:
        trend = await service.analyze_trend(metric, _date_range(start, end))
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return TrendAnalysisItem.model_validate(trend)


@router.get(
    "/projections/{metric}",
    response_model=GrowthProjectionItem,
    summary="Optimistic, realistic and pessimistic growth scenarios.",
)
async def project_growth(
    metric: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    periods: int = Query(6, ge=1, le=24),
    service: ForecastingService = Depends(get_forecasting_service),
) -> GrowthProjectionItem:
    try:
        projection = await service.project_growth(metric, _date_range(start, end), periods)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return GrowthProjectionItem.model_validate(projection)
