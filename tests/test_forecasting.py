from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from coupon_insights.core.errors import InsufficientDataError, UnknownMetricError
from coupon_insights.integrations.event_store import InMemoryEventStore
from coupon_insights.services.domain import DateRange
from coupon_insights.services.forecasting import (
    GROWTH_FACTORS,
    METRICS,
    ForecastingService,
    LinearFit,
    SeriesPoint,
    aggregate_series,
    autocorrelation,
    compound_growth_rate,
    confidence_at,
    detect_anomalies,
    detect_seasonality,
    fit_linear_trend,
)


def _utc(year: int, month: int, day: int = 1) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


def _series(values: list[float]) -> list[SeriesPoint]:
    return [SeriesPoint(period=f"p{index:02d}", value=value) for index, value in enumerate(values)]


async def _seed_revenue(store: InMemoryEventStore, make_event, amounts: list[float]) -> None:
    events = []
    for offset, amount in enumerate(amounts):
        events.append(
            make_event(
                f"buyer-{offset}",
                "business_revenue",
                _utc(2024, 1 + offset, 15),
                {"business_metric": "revenue", "value": amount, "currency": "INR"},
            )
        )
    await store.append_batch(events)


def test_fit_linear_trend_recovers_exact_line() -> None:
    values = [2 * x + 5 for x in range(10)]

    fit = fit_linear_trend(values)

    assert fit.slope == pytest.approx(2.0)
    assert fit.intercept == pytest.approx(5.0)
    assert detect_anomalies(_series(values), fit) == []


def test_fit_linear_trend_degenerate_inputs() -> None:
    assert fit_linear_trend([]).slope == 0.0
    single = fit_linear_trend([42.0])
    assert (single.slope, single.intercept) == (0.0, 42.0)


def test_anomalies_flag_large_relative_deviation() -> None:
    values = [100.0, 100.0, 100.0, 200.0, 100.0, 100.0]
    fit = fit_linear_trend(values)

    anomalies = detect_anomalies(_series(values), fit, threshold=0.2)

    assert [anomaly.period for anomaly in anomalies] == ["p03"]
    assert anomalies[0].actual == 200.0
    assert anomalies[0].deviation > 0.2


def test_anomaly_ignored_when_expected_value_is_zero() -> None:
    assert detect_anomalies(_series([0.0, 5.0, 0.0]), LinearFit(0.0, 0.0)) == []


def test_compound_growth_rate_edge_cases() -> None:
    assert compound_growth_rate([100, 110, 121]) == pytest.approx(0.10)
    assert compound_growth_rate([0, 50]) == 0.0
    assert compound_growth_rate([100, -5]) == 0.0
    assert compound_growth_rate([100]) == 0.0


def test_confidence_decays_to_floor() -> None:
    assert confidence_at(1, 0.10) == pytest.approx(0.9)
    assert confidence_at(3, 0.08) == pytest.approx(0.76)
    assert confidence_at(12, 0.10) == 0.5


def test_periodic_series_is_quarterly() -> None:
    values = [1.0, 5.0, 9.0] * 4

    assert autocorrelation(values, 3) == pytest.approx(1.0)
    seasonality = detect_seasonality(_series(values))

    assert seasonality.detected
    assert seasonality.lag == 3
    assert seasonality.pattern == "quarterly"
    assert seasonality.strength > 0.95
    assert seasonality.peaks == ["p02", "p05", "p08"]
    assert seasonality.troughs == ["p03", "p06", "p09"]


def test_seasonality_needs_a_year_of_history() -> None:
    seasonality = detect_seasonality(_series([1.0, 5.0, 9.0] * 3))

    assert not seasonality.detected
    assert seasonality.pattern == "not_determined"


def test_flat_series_has_no_seasonality() -> None:
    seasonality = detect_seasonality(_series([5.0] * 12))

    assert not seasonality.detected
    assert seasonality.pattern == "none"
    assert autocorrelation([5.0] * 12, 3) == 0.0


def test_steady_trend_is_not_seasonal() -> None:
    seasonality = detect_seasonality(_series([2.0 * x + 5 for x in range(24)]))

    assert not seasonality.detected
    assert seasonality.pattern == "none"


def test_compound_growth_ignores_periods_before_first_activity() -> None:
    assert compound_growth_rate([0, 0, 2, 4, 8]) == pytest.approx(1.0)
    assert compound_growth_rate([0, 0, 0, 5]) == 0.0


def test_aggregate_series_by_aggregation(make_event) -> None:
    january, february = _utc(2024, 1, 10), _utc(2024, 2, 10)
    events = [
        make_event("u1", "purchase_completed", january),
        make_event("u1", "purchase_completed", january + timedelta(days=1)),
        make_event("u2", "purchase_completed", january),
        make_event("u2", "purchase_completed", february),
        make_event("u3", "purchase_completed", february),
        make_event("bot", "purchase_completed", february, metadata={"filtered": True}),
    ]
    window = DateRange(_utc(2024, 1), _utc(2024, 4))

    def values(metric: str) -> list[float]:
        return [point.value for point in aggregate_series(events, METRICS[metric], window, "month")]

    assert values("purchases") == [3.0, 2.0, 0.0]
    assert values("active_users") == [2.0, 2.0, 0.0]
    assert values("users") == [2.0, 3.0, 3.0]
    assert [point.period for point in aggregate_series(events, METRICS["users"], window, "month")] == [
        "2024-01",
        "2024-02",
        "2024-03",
    ]


@pytest.mark.asyncio
async def test_revenue_forecast_extends_linear_trend(make_event, settings) -> None:
    store = InMemoryEventStore()
    await _seed_revenue(store, make_event, [100, 110, 120, 130])
    service = ForecastingService(store, settings=settings)

    points = await service.forecast("revenue", DateRange(_utc(2024, 1), _utc(2024, 5)), periods=2)

    assert [point.forecasted_value for point in points] == pytest.approx([140.0, 150.0])
    assert [point.confidence for point in points] == pytest.approx([0.9, 0.8])
    assert [point.period for point in points] == ["2024-05", "2024-06"]
    assert {point.trend for point in points} == {"up"}
    assert points[0].current_value == 130.0


@pytest.mark.asyncio
async def test_declining_forecast_is_clamped_at_zero(make_event, settings) -> None:
    store = InMemoryEventStore()
    await _seed_revenue(store, make_event, [90, 60, 30])
    service = ForecastingService(store, settings=settings)

    points = await service.forecast("revenue", DateRange(_utc(2024, 1), _utc(2024, 4)), periods=2)

    assert [point.forecasted_value for point in points] == pytest.approx([0.0, 0.0])
    assert points[0].trend == "down"


@pytest.mark.asyncio
async def test_unknown_metric_and_short_history(make_event, settings) -> None:
    store = InMemoryEventStore()
    await _seed_revenue(store, make_event, [100])
    service = ForecastingService(store, settings=settings)

    with pytest.raises(UnknownMetricError):
        await service.forecast("bounce_rate", DateRange(_utc(2024, 1), _utc(2024, 3)))
    with pytest.raises(InsufficientDataError):
        await service.forecast("revenue", DateRange(_utc(2024, 1, 2), _utc(2024, 1, 20)))


@pytest.mark.asyncio
async def test_analyze_trend_reports_line_and_seasonality(make_event, settings) -> None:
    store = InMemoryEventStore()
    await _seed_revenue(store, make_event, [100, 110, 120, 130])
    service = ForecastingService(store, settings=settings)

    trend = await service.analyze_trend("revenue", DateRange(_utc(2024, 1), _utc(2024, 5)))

    assert [point.value for point in trend.historical] == [100.0, 110.0, 120.0, 130.0]
    assert [point.value for point in trend.trend_line] == pytest.approx([100.0, 110.0, 120.0, 130.0])
    assert trend.slope == pytest.approx(10.0)
    assert trend.intercept == pytest.approx(100.0)
    assert trend.seasonality.pattern == "not_determined"
    assert trend.anomalies == []


@pytest.mark.asyncio
async def test_project_growth_scenarios(make_event, settings) -> None:
    store = InMemoryEventStore()
    await _seed_revenue(store, make_event, [100, 200])
    service = ForecastingService(store, settings=settings)

    projection = await service.project_growth("revenue", DateRange(_utc(2024, 1), _utc(2024, 3)), periods=2)

    assert projection.current_value == 200.0
    assert projection.base_growth_rate == pytest.approx(1.0)
    first, second = projection.projections
    assert (first.optimistic, first.realistic, first.pessimistic) == (500.0, 400.0, 300.0)
    assert (second.optimistic, second.realistic, second.pessimistic) == (1250.0, 800.0, 450.0)
    assert first.period == "2024-03"
    assert [point.confidence for point in projection.projections] == pytest.approx([0.9, 0.8])
    assert projection.factors == list(GROWTH_FACTORS)


@pytest.mark.asyncio
async def test_forecast_insights_narrate_growth(make_event, settings) -> None:
    store = InMemoryEventStore()
    await _seed_revenue(store, make_event, [100, 110, 120, 130])
    service = ForecastingService(store, settings=settings)

    insights = await service.get_forecast_insights(DateRange(_utc(2024, 1), _utc(2024, 5)))

    assert "Revenue is projected to grow by 7.7% in the next period" in insights.insights
    assert any(text.startswith("User base is expected to grow to") for text in insights.insights)
    assert "Prepare infrastructure scaling to handle increased user load" in insights.recommendations
    assert len(insights.opportunities) == 1
    assert insights.risks == []


@pytest.mark.asyncio
async def test_forecast_insights_skip_metrics_without_history(settings) -> None:
    service = ForecastingService(InMemoryEventStore(), settings=settings)

    insights = await service.get_forecast_insights(DateRange(_utc(2024, 1, 2), _utc(2024, 1, 20)))

    assert insights.insights == []
    assert insights.recommendations == []


@pytest.mark.asyncio
async def test_user_forecast_grows_when_history_starts_empty(make_event, settings) -> None:
    store = InMemoryEventStore()
    signups = {3: 2, 4: 2, 5: 4}
    await store.append_batch(
        [
            make_event(f"user-{month}-{index}", "bot_start", _utc(2024, month, 10))
            for month, count in signups.items()
            for index in range(count)
        ]
    )
    service = ForecastingService(store, settings=settings)
    window = DateRange(_utc(2024, 1), _utc(2024, 6))

    (point,) = await service.forecast("users", window, periods=1)
    insights = await service.get_forecast_insights(window, metrics=("users",))

    assert point.current_value == 8.0
    assert point.forecasted_value == pytest.approx(16.0)
    assert point.trend == "up"
    assert "User base is expected to grow to 16 users" in insights.insights
    assert insights.risks == []
