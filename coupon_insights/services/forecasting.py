from __future__ import annotations

import itertools
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Sequence

from coupon_insights.core.config import AppSettings, get_settings
from coupon_insights.core.errors import InsufficientDataError, UnknownMetricError
from coupon_insights.integrations.event_store import EventStore
from coupon_insights.services.domain import DateRange, Event, UserAction
from coupon_insights.services.insights import ForecastInsights, generate_forecast_insights
from coupon_insights.utils.periods import (
    TimeUnit,
    add_time_units,
    bucket_start,
    iter_periods,
    period_label,
)


logger = logging.getLogger(__name__)


TREND_EPSILON = 1e-9
MIN_CONFIDENCE = 0.5
SEASONALITY_LAGS = (3, 12)
SEASONALITY_THRESHOLD = 0.3
SEASONALITY_MIN_POINTS = 12
SCENARIO_MULTIPLIERS = {"optimistic": 1.5, "realistic": 1.0, "pessimistic": 0.5}

_LAG_PATTERNS = {3: "quarterly", 12: "annual"}

Trend = Literal["up", "down", "stable"]
Aggregation = Literal["sum", "count", "distinct_users", "cumulative_users"]
GrowthModel = Literal["linear", "compound"]


@dataclass(frozen=True, slots=True)
class MetricDefinition:
    name: str
    aggregation: Aggregation
    event_names: tuple[str, ...] | None = None
    value_property: str = "value"
    model: GrowthModel = "linear"
    confidence_decay: float = 0.10
    non_negative: bool = True


METRICS: dict[str, MetricDefinition] = {
    definition.name: definition
    for definition in (
        MetricDefinition("revenue", "sum", ("business_revenue",), confidence_decay=0.10),
        MetricDefinition("cashback", "sum", ("business_cashback",), confidence_decay=0.10),
        MetricDefinition(
            "purchases", "count", (UserAction.PURCHASE_COMPLETED.value,), confidence_decay=0.08
        ),
        MetricDefinition("active_users", "distinct_users", confidence_decay=0.08),
        MetricDefinition("users", "cumulative_users", model="compound", confidence_decay=0.08),
    )
}


@dataclass(slots=True)
class SeriesPoint:
    period: str
    value: float


@dataclass(slots=True)
class LinearFit:
    slope: float
    intercept: float

    def predict(self, x: float) -> float:
        return self.slope * x + self.intercept


@dataclass(slots=True)
class ForecastPoint:
    metric: str
    current_value: float
    forecasted_value: float
    confidence: float
    trend: Trend
    period: str


@dataclass(slots=True)
class Seasonality:
    detected: bool
    pattern: str
    strength: float = 0.0
    lag: int | None = None
    peaks: list[str] = field(default_factory=list)
    troughs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Anomaly:
    period: str
    actual: float
    expected: float
    deviation: float


@dataclass(slots=True)
class TrendAnalysis:
    metric: str
    historical: list[SeriesPoint]
    trend_line: list[SeriesPoint]
    slope: float
    intercept: float
    seasonality: Seasonality
    anomalies: list[Anomaly]


@dataclass(slots=True)
class ProjectionPoint:
    period: str
    optimistic: float
    realistic: float
    pessimistic: float
    confidence: float


@dataclass(frozen=True, slots=True)
class GrowthFactor:
    factor: str
    impact: float
    description: str


@dataclass(slots=True)
class GrowthProjection:
    metric: str
    current_value: float
    base_growth_rate: float
    projections: list[ProjectionPoint]
    factors: list[GrowthFactor]


# Narrative annotations only; nothing here is computed from data.
GROWTH_FACTORS: tuple[GrowthFactor, ...] = (
    GrowthFactor("Market Expansion", 0.2, "Expansion into new markets and demographics"),
    GrowthFactor("Competition", -0.1, "Increased competition may reduce growth rate"),
    GrowthFactor("Economic Conditions", 0.05, "Overall economic health affects consumer spending"),
    GrowthFactor("Product Innovation", 0.15, "New features and improvements drive user engagement"),
    GrowthFactor("Marketing Investment", 0.1, "Increased marketing spend can accelerate growth"),
)


def fit_linear_trend(values: Sequence[float]) -> LinearFit:
    """Ordinary least squares over ``(i, values[i])`` for ``i = 0..n-1``."""
    n = len(values)
    if n == 0:
        return LinearFit(0.0, 0.0)
    sum_x = n * (n - 1) / 2
    sum_x2 = (n - 1) * n * (2 * n - 1) / 6
    sum_y = float(sum(values))
    sum_xy = float(sum(index * value for index, value in enumerate(values)))
    denominator = n * sum_x2 - sum_x**2
    if denominator == 0:
        return LinearFit(0.0, sum_y / n)
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return LinearFit(slope, intercept)


def compound_growth_rate(values: Sequence[float]) -> float:
    """Per-period growth between the first non-empty period and the last one."""
    observed = list(itertools.dropwhile(lambda value: value <= 0, values))
    if len(observed) < 2 or observed[-1] < 0:
        return 0.0
    return (observed[-1] / observed[0]) ** (1 / (len(observed) - 1)) - 1


def confidence_at(horizon: int, decay: float) -> float:
    return max(MIN_CONFIDENCE, 1.0 - horizon * decay)


def classify_trend(rate: float) -> Trend:
    if rate > TREND_EPSILON:
        return "up"
    if rate < -TREND_EPSILON:
        return "down"
    return "stable"


def autocorrelation(values: Sequence[float], lag: int) -> float:
    """Mean-centred lagged correlation normalised over the overlapping window.

    A perfectly periodic series with period ``lag`` scores 1.0.
    """
    n = len(values)
    if lag <= 0 or lag >= n:
        return 0.0
    mean = sum(values) / n
    deviations = [value - mean for value in values]
    head = deviations[: n - lag]
    tail = deviations[lag:]
    numerator = sum(a * b for a, b in zip(head, tail))
    denominator = math.sqrt(sum(a * a for a in head) * sum(b * b for b in tail))
    return numerator / denominator if denominator else 0.0


def find_peaks_and_troughs(points: Sequence[SeriesPoint]) -> tuple[list[str], list[str]]:
    peaks: list[str] = []
    troughs: list[str] = []
    for before, point, after in zip(points, points[1:], points[2:]):
        if point.value > before.value and point.value > after.value:
            peaks.append(point.period)
        elif point.value < before.value and point.value < after.value:
            troughs.append(point.period)
    return peaks, troughs


def detect_seasonality(
    points: Sequence[SeriesPoint],
    lags: Sequence[int] = SEASONALITY_LAGS,
    threshold: float = SEASONALITY_THRESHOLD,
) -> Seasonality:
    if len(points) < SEASONALITY_MIN_POINTS:
        return Seasonality(detected=False, pattern="not_determined")

    # Cycles are measured on residuals around the linear trend.
    raw = [point.value for point in points]
    fit = fit_linear_trend(raw)
    tolerance = 1e-9 * max(1.0, max(abs(value) for value in raw))
    values: list[float] = []
    for index, value in enumerate(raw):
        residual = value - fit.predict(index)
        values.append(residual if abs(residual) > tolerance else 0.0)
    best_lag: int | None = None
    best_strength = 0.0
    for lag in sorted(lags):
        strength = abs(autocorrelation(values, lag))
        # Strict comparison keeps the shorter lag on ties.
        if strength > threshold and strength > best_strength:
            best_lag, best_strength = lag, strength

    peaks, troughs = find_peaks_and_troughs(points)
    if best_lag is None:
        return Seasonality(detected=False, pattern="none", peaks=peaks, troughs=troughs)
    return Seasonality(
        detected=True,
        pattern=_LAG_PATTERNS.get(best_lag, f"every_{best_lag}_periods"),
        strength=best_strength,
        lag=best_lag,
        peaks=peaks,
        troughs=troughs,
    )


def detect_anomalies(
    points: Sequence[SeriesPoint],
    fit: LinearFit,
    threshold: float = 0.2,
) -> list[Anomaly]:
    anomalies: list[Anomaly] = []
    for index, point in enumerate(points):
        expected = fit.predict(index)
        deviation = abs(point.value - expected) / abs(expected) if expected else 0.0
        if deviation > threshold:
            anomalies.append(
                Anomaly(period=point.period, actual=point.value, expected=expected, deviation=deviation)
            )
    return anomalies


def aggregate_series(
    events: Sequence[Event],
    definition: MetricDefinition,
    date_range: DateRange,
    unit: TimeUnit,
) -> list[SeriesPoint]:
    """Bucket events into zero-filled periods covering ``date_range``."""
    starts = iter_periods(date_range.start, date_range.end, unit)
    totals: dict[datetime, float] = defaultdict(float)
    users: dict[datetime, set[str]] = defaultdict(set)
    first_seen: dict[str, datetime] = {}

    for event in events:
        if event.is_filtered:
            continue
        bucket = bucket_start(event.timestamp, unit)
        if definition.aggregation == "sum":
            raw = event.properties.get(definition.value_property, 0)
            try:
                totals[bucket] += float(raw)
            except (TypeError, ValueError):
                logger.debug("Skipping non-numeric %s on event %s", definition.value_property, event.id)
        elif definition.aggregation == "count":
            totals[bucket] += 1
        elif definition.aggregation == "distinct_users":
            users[bucket].add(event.user_id)
        else:
            seen = first_seen.get(event.user_id)
            if seen is None or bucket < seen:
                first_seen[event.user_id] = bucket

    if definition.aggregation == "distinct_users":
        totals = defaultdict(float, {bucket: float(len(ids)) for bucket, ids in users.items()})
    elif definition.aggregation == "cumulative_users":
        newcomers: dict[datetime, int] = defaultdict(int)
        for bucket in first_seen.values():
            newcomers[bucket] += 1
        running = 0
        for start in starts:
            running += newcomers.get(start, 0)
            totals[start] = float(running)

    return [SeriesPoint(period=period_label(start, unit), value=totals.get(start, 0.0)) for start in starts]


class ForecastingService:
    """Trend, seasonality and growth projections over metrics derived from stored events."""

    def __init__(self, event_store: EventStore, *, settings: AppSettings | None = None):
        self._events = event_store
        self._settings = settings or get_settings()

    @property
    def granularity(self) -> TimeUnit:
        return self._settings.forecast_series_granularity

    def metric(self, name: str) -> MetricDefinition:
        try:
            return METRICS[name]
        except KeyError:
            raise UnknownMetricError(name) from None

    async def load_series(self, metric: str, date_range: DateRange) -> list[SeriesPoint]:
        definition = self.metric(metric)
        events = await self._events.query(
            date_range,
            event_names=list(definition.event_names) if definition.event_names else None,
        )
        return aggregate_series(events, definition, date_range, self.granularity)

    async def forecast(
        self, metric: str, date_range: DateRange, periods: int = 3
    ) -> list[ForecastPoint]:
        definition = self.metric(metric)
        series = await self.load_series(metric, date_range)
        return self.forecast_series(definition, series, date_range, periods)

    def forecast_series(
        self,
        definition: MetricDefinition,
        series: Sequence[SeriesPoint],
        date_range: DateRange,
        periods: int,
    ) -> list[ForecastPoint]:
        if len(series) < 2:
            raise InsufficientDataError(2, len(series), "periods of history")
        values = [point.value for point in series]
        n = len(values)
        current = values[-1]
        last_start = iter_periods(date_range.start, date_range.end, self.granularity)[-1]

        if definition.model == "compound":
            rate = compound_growth_rate(values)
            trend = classify_trend(rate)
        else:
            fit = fit_linear_trend(values)
            trend = classify_trend(fit.slope)

        points: list[ForecastPoint] = []
        for horizon in range(1, periods + 1):
            if definition.model == "compound":
                value = current * (1 + rate) ** horizon
            else:
                value = fit.predict(n - 1 + horizon)
            if definition.non_negative:
                value = max(0.0, value)
            points.append(
                ForecastPoint(
                    metric=definition.name,
                    current_value=current,
                    forecasted_value=value,
                    confidence=confidence_at(horizon, definition.confidence_decay),
                    trend=trend,
                    period=period_label(add_time_units(last_start, horizon, self.granularity), self.granularity),
                )
            )
        logger.info(
            "Forecast generated",
            extra={"metric": definition.name, "periods": periods, "trend": trend},
        )
        return points

    async def analyze_trend(self, metric: str, date_range: DateRange) -> TrendAnalysis:
        series = await self.load_series(metric, date_range)
        if len(series) < 2:
            raise InsufficientDataError(2, len(series), "periods of history")
        fit = fit_linear_trend([point.value for point in series])
        return TrendAnalysis(
            metric=metric,
            historical=list(series),
            trend_line=[
                SeriesPoint(period=point.period, value=fit.predict(index))
                for index, point in enumerate(series)
            ],
            slope=fit.slope,
            intercept=fit.intercept,
            seasonality=detect_seasonality(series),
            anomalies=detect_anomalies(series, fit, self._settings.forecast_anomaly_threshold),
        )

    async def project_growth(
        self, metric: str, date_range: DateRange, periods: int = 6
    ) -> GrowthProjection:
        definition = self.metric(metric)
        series = await self.load_series(metric, date_range)
        if len(series) < 2:
            raise InsufficientDataError(2, len(series), "periods of history")
        values = [point.value for point in series]
        base_rate = compound_growth_rate(values)
        current = values[-1]
        last_start = iter_periods(date_range.start, date_range.end, self.granularity)[-1]

        projections = []
        for horizon in range(1, periods + 1):
            scenario = {
                name: round(current * (1 + base_rate * multiplier) ** horizon, 2)
                for name, multiplier in SCENARIO_MULTIPLIERS.items()
            }
            projections.append(
                ProjectionPoint(
                    period=period_label(add_time_units(last_start, horizon, self.granularity), self.granularity),
                    confidence=confidence_at(horizon, definition.confidence_decay),
                    **scenario,
                )
            )
        return GrowthProjection(
            metric=metric,
            current_value=current,
            base_growth_rate=base_rate,
            projections=projections,
            factors=list(GROWTH_FACTORS),
        )

    async def get_forecast_insights(
        self,
        date_range: DateRange,
        metrics: Sequence[str] = ("revenue", "users"),
    ) -> ForecastInsights:
        forecasts: list[ForecastPoint] = []
        trends: list[TrendAnalysis] = []
        for metric in metrics:
            try:
                forecasts.extend((await self.forecast(metric, date_range, periods=1))[:1])
                trends.append(await self.analyze_trend(metric, date_range))
            except InsufficientDataError as exc:
                logger.info("Skipping %s insights: %s", metric, exc)
        return generate_forecast_insights(forecasts, trends)
