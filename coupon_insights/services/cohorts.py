from __future__ import annotations

import asyncio
import bisect
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Sequence

from coupon_insights.core.config import AppSettings, get_settings
from coupon_insights.core.errors import AnalysisCancelledError, CohortConfigError
from coupon_insights.integrations.event_store import EventStore
from coupon_insights.services.domain import DateRange, UserAction, new_identifier
from coupon_insights.services.insights import cohort_key_insights, cohort_recommendations
from coupon_insights.utils.periods import (
    TIME_UNITS,
    TimeUnit,
    add_time_units,
    bucket_start,
    cohort_name,
)


logger = logging.getLogger(__name__)


ANY_ACTIVITY = "any_activity"
TREND_THRESHOLD = 0.05
SIGNIFICANT_DIFFERENCE = 0.05

RetentionTrend = Literal["improving", "declining", "stable"]


@dataclass(frozen=True, slots=True)
class CohortConfig:
    name: str
    acquisition_event: str
    retention_event: str = ANY_ACTIVITY
    time_unit: TimeUnit = "week"
    periods: int = 12

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise CohortConfigError("Cohort analysis name is required.")
        if not self.acquisition_event:
            raise CohortConfigError("Acquisition event is required.")
        if not self.retention_event:
            raise CohortConfigError("Retention event is required (or 'any_activity').")
        if self.time_unit not in TIME_UNITS:
            raise CohortConfigError(f"Unsupported time unit '{self.time_unit}'.")
        if self.periods < 1:
            raise CohortConfigError("At least one retention period is required.")

    @property
    def tracks_any_activity(self) -> bool:
        return self.retention_event == ANY_ACTIVITY


@dataclass(slots=True)
class Cohort:
    id: str
    name: str
    start_date: datetime
    end_date: datetime
    user_count: int
    user_ids: frozenset[str]
    retention_rates: list[float] = field(default_factory=list)

    @property
    def mean_retention(self) -> float:
        if not self.retention_rates:
            return 0.0
        return sum(self.retention_rates) / len(self.retention_rates)


@dataclass(slots=True)
class CohortAnalysis:
    id: str
    name: str
    config: CohortConfig
    date_range: DateRange
    cohorts: list[Cohort]
    retention_matrix: list[list[float]]
    average_retention: list[float]
    retention_trend: RetentionTrend
    dispersion: float

    @property
    def total_users(self) -> int:
        return sum(cohort.user_count for cohort in self.cohorts)


@dataclass(slots=True)
class PeriodDifference:
    period: int
    difference: float
    is_significant: bool


@dataclass(slots=True)
class CohortComparison:
    first: CohortAnalysis
    second: CohortAnalysis
    retention_difference: list[float]
    significant_differences: list[PeriodDifference]


@dataclass(slots=True)
class CohortInsights:
    best_performing_cohort: str | None
    worst_performing_cohort: str | None
    retention_trend: RetentionTrend
    key_insights: list[str]
    recommendations: list[str]


def average_retention(matrix: Sequence[Sequence[float]]) -> list[float]:
    """Column means over the cohorts that reached each period."""
    width = max((len(row) for row in matrix), default=0)
    averages: list[float] = []
    for period in range(width):
        column = [row[period] for row in matrix if len(row) > period]
        averages.append(sum(column) / len(column) if column else 0.0)
    return averages


def _group_average(cohorts: Sequence[Cohort]) -> float:
    rates = [rate for cohort in cohorts for rate in cohort.retention_rates]
    return sum(rates) / len(rates) if rates else 0.0


def retention_trend(cohorts: Sequence[Cohort], window: int = 3) -> RetentionTrend:
    """Compare the earliest ``window`` cohorts with the latest ``window``."""
    if len(cohorts) < 2:
        return "stable"
    difference = _group_average(cohorts[-window:]) - _group_average(cohorts[:window])
    if difference > TREND_THRESHOLD:
        return "improving"
    if difference < -TREND_THRESHOLD:
        return "declining"
    return "stable"


def retention_dispersion(cohorts: Sequence[Cohort]) -> float:
    means = [cohort.mean_retention for cohort in cohorts if cohort.retention_rates]
    if not means:
        return 0.0
    center = sum(means) / len(means)
    return math.sqrt(sum((value - center) ** 2 for value in means) / len(means))


def elapsed_periods(start: datetime, config: CohortConfig, analysis_end: datetime) -> int:
    count = 0
    while count < config.periods and add_time_units(start, count, config.time_unit) < analysis_end:
        count += 1
    return count


class CohortAnalysisService:
    """Groups users by acquisition period and measures retention over calendar periods."""

    def __init__(self, event_store: EventStore, *, settings: AppSettings | None = None):
        self._events = event_store
        self._settings = settings or get_settings()

    async def analyze_cohorts(
        self,
        config: CohortConfig,
        date_range: DateRange,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> CohortAnalysis:
        logger.info(
            "Starting cohort analysis",
            extra={"analysis_name": config.name, "time_unit": config.time_unit, "periods": config.periods},
        )
        cohorts = await self._assign_cohorts(config, date_range)
        await self._calculate_retention(cohorts, config, date_range, cancel_event)

        matrix = [list(cohort.retention_rates) for cohort in cohorts]
        analysis = CohortAnalysis(
            id=f"cohort_analysis_{new_identifier()}",
            name=config.name,
            config=config,
            date_range=date_range,
            cohorts=cohorts,
            retention_matrix=matrix,
            average_retention=average_retention(matrix),
            retention_trend=retention_trend(cohorts, self._settings.cohort_trend_window),
            dispersion=retention_dispersion(cohorts),
        )
        logger.info(
            "Cohort analysis completed",
            extra={
                "analysis_id": analysis.id,
                "cohorts_count": len(cohorts),
                "total_users": analysis.total_users,
            },
        )
        return analysis

    async def analyze_retention_cohorts(
        self,
        date_range: DateRange,
        time_unit: TimeUnit = "week",
        periods: int = 12,
    ) -> CohortAnalysis:
        config = CohortConfig(
            name="User Retention Analysis",
            acquisition_event=UserAction.BOT_START.value,
            retention_event=ANY_ACTIVITY,
            time_unit=time_unit,
            periods=periods,
        )
        return await self.analyze_cohorts(config, date_range)

    async def analyze_revenue_cohorts(
        self,
        date_range: DateRange,
        periods: int = 12,
    ) -> CohortAnalysis:
        config = CohortConfig(
            name="Revenue Cohort Analysis",
            acquisition_event=UserAction.BOT_START.value,
            retention_event=UserAction.PURCHASE_COMPLETED.value,
            time_unit="month",
            periods=periods,
        )
        return await self.analyze_cohorts(config, date_range)

    async def compare_cohorts(
        self,
        first_config: CohortConfig,
        second_config: CohortConfig,
        date_range: DateRange,
    ) -> CohortComparison:
        first, second = await asyncio.gather(
            self.analyze_cohorts(first_config, date_range),
            self.analyze_cohorts(second_config, date_range),
        )
        differences = [
            rate - (second.average_retention[index] if index < len(second.average_retention) else 0.0)
            for index, rate in enumerate(first.average_retention)
        ]
        return CohortComparison(
            first=first,
            second=second,
            retention_difference=differences,
            significant_differences=[
                PeriodDifference(
                    period=index,
                    difference=difference,
                    is_significant=abs(difference) > SIGNIFICANT_DIFFERENCE,
                )
                for index, difference in enumerate(differences)
            ],
        )

    def get_cohort_insights(self, analysis: CohortAnalysis) -> CohortInsights:
        ranked = sorted(analysis.cohorts, key=lambda cohort: -cohort.mean_retention)
        return CohortInsights(
            best_performing_cohort=ranked[0].name if ranked else None,
            worst_performing_cohort=ranked[-1].name if ranked else None,
            retention_trend=analysis.retention_trend,
            key_insights=cohort_key_insights(analysis),
            recommendations=cohort_recommendations(analysis),
        )

    async def _assign_cohorts(self, config: CohortConfig, date_range: DateRange) -> list[Cohort]:
        events = await self._events.query(date_range, event_names=[config.acquisition_event])
        first_seen: dict[str, datetime] = {}
        for event in events:
            if event.is_filtered:
                continue
            current = first_seen.get(event.user_id)
            if current is None or event.timestamp < current:
                first_seen[event.user_id] = event.timestamp

        buckets: dict[datetime, set[str]] = defaultdict(set)
        for user_id, acquired_at in first_seen.items():
            buckets[bucket_start(acquired_at, config.time_unit)].add(user_id)

        cohorts = []
        for start in sorted(buckets):
            members = frozenset(buckets[start])
            cohorts.append(
                Cohort(
                    id=f"cohort_{start.date().isoformat()}",
                    name=cohort_name(start, config.time_unit),
                    start_date=start,
                    end_date=add_time_units(start, 1, config.time_unit),
                    user_count=len(members),
                    user_ids=members,
                )
            )
        return cohorts

    async def _calculate_retention(
        self,
        cohorts: Sequence[Cohort],
        config: CohortConfig,
        date_range: DateRange,
        cancel_event: asyncio.Event | None,
    ) -> None:
        if not cohorts:
            return
        spans = {
            cohort.id: elapsed_periods(cohort.start_date, config, date_range.end)
            for cohort in cohorts
        }
        window = DateRange(
            cohorts[0].start_date,
            max(
                add_time_units(cohort.start_date, max(spans[cohort.id], 1), config.time_unit)
                for cohort in cohorts
            ),
        )
        members = set().union(*(cohort.user_ids for cohort in cohorts))
        activity = await self._events.query(
            window,
            event_names=None if config.tracks_any_activity else [config.retention_event],
            user_ids=members,
        )
        timeline: dict[str, list[datetime]] = defaultdict(list)
        for event in activity:
            if not event.is_filtered:
                timeline[event.user_id].append(event.timestamp)
        for moments in timeline.values():
            moments.sort()

        for cohort in cohorts:
            if cancel_event is not None and cancel_event.is_set():
                raise AnalysisCancelledError(f"Cohort analysis '{config.name}' cancelled.")
            rates: list[float] = []
            for period in range(spans[cohort.id]):
                period_start = add_time_units(cohort.start_date, period, config.time_unit)
                period_end = add_time_units(cohort.start_date, period + 1, config.time_unit)
                active = sum(
                    1
                    for user_id in cohort.user_ids
                    if _has_activity(timeline.get(user_id, ()), period_start, period_end)
                )
                rates.append(active / cohort.user_count if cohort.user_count else 0.0)
            cohort.retention_rates = rates
            await asyncio.sleep(0)


def _has_activity(moments: Sequence[datetime], start: datetime, end: datetime) -> bool:
    index = bisect.bisect_left(moments, start)
    return index < len(moments) and moments[index] < end
