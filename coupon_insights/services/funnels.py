from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence

from coupon_insights.core.errors import (
    AnalysisCancelledError,
    FunnelDefinitionError,
    FunnelNotFoundError,
)
from coupon_insights.integrations.event_store import EventStore
from coupon_insights.integrations.funnel_store import FunnelStore
from coupon_insights.services.domain import (
    DateRange,
    Event,
    EventType,
    Funnel,
    FunnelStep,
    new_identifier,
)
from coupon_insights.services.insights import funnel_recommendations


logger = logging.getLogger(__name__)


FRICTION_GAP = timedelta(minutes=5)
SIGNIFICANCE_Z = 1.96
PERIOD_CHANGE_THRESHOLD = 0.01
_YIELD_EVERY = 500

REASON_FRICTION = "Long time gap between steps suggests user confusion or technical issues"
REASON_TECHNICAL = "Technical errors occurred during the step transition"
REASON_DEFAULT = "Users may need additional guidance or motivation to proceed"

SegmentKey = Callable[["UserJourney"], str]


@dataclass(slots=True)
class FunnelStepConfig:
    """User supplied step description; ids and order are assigned on definition."""

    name: str
    event_name: str
    event_properties: Mapping[str, Any] | None = None
    required: bool = True


@dataclass(slots=True)
class UserJourney:
    user_id: str
    completed_step_ids: list[str] = field(default_factory=list)
    skipped_step_ids: list[str] = field(default_factory=list)
    dropoff_step_id: str | None = None
    conversion_time_ms: int | None = None
    is_converted: bool = False
    started_at: datetime | None = None
    step_completed_at: dict[str, datetime] = field(default_factory=dict)
    events: tuple[Event, ...] = ()

    def has_passed(self, step_id: str) -> bool:
        return step_id in self.step_completed_at or step_id in self.skipped_step_ids

    @property
    def last_completed_at(self) -> datetime | None:
        if not self.completed_step_ids:
            return None
        return self.step_completed_at[self.completed_step_ids[-1]]

    @property
    def last_event_at(self) -> datetime | None:
        return self.events[-1].timestamp if self.events else None


@dataclass(slots=True)
class FunnelStepAnalysis:
    step_id: str
    step_name: str
    users_entered: int
    users_completed: int
    conversion_rate: float
    dropoff_rate: float
    average_time_to_complete_ms: float


@dataclass(slots=True)
class DropoffPoint:
    from_step: str
    to_step: str
    dropoff_count: int
    dropoff_rate: float
    reasons: list[str]


@dataclass(slots=True)
class FunnelAnalysis:
    funnel_id: str
    date_range: DateRange
    total_users: int
    converted_users: int
    conversion_rate: float
    steps: list[FunnelStepAnalysis]
    dropoff_points: list[DropoffPoint]
    average_conversion_time_ms: float = 0.0


@dataclass(slots=True)
class SegmentAnalysis:
    segment: str
    user_count: int
    analysis: FunnelAnalysis


@dataclass(slots=True)
class FunnelComparison:
    baseline: FunnelAnalysis
    variation: FunnelAnalysis
    z_score: float
    p_value: float
    is_significant: bool
    confidence_level: float
    winner: Literal["baseline", "variation", "inconclusive"]


@dataclass(slots=True)
class StepChange:
    step: str
    conversion_rate_change: float
    user_count_change: int
    trend: Literal["improved", "declined", "stable"]


@dataclass(slots=True)
class PeriodComparison:
    current: FunnelAnalysis
    previous: FunnelAnalysis
    changes: list[StepChange]


@dataclass(slots=True)
class SegmentPerformance:
    segment: str
    conversion_rate: float
    user_count: int


@dataclass(slots=True)
class FunnelInsights:
    overall_conversion_rate: float
    biggest_dropoff_step: str | None
    dropoff_rate: float
    average_time_to_convert_ms: float
    top_performing_segments: list[SegmentPerformance]
    recommendations: list[str]


def _safe_rate(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def _context_value(journey: UserJourney, key: str) -> str:
    if not journey.events:
        return "unknown"
    value = journey.events[0].context.get(key)
    if isinstance(value, Mapping):
        value = value.get("type")
    return str(value) if value not in (None, "") else "unknown"


def segment_key_for(segment_by: str) -> SegmentKey:
    """Built-in key functions: ``platform``, ``source``, ``device`` or any first-event property."""
    if segment_by in ("platform", "source", "device"):
        return lambda journey: _context_value(journey, segment_by)

    def property_key(journey: UserJourney) -> str:
        if not journey.events:
            return "unknown"
        value = journey.events[0].properties.get(segment_by)
        return str(value) if value not in (None, "") else "unknown"

    return property_key


def build_user_journey(user_id: str, events: Iterable[Event], funnel: Funnel) -> UserJourney:
    """Walk ``funnel`` steps in order against the user's events.

    The search for each step resumes after the event matched by the previous
    step. The time window bounds the whole journey measured from the first
    supplied event. Optional steps that cannot be matched are skipped; a
    required step that cannot be matched is the dropoff point.
    """
    ordered = tuple(sorted(events, key=lambda event: (event.timestamp, event.id)))
    journey = UserJourney(user_id=user_id, events=ordered)
    if not ordered:
        journey.dropoff_step_id = funnel.steps[0].id
        return journey

    started_at = ordered[0].timestamp
    deadline = started_at + funnel.time_window
    journey.started_at = started_at
    cursor = 0
    last_match: Event | None = None

    for step in funnel.steps:
        match_index = None
        for index in range(cursor, len(ordered)):
            candidate = ordered[index]
            if candidate.timestamp > deadline:
                break
            if step.matches(candidate):
                match_index = index
                break

        if match_index is None:
            if step.required:
                journey.dropoff_step_id = step.id
                break
            journey.skipped_step_ids.append(step.id)
            continue

        last_match = ordered[match_index]
        journey.completed_step_ids.append(step.id)
        journey.step_completed_at[step.id] = last_match.timestamp
        cursor = match_index + 1

    if journey.dropoff_step_id is None and last_match is not None:
        journey.is_converted = True
        journey.conversion_time_ms = int((last_match.timestamp - started_at).total_seconds() * 1000)
    elif journey.dropoff_step_id is None:
        # Only optional steps and none of them matched.
        journey.dropoff_step_id = funnel.steps[-1].id
    return journey


def calculate_step_analyses(
    funnel: Funnel, journeys: Sequence[UserJourney]
) -> list[FunnelStepAnalysis]:
    analyses: list[FunnelStepAnalysis] = []
    entered = len(journeys)
    for step in funnel.steps:
        passed = [journey for journey in journeys if journey.has_passed(step.id)]
        completion_times = [
            (journey.step_completed_at[step.id] - journey.started_at).total_seconds() * 1000
            for journey in passed
            if step.id in journey.step_completed_at and journey.started_at is not None
        ]
        conversion_rate = _safe_rate(len(passed), entered)
        analyses.append(
            FunnelStepAnalysis(
                step_id=step.id,
                step_name=step.name,
                users_entered=entered,
                users_completed=len(passed),
                conversion_rate=conversion_rate,
                dropoff_rate=1.0 - conversion_rate,
                average_time_to_complete_ms=(
                    sum(completion_times) / len(completion_times) if completion_times else 0.0
                ),
            )
        )
        entered = len(passed)
    return analyses


def _dropoff_reasons(
    dropped: Sequence[UserJourney],
    error_times: Mapping[str, Sequence[datetime]],
) -> list[str]:
    reasons: list[str] = []
    gaps = []
    for journey in dropped:
        reference = journey.last_completed_at or journey.started_at
        last_seen = journey.last_event_at
        if reference is not None and last_seen is not None and last_seen > reference:
            gaps.append((last_seen - reference).total_seconds())
    if gaps and sum(gaps) / len(gaps) > FRICTION_GAP.total_seconds():
        reasons.append(REASON_FRICTION)

    for journey in dropped:
        reference = journey.last_completed_at or journey.started_at
        if reference is None:
            continue
        if any(moment >= reference for moment in error_times.get(journey.user_id, ())):
            reasons.append(REASON_TECHNICAL)
            break

    if not reasons:
        reasons.append(REASON_DEFAULT)
    return reasons


def calculate_dropoff_points(
    funnel: Funnel,
    journeys: Sequence[UserJourney],
    error_times: Mapping[str, Sequence[datetime]] | None = None,
) -> list[DropoffPoint]:
    points: list[DropoffPoint] = []
    for current, following in zip(funnel.steps, funnel.steps[1:]):
        reached = [journey for journey in journeys if journey.has_passed(current.id)]
        dropped = [journey for journey in reached if not journey.has_passed(following.id)]
        if not dropped:
            continue
        points.append(
            DropoffPoint(
                from_step=current.name,
                to_step=following.name,
                dropoff_count=len(dropped),
                dropoff_rate=_safe_rate(len(dropped), len(reached)),
                reasons=_dropoff_reasons(dropped, error_times or {}),
            )
        )
    # sorted() is stable, so equal rates keep funnel order.
    return sorted(points, key=lambda point: -point.dropoff_rate)


def summarize_journeys(
    funnel: Funnel,
    journeys: Sequence[UserJourney],
    date_range: DateRange,
    *,
    include_dropoff_analysis: bool = True,
    error_times: Mapping[str, Sequence[datetime]] | None = None,
) -> FunnelAnalysis:
    converted = [journey for journey in journeys if journey.is_converted]
    conversion_times = [journey.conversion_time_ms or 0 for journey in converted]
    return FunnelAnalysis(
        funnel_id=funnel.id,
        date_range=date_range,
        total_users=len(journeys),
        converted_users=len(converted),
        conversion_rate=_safe_rate(len(converted), len(journeys)),
        steps=calculate_step_analyses(funnel, journeys),
        dropoff_points=(
            calculate_dropoff_points(funnel, journeys, error_times)
            if include_dropoff_analysis
            else []
        ),
        average_conversion_time_ms=(
            sum(conversion_times) / len(conversion_times) if conversion_times else 0.0
        ),
    )


def two_proportion_z_test(
    p1: float, n1: int, p2: float, n2: int
) -> tuple[float, float]:
    """Return ``(z, two_sided_p_value)`` for the difference of two proportions."""
    variance = 0.0
    if n1:
        variance += p1 * (1 - p1) / n1
    if n2:
        variance += p2 * (1 - p2) / n2
    se = math.sqrt(variance)
    if se == 0:
        return 0.0, 1.0
    z = abs(p1 - p2) / se
    return z, math.erfc(z / math.sqrt(2))


class FunnelAnalysisService:
    """Reconstructs user journeys from stored events and derives funnel statistics."""

    def __init__(self, event_store: EventStore, funnel_store: FunnelStore):
        self._events = event_store
        self._funnels = funnel_store

    async def define_funnel(
        self,
        name: str,
        steps: Sequence[FunnelStepConfig],
        time_window: timedelta,
        description: str | None = None,
    ) -> Funnel:
        if not name or not name.strip():
            raise FunnelDefinitionError("Funnel name is required.")
        funnel = Funnel(
            id=f"funnel_{new_identifier()}",
            name=name.strip(),
            description=description,
            steps=tuple(
                FunnelStep(
                    id=f"step_{index}",
                    name=config.name,
                    match_event_name=config.event_name,
                    order=index,
                    match_properties=dict(config.event_properties) if config.event_properties else None,
                    required=config.required,
                )
                for index, config in enumerate(steps, start=1)
            ),
            time_window=time_window,
            created_at=datetime.now(timezone.utc),
        )
        await self._funnels.save(funnel)
        logger.info(
            "Funnel created",
            extra={"funnel_id": funnel.id, "funnel_name": funnel.name, "steps_count": len(funnel.steps)},
        )
        return funnel

    async def get_funnel(self, funnel_id: str) -> Funnel:
        funnel = await self._funnels.get(funnel_id)
        if funnel is None:
            raise FunnelNotFoundError(funnel_id)
        return funnel

    async def list_funnels(self) -> list[Funnel]:
        return await self._funnels.list()

    async def load_journeys(
        self,
        funnel: Funnel,
        date_range: DateRange,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> list[UserJourney]:
        events = await self._events.query(date_range, event_names=funnel.step_event_names)
        grouped: dict[str, list[Event]] = defaultdict(list)
        for event in events:
            if not event.is_filtered:
                grouped[event.user_id].append(event)

        journeys: list[UserJourney] = []
        for position, user_id in enumerate(sorted(grouped), start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise AnalysisCancelledError(
                    f"Funnel analysis for '{funnel.id}' cancelled after {len(journeys)} journeys."
                )
            journeys.append(build_user_journey(user_id, grouped[user_id], funnel))
            if position % _YIELD_EVERY == 0:
                await asyncio.sleep(0)
        return journeys

    async def analyze_funnel(
        self,
        funnel_id: str,
        date_range: DateRange,
        *,
        include_dropoff_analysis: bool = True,
        cancel_event: asyncio.Event | None = None,
    ) -> FunnelAnalysis:
        funnel = await self.get_funnel(funnel_id)
        logger.info(
            "Starting funnel analysis",
            extra={"funnel_id": funnel_id, "steps_count": len(funnel.steps)},
        )
        journeys = await self.load_journeys(funnel, date_range, cancel_event=cancel_event)
        error_times = (
            await self._error_times(journeys, date_range) if include_dropoff_analysis else {}
        )
        analysis = summarize_journeys(
            funnel,
            journeys,
            date_range,
            include_dropoff_analysis=include_dropoff_analysis,
            error_times=error_times,
        )
        logger.info(
            "Funnel analysis completed",
            extra={
                "funnel_id": funnel_id,
                "total_users": analysis.total_users,
                "conversion_rate": round(analysis.conversion_rate, 4),
            },
        )
        return analysis

    async def segment_funnel_analysis(
        self,
        funnel_id: str,
        date_range: DateRange,
        segment_by: str | SegmentKey,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> list[SegmentAnalysis]:
        """Partition journeys by a key function and analyze each partition."""
        funnel = await self.get_funnel(funnel_id)
        key = segment_key_for(segment_by) if isinstance(segment_by, str) else segment_by
        journeys = await self.load_journeys(funnel, date_range, cancel_event=cancel_event)
        error_times = await self._error_times(journeys, date_range)

        partitions: dict[str, list[UserJourney]] = defaultdict(list)
        for journey in journeys:
            partitions[key(journey)].append(journey)

        segments = [
            SegmentAnalysis(
                segment=segment,
                user_count=len(members),
                analysis=summarize_journeys(funnel, members, date_range, error_times=error_times),
            )
            for segment, members in sorted(partitions.items())
        ]
        segments.sort(key=lambda item: -item.analysis.conversion_rate)
        return segments

    async def compare_funnel_variations(
        self,
        baseline_funnel_id: str,
        variation_funnel_id: str,
        date_range: DateRange,
    ) -> FunnelComparison:
        baseline, variation = await asyncio.gather(
            self.analyze_funnel(baseline_funnel_id, date_range),
            self.analyze_funnel(variation_funnel_id, date_range),
        )
        z_score, p_value = two_proportion_z_test(
            baseline.conversion_rate,
            baseline.total_users,
            variation.conversion_rate,
            variation.total_users,
        )
        significant = z_score > SIGNIFICANCE_Z
        winner: Literal["baseline", "variation", "inconclusive"] = "inconclusive"
        if significant:
            winner = (
                "variation"
                if variation.conversion_rate > baseline.conversion_rate
                else "baseline"
            )
        return FunnelComparison(
            baseline=baseline,
            variation=variation,
            z_score=z_score,
            p_value=p_value,
            is_significant=significant,
            confidence_level=1.0 - p_value,
            winner=winner,
        )

    async def compare_periods(
        self,
        funnel_id: str,
        current_period: DateRange,
        previous_period: DateRange,
    ) -> PeriodComparison:
        current, previous = await asyncio.gather(
            self.analyze_funnel(funnel_id, current_period),
            self.analyze_funnel(funnel_id, previous_period),
        )
        changes: list[StepChange] = []
        for now_step, before_step in zip(current.steps, previous.steps):
            delta = now_step.conversion_rate - before_step.conversion_rate
            trend: Literal["improved", "declined", "stable"] = "stable"
            if abs(delta) > PERIOD_CHANGE_THRESHOLD:
                trend = "improved" if delta > 0 else "declined"
            changes.append(
                StepChange(
                    step=now_step.step_name,
                    conversion_rate_change=delta,
                    user_count_change=now_step.users_entered - before_step.users_entered,
                    trend=trend,
                )
            )
        return PeriodComparison(current=current, previous=previous, changes=changes)

    async def get_funnel_insights(
        self,
        funnel_id: str,
        date_range: DateRange,
        *,
        segment_by: str = "platform",
        top_segments: int = 3,
    ) -> FunnelInsights:
        analysis, segments = await asyncio.gather(
            self.analyze_funnel(funnel_id, date_range),
            self.segment_funnel_analysis(funnel_id, date_range, segment_by),
        )
        biggest = max(analysis.steps, key=lambda step: step.dropoff_rate, default=None)
        overall_dropoff = 0.0
        if analysis.steps and analysis.steps[0].users_entered:
            overall_dropoff = 1.0 - analysis.steps[-1].users_completed / analysis.steps[0].users_entered
        return FunnelInsights(
            overall_conversion_rate=analysis.conversion_rate,
            biggest_dropoff_step=biggest.step_name if biggest else None,
            dropoff_rate=overall_dropoff,
            average_time_to_convert_ms=analysis.average_conversion_time_ms,
            top_performing_segments=[
                SegmentPerformance(
                    segment=item.segment,
                    conversion_rate=item.analysis.conversion_rate,
                    user_count=item.user_count,
                )
                for item in segments[:top_segments]
            ],
            recommendations=funnel_recommendations(analysis),
        )

    async def _error_times(
        self, journeys: Sequence[UserJourney], date_range: DateRange
    ) -> dict[str, list[datetime]]:
        dropped_users = [journey.user_id for journey in journeys if not journey.is_converted]
        if not dropped_users:
            return {}
        errors = await self._events.query(
            date_range, user_ids=dropped_users, event_types=[EventType.ERROR_EVENT]
        )
        times: dict[str, list[datetime]] = defaultdict(list)
        for event in errors:
            times[event.user_id].append(event.timestamp)
        return times
