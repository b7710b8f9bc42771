from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from coupon_insights.core.errors import (
    AnalysisCancelledError,
    FunnelDefinitionError,
    FunnelNotFoundError,
)
from coupon_insights.integrations.event_store import InMemoryEventStore
from coupon_insights.integrations.funnel_store import InMemoryFunnelStore
from coupon_insights.services.domain import DateRange, Funnel, FunnelStep
from coupon_insights.services.funnels import (
    REASON_DEFAULT,
    REASON_FRICTION,
    REASON_TECHNICAL,
    FunnelAnalysisService,
    FunnelStepConfig,
    build_user_journey,
    two_proportion_z_test,
)


START = datetime(2024, 3, 3, 9, 0, tzinfo=timezone.utc)
WINDOW = DateRange(START - timedelta(days=1), START + timedelta(days=2))

PURCHASE_STEPS = [
    FunnelStepConfig(name="View", event_name="coupon_view"),
    FunnelStepConfig(name="Click", event_name="coupon_click"),
    FunnelStepConfig(name="Purchase", event_name="purchase_completed"),
]


@pytest.fixture()
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture()
def service(event_store: InMemoryEventStore) -> FunnelAnalysisService:
    return FunnelAnalysisService(event_store, InMemoryFunnelStore())


@pytest_asyncio.fixture()
async def seeded_store(event_store: InMemoryEventStore, make_event) -> InMemoryEventStore:
    """100 viewers, 40 of whom click and 10 of whom purchase."""
    events = []
    for index in range(100):
        user_id = f"user-{index:03d}"
        platform = "web" if index < 20 else "telegram"
        seen_at = START + timedelta(seconds=index)
        context = {"platform": platform, "source": "bot"}
        events.append(make_event(user_id, "coupon_view", seen_at, context=context))
        if index < 40:
            events.append(
                make_event(user_id, "coupon_click", seen_at + timedelta(minutes=1), context=context)
            )
        if index < 10:
            events.append(
                make_event(user_id, "purchase_completed", seen_at + timedelta(minutes=2), context=context)
            )
    await event_store.append_batch(events)
    return event_store


@pytest.mark.asyncio
async def test_define_funnel_assigns_ordered_step_ids(service: FunnelAnalysisService) -> None:
    funnel = await service.define_funnel("Coupon purchase", PURCHASE_STEPS, timedelta(days=1))

    assert funnel.id.startswith("funnel_")
    assert [step.id for step in funnel.steps] == ["step_1", "step_2", "step_3"]
    assert [step.order for step in funnel.steps] == [1, 2, 3]
    assert await service.get_funnel(funnel.id) == funnel
    assert await service.list_funnels() == [funnel]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("name", "steps", "window"),
    [
        ("", PURCHASE_STEPS, timedelta(days=1)),
        ("Empty", [], timedelta(days=1)),
        ("No window", PURCHASE_STEPS, timedelta(0)),
    ],
)
async def test_define_funnel_rejects_invalid_definitions(
    service: FunnelAnalysisService, name, steps, window
) -> None:
    with pytest.raises(FunnelDefinitionError):
        await service.define_funnel(name, steps, window)


@pytest.mark.asyncio
async def test_unknown_funnel_raises_not_found(service: FunnelAnalysisService) -> None:
    with pytest.raises(FunnelNotFoundError):
        await service.analyze_funnel("funnel_missing", WINDOW)


@pytest.mark.asyncio
async def test_analyze_funnel_step_rates_and_dropoffs(
    service: FunnelAnalysisService, seeded_store
) -> None:
    funnel = await service.define_funnel("Coupon purchase", PURCHASE_STEPS, timedelta(days=1))

    analysis = await service.analyze_funnel(funnel.id, WINDOW)

    assert analysis.total_users == 100
    assert analysis.converted_users == 10
    assert analysis.conversion_rate == pytest.approx(0.10)
    view, click, purchase = analysis.steps
    assert (view.users_entered, view.users_completed) == (100, 100)
    assert (click.users_entered, click.users_completed) == (100, 40)
    assert click.conversion_rate == pytest.approx(0.40)
    assert (purchase.users_entered, purchase.users_completed) == (40, 10)
    assert purchase.conversion_rate == pytest.approx(0.25)
    assert click.average_time_to_complete_ms == pytest.approx(60_000)
    assert analysis.average_conversion_time_ms == pytest.approx(120_000)

    assert [(point.from_step, point.to_step) for point in analysis.dropoff_points] == [
        ("Click", "Purchase"),
        ("View", "Click"),
    ]
    assert analysis.dropoff_points[0].dropoff_rate == pytest.approx(0.75)
    assert analysis.dropoff_points[0].dropoff_count == 30
    assert analysis.dropoff_points[1].dropoff_rate == pytest.approx(0.60)
    assert analysis.dropoff_points[1].reasons == [REASON_DEFAULT]


@pytest.mark.asyncio
async def test_analysis_is_repeatable_and_dropoffs_optional(
    service: FunnelAnalysisService, seeded_store
) -> None:
    funnel = await service.define_funnel("Coupon purchase", PURCHASE_STEPS, timedelta(days=1))

    first = await service.analyze_funnel(funnel.id, WINDOW)
    second = await service.analyze_funnel(funnel.id, WINDOW)
    without = await service.analyze_funnel(funnel.id, WINDOW, include_dropoff_analysis=False)

    assert first == second
    assert without.dropoff_points == []
    assert without.steps == first.steps


def test_journey_requires_steps_in_order(make_event) -> None:
    funnel_steps = [
        FunnelStepConfig(name="View", event_name="coupon_view"),
        FunnelStepConfig(name="Click", event_name="coupon_click"),
    ]
    funnel = _funnel(funnel_steps, timedelta(days=1))
    events = [
        make_event("user-1", "coupon_click", START),
        make_event("user-1", "coupon_view", START + timedelta(minutes=1)),
    ]

    journey = build_user_journey("user-1", events, funnel)

    assert journey.completed_step_ids == ["step_1"]
    assert journey.dropoff_step_id == "step_2"
    assert not journey.is_converted


def test_journey_respects_time_window(make_event) -> None:
    funnel = _funnel(PURCHASE_STEPS[:2], timedelta(hours=1))
    events = [
        make_event("user-1", "coupon_view", START),
        make_event("user-1", "coupon_click", START + timedelta(hours=2)),
    ]

    journey = build_user_journey("user-1", events, funnel)

    assert journey.completed_step_ids == ["step_1"]
    assert journey.dropoff_step_id == "step_2"


def test_optional_step_is_skipped(make_event) -> None:
    steps = [
        FunnelStepConfig(name="View", event_name="coupon_view"),
        FunnelStepConfig(name="Share", event_name="coupon_share", required=False),
        FunnelStepConfig(name="Click", event_name="coupon_click"),
    ]
    funnel = _funnel(steps, timedelta(days=1))
    events = [
        make_event("user-1", "coupon_view", START),
        make_event("user-1", "coupon_click", START + timedelta(minutes=3)),
    ]

    journey = build_user_journey("user-1", events, funnel)

    assert journey.is_converted
    assert journey.completed_step_ids == ["step_1", "step_3"]
    assert journey.skipped_step_ids == ["step_2"]
    assert journey.conversion_time_ms == 180_000


def test_step_property_filters_must_match(make_event) -> None:
    steps = [
        FunnelStepConfig(name="View", event_name="coupon_view"),
        FunnelStepConfig(name="Click fashion", event_name="coupon_click", event_properties={"category": "fashion"}),
    ]
    funnel = _funnel(steps, timedelta(days=1))
    events = [
        make_event("user-1", "coupon_view", START),
        make_event("user-1", "coupon_click", START + timedelta(minutes=1), {"category": "food"}),
        make_event("user-1", "coupon_click", START + timedelta(minutes=2), {"category": "fashion"}),
    ]

    journey = build_user_journey("user-1", events, funnel)

    assert journey.is_converted
    assert journey.step_completed_at["step_2"] == START + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_filtered_events_are_ignored(
    service: FunnelAnalysisService, event_store: InMemoryEventStore, make_event
) -> None:
    funnel = await service.define_funnel("View only", PURCHASE_STEPS[:1], timedelta(days=1))
    await event_store.append_batch(
        [
            make_event("user-1", "coupon_view", START),
            make_event("bot-1", "coupon_view", START, metadata={"filtered": True}),
        ]
    )

    analysis = await service.analyze_funnel(funnel.id, WINDOW)

    assert analysis.total_users == 1


@pytest.mark.asyncio
async def test_dropoff_reasons_detect_friction_and_errors(
    service: FunnelAnalysisService, event_store: InMemoryEventStore, make_event
) -> None:
    funnel = await service.define_funnel("Click through", PURCHASE_STEPS[:2], timedelta(days=1))
    await event_store.append_batch(
        [
            make_event("user-1", "coupon_view", START),
            make_event("user-1", "coupon_view", START + timedelta(minutes=10)),
            make_event("user-2", "coupon_view", START),
            make_event("user-2", "payment_page_load", START + timedelta(minutes=1), {"error_code": "E500"}),
        ]
    )

    analysis = await service.analyze_funnel(funnel.id, WINDOW)

    (point,) = analysis.dropoff_points
    assert point.dropoff_count == 2
    assert point.reasons == [REASON_FRICTION, REASON_TECHNICAL]


@pytest.mark.asyncio
async def test_segment_analysis_ranks_by_conversion(
    service: FunnelAnalysisService, seeded_store
) -> None:
    funnel = await service.define_funnel("Coupon purchase", PURCHASE_STEPS, timedelta(days=1))

    segments = await service.segment_funnel_analysis(funnel.id, WINDOW, "platform")

    assert [segment.segment for segment in segments] == ["web", "telegram"]
    web, telegram = segments
    assert web.user_count == 20
    assert web.analysis.conversion_rate == pytest.approx(0.5)
    assert telegram.user_count == 80
    assert telegram.analysis.conversion_rate == pytest.approx(0.0)


def test_two_proportion_z_test() -> None:
    z, p = two_proportion_z_test(0.1, 100, 0.4, 100)

    assert z == pytest.approx(0.3 / (0.0033 ** 0.5))
    assert p < 0.001
    assert two_proportion_z_test(0.0, 50, 0.0, 50) == (0.0, 1.0)
    assert two_proportion_z_test(0.5, 0, 0.5, 0) == (0.0, 1.0)


@pytest.mark.asyncio
async def test_compare_funnel_variations_picks_significant_winner(
    service: FunnelAnalysisService, seeded_store
) -> None:
    baseline = await service.define_funnel(
        "View to purchase",
        [PURCHASE_STEPS[0], PURCHASE_STEPS[2]],
        timedelta(days=1),
    )
    variation = await service.define_funnel("View to click", PURCHASE_STEPS[:2], timedelta(days=1))

    comparison = await service.compare_funnel_variations(baseline.id, variation.id, WINDOW)

    assert comparison.baseline.conversion_rate == pytest.approx(0.1)
    assert comparison.variation.conversion_rate == pytest.approx(0.4)
    assert comparison.is_significant
    assert comparison.winner == "variation"
    assert comparison.confidence_level == pytest.approx(1.0 - comparison.p_value)
    assert comparison.confidence_level > 0.99


@pytest.mark.asyncio
async def test_identical_funnels_are_inconclusive(
    service: FunnelAnalysisService, seeded_store
) -> None:
    first = await service.define_funnel("A", PURCHASE_STEPS, timedelta(days=1))
    second = await service.define_funnel("B", PURCHASE_STEPS, timedelta(days=1))

    comparison = await service.compare_funnel_variations(first.id, second.id, WINDOW)

    assert comparison.z_score == 0.0
    assert not comparison.is_significant
    assert comparison.winner == "inconclusive"


@pytest.mark.asyncio
async def test_compare_periods_labels_step_trends(
    service: FunnelAnalysisService, seeded_store
) -> None:
    funnel = await service.define_funnel("Coupon purchase", PURCHASE_STEPS, timedelta(days=1))
    previous = WINDOW.shifted(timedelta(days=-30))

    comparison = await service.compare_periods(funnel.id, WINDOW, previous)

    assert comparison.previous.total_users == 0
    assert [change.trend for change in comparison.changes] == ["improved", "improved", "improved"]
    assert comparison.changes[0].user_count_change == 100
    assert comparison.changes[1].conversion_rate_change == pytest.approx(0.4)

    same = await service.compare_periods(funnel.id, WINDOW, WINDOW)
    assert {change.trend for change in same.changes} == {"stable"}


@pytest.mark.asyncio
async def test_funnel_insights_summarize_analysis(
    service: FunnelAnalysisService, seeded_store
) -> None:
    funnel = await service.define_funnel("Coupon purchase", PURCHASE_STEPS, timedelta(days=1))

    insights = await service.get_funnel_insights(funnel.id, WINDOW)

    assert insights.overall_conversion_rate == pytest.approx(0.1)
    assert insights.biggest_dropoff_step == "Purchase"
    assert insights.dropoff_rate == pytest.approx(0.9)
    assert [segment.segment for segment in insights.top_performing_segments] == ["web", "telegram"]
    assert insights.recommendations[0] == (
        "Focus on improving steps with low conversion rates: Click, Purchase"
    )
    assert '"Click" and "Purchase" (75.0% dropoff)' in insights.recommendations[1]


@pytest.mark.asyncio
async def test_cancelled_analysis_raises(service: FunnelAnalysisService, seeded_store) -> None:
    funnel = await service.define_funnel("Coupon purchase", PURCHASE_STEPS, timedelta(days=1))
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(AnalysisCancelledError):
        await service.analyze_funnel(funnel.id, WINDOW, cancel_event=cancel)


def _funnel(steps, window) -> Funnel:
    return Funnel(
        id="funnel_journey",
        name="Journey",
        steps=tuple(
            FunnelStep(
                id=f"step_{index}",
                name=config.name,
                match_event_name=config.event_name,
                order=index,
                match_properties=config.event_properties,
                required=config.required,
            )
            for index, config in enumerate(steps, start=1)
        ),
        time_window=window,
    )
