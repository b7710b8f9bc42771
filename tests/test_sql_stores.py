from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from coupon_insights.core.database import session_scope
from coupon_insights.integrations.event_store import SqlEventStore
from coupon_insights.integrations.funnel_store import SqlFunnelStore
from coupon_insights.integrations.session_store import InMemorySessionStore, SqlSessionStore
from coupon_insights.integrations.user_properties import SqlUserPropertyStore
from coupon_insights.models import Base, UserProfile
from coupon_insights.services.collector import EventCollectorService
from coupon_insights.services.domain import (
    DateRange,
    EventType,
    Funnel,
    FunnelStep,
    UserSession,
)


START = datetime(2024, 3, 3, 9, 0, tzinfo=timezone.utc)
WINDOW = DateRange(START - timedelta(hours=1), START + timedelta(days=1))


@pytest_asyncio.fixture()
async def session_factory() -> async_sessionmaker[AsyncSession]:
    # One shared connection so every store session sees the same in-memory database.
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


@pytest.mark.asyncio
async def test_event_store_deduplicates_and_orders(session_factory, make_event) -> None:
    store = SqlEventStore(session_factory)
    later = make_event("user-1", "coupon_click", START + timedelta(minutes=5), {"coupon_id": "c-1"})
    earlier = make_event(
        "user-1",
        "coupon_view",
        START,
        {"coupon_id": "c-1", "seen_at": START},
        context={"platform": "web", "source": "ad"},
    )

    assert await store.append_batch([later, earlier, later]) == 2
    assert await store.append_batch([earlier]) == 0

    events = await store.query(WINDOW)

    assert [event.id for event in events] == [earlier.id, later.id]
    assert events[0].timestamp == START
    assert events[0].timestamp.tzinfo is not None
    assert events[0].context == {"platform": "web", "source": "ad"}
    assert datetime.fromisoformat(events[0].properties["seen_at"]) == START
    assert events[0].event_type is EventType.USER_ACTION


@pytest.mark.asyncio
async def test_event_store_filters(session_factory, make_event) -> None:
    store = SqlEventStore(session_factory)
    await store.append_batch(
        [
            make_event("user-1", "coupon_view", START),
            make_event("user-2", "coupon_view", START + timedelta(minutes=1)),
            make_event("user-2", "checkout", START + timedelta(minutes=2), {"error": "card declined"}),
            make_event("user-3", "coupon_view", START + timedelta(days=2)),
        ]
    )

    by_name = await store.query(WINDOW, event_names=["coupon_view"])
    by_user = await store.query(WINDOW, user_ids=["user-2"])
    errors = await store.query(WINDOW, event_types=[EventType.ERROR_EVENT])

    assert [event.user_id for event in by_name] == ["user-1", "user-2"]
    assert [event.event_name for event in by_user] == ["coupon_view", "checkout"]
    assert [event.event_name for event in errors] == ["checkout"]


@pytest.mark.asyncio
async def test_session_store_tracks_open_and_closed_sessions(session_factory) -> None:
    store = SqlSessionStore(session_factory)
    session = UserSession(
        id="sess-1",
        user_id="user-1",
        started_at=START,
        last_activity_at=START + timedelta(minutes=3),
        platform="web",
        event_count=2,
        event_names={"coupon_view", "coupon_click"},
        conversion_event_count=1,
    )
    await store.put(session)

    found = await store.find_open_for_user("user-1")
    assert found is not None
    assert found.event_names == {"coupon_view", "coupon_click"}
    assert found.last_activity_at == START + timedelta(minutes=3)
    assert [item.id for item in await store.list_open()] == ["sess-1"]

    await store.put(session.close(START + timedelta(minutes=3)))

    assert await store.find_open_for_user("user-1") is None
    closed = await store.get("sess-1")
    assert closed is not None
    assert closed.duration_ms == 180_000

    await store.delete("sess-1")
    assert await store.get("sess-1") is None


@pytest.mark.asyncio
async def test_funnel_store_round_trips_definitions(session_factory) -> None:
    store = SqlFunnelStore(session_factory)
    funnel = Funnel(
        id="funnel_checkout",
        name="Checkout",
        steps=(
            FunnelStep(id="step_1", name="View", match_event_name="coupon_view", order=1),
            FunnelStep(
                id="step_2",
                name="Fashion click",
                match_event_name="coupon_click",
                order=2,
                match_properties={"category": "fashion"},
                required=False,
            ),
        ),
        time_window=timedelta(hours=6),
        created_at=START,
    )

    await store.save(funnel)
    await store.save(funnel)

    loaded = await store.get("funnel_checkout")
    assert loaded == funnel
    assert [item.id for item in await store.list()] == ["funnel_checkout"]
    assert await store.get("funnel_missing") is None


@pytest.mark.asyncio
async def test_user_property_store_reads_profiles(session_factory) -> None:
    async with session_scope(session_factory) as db:
        db.add(UserProfile(user_id="user-1", properties={"tier": "gold", "city": "Pune"}))

    store = SqlUserPropertyStore(session_factory)

    assert await store.get_user_properties("user-1") == {"tier": "gold", "city": "Pune"}
    assert await store.get_user_properties("user-2") is None


@pytest.mark.asyncio
async def test_collected_events_with_rich_values_flush_to_sql(session_factory, settings) -> None:
    store = SqlEventStore(session_factory)
    collector = EventCollectorService(
        store,
        InMemorySessionStore(),
        settings=settings,
        clock=lambda: START,
    )

    tagged = await collector.collect_event(
        "user-1",
        "coupon_view",
        {
            "tags": {"fashion", "sale"},
            "offer": {"expires_at": START + timedelta(days=2), "discount": Decimal("12.50")},
        },
    )
    await collector.collect_event("user-1", "coupon_click", {"coupon_id": "c-1"})

    assert await collector.flush() == 2
    assert collector.buffered_count == 0

    stored = {event.id: event for event in await store.query(WINDOW)}
    properties = stored[tagged.id].properties
    assert sorted(properties["tags"]) == ["fashion", "sale"]
    assert datetime.fromisoformat(properties["offer"]["expires_at"]) == START + timedelta(days=2)
    assert float(properties["offer"]["discount"]) == 12.5
