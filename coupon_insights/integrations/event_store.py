from __future__ import annotations

import asyncio
import bisect
import logging
from typing import Any, Awaitable, Iterable, Protocol, Sequence, TypeVar

from pydantic_core import to_jsonable_python
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coupon_insights.core.database import session_scope
from coupon_insights.core.errors import EventStoreTimeoutError
from coupon_insights.models import AnalyticsEvent
from coupon_insights.services.domain import DateRange, Event, EventType
from coupon_insights.utils.periods import ensure_utc


logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventStore(Protocol):
    """Append-only store of immutable events."""

    async def append(self, event: Event) -> None: ...

    async def append_batch(self, events: Sequence[Event]) -> int: ...

    async def query(
        self,
        date_range: DateRange,
        *,
        event_names: Iterable[str] | None = None,
        user_ids: Iterable[str] | None = None,
        event_types: Iterable[EventType] | None = None,
    ) -> list[Event]: ...


async def with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise EventStoreTimeoutError(
            f"Event store {operation} exceeded {timeout:.1f}s timeout."
        ) from exc


def _event_matches(
    event: Event,
    names: set[str] | None,
    users: set[str] | None,
    types: set[EventType] | None,
) -> bool:
    if names is not None and event.event_name not in names:
        return False
    if users is not None and event.user_id not in users:
        return False
    if types is not None and event.event_type not in types:
        return False
    return True


class InMemoryEventStore:
    """Process-local event store used by tests and single-node dry runs."""

    def __init__(self, *, timeout: float = 10.0):
        self._events: list[Event] = []
        self._keys: list[tuple[Any, str]] = []
        self._ids: set[str] = set()
        self._lock = asyncio.Lock()
        self._timeout = timeout

    def __len__(self) -> int:
        return len(self._events)

    async def append(self, event: Event) -> None:
        await self.append_batch([event])

    async def append_batch(self, events: Sequence[Event]) -> int:
        written = 0
        async with self._lock:
            for event in events:
                if event.id in self._ids:
                    continue
                key = (event.timestamp, event.id)
                index = bisect.bisect_right(self._keys, key)
                self._keys.insert(index, key)
                self._events.insert(index, event)
                self._ids.add(event.id)
                written += 1
        return written

    async def query(
        self,
        date_range: DateRange,
        *,
        event_names: Iterable[str] | None = None,
        user_ids: Iterable[str] | None = None,
        event_types: Iterable[EventType] | None = None,
    ) -> list[Event]:
        return await with_timeout(
            self._query(date_range, event_names, user_ids, event_types),
            self._timeout,
            "query",
        )

    async def _query(
        self,
        date_range: DateRange,
        event_names: Iterable[str] | None,
        user_ids: Iterable[str] | None,
        event_types: Iterable[EventType] | None,
    ) -> list[Event]:
        names = set(event_names) if event_names is not None else None
        users = set(user_ids) if user_ids is not None else None
        types = set(event_types) if event_types is not None else None
        async with self._lock:
            return [
                event
                for event in self._events
                if date_range.contains(event.timestamp)
                and _event_matches(event, names, users, types)
            ]


class SqlEventStore:
    """Event store backed by the ``analytics_events`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        timeout: float = 10.0,
    ):
        self._session_factory = session_factory
        self._timeout = timeout

    async def append(self, event: Event) -> None:
        await self.append_batch([event])

    async def append_batch(self, events: Sequence[Event]) -> int:
        if not events:
            return 0
        return await with_timeout(self._append_batch(events), self._timeout, "append")

    async def _append_batch(self, events: Sequence[Event]) -> int:
        unique: dict[str, Event] = {}
        for event in events:
            unique.setdefault(event.id, event)

        async with session_scope(self._session_factory) as session:
            existing = await session.execute(
                select(AnalyticsEvent.id).where(AnalyticsEvent.id.in_(list(unique)))
            )
            already_stored = set(existing.scalars().all())
            fresh = [event for event_id, event in unique.items() if event_id not in already_stored]
            session.add_all(self._to_record(event) for event in fresh)

        if already_stored:
            logger.debug("Skipped %s duplicate events on append.", len(already_stored))
        return len(fresh)

    async def query(
        self,
        date_range: DateRange,
        *,
        event_names: Iterable[str] | None = None,
        user_ids: Iterable[str] | None = None,
        event_types: Iterable[EventType] | None = None,
    ) -> list[Event]:
        return await with_timeout(
            self._query(date_range, event_names, user_ids, event_types),
            self._timeout,
            "query",
        )

    async def _query(
        self,
        date_range: DateRange,
        event_names: Iterable[str] | None,
        user_ids: Iterable[str] | None,
        event_types: Iterable[EventType] | None,
    ) -> list[Event]:
        stmt = select(AnalyticsEvent).where(
            AnalyticsEvent.occurred_at >= date_range.start,
            AnalyticsEvent.occurred_at < date_range.end,
        )
        if event_names is not None:
            stmt = stmt.where(AnalyticsEvent.event_name.in_(list(event_names)))
        if user_ids is not None:
            stmt = stmt.where(AnalyticsEvent.user_id.in_(list(user_ids)))
        if event_types is not None:
            stmt = stmt.where(
                AnalyticsEvent.event_type.in_([EventType(value).value for value in event_types])
            )
        stmt = stmt.order_by(AnalyticsEvent.occurred_at, AnalyticsEvent.id)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [self._from_record(record) for record in result.scalars().all()]

    @staticmethod
    def _to_record(event: Event) -> AnalyticsEvent:
        return AnalyticsEvent(
            id=event.id,
            user_id=event.user_id,
            session_id=event.session_id,
            event_type=event.event_type.value,
            event_name=event.event_name,
            occurred_at=ensure_utc(event.timestamp),
            properties=to_jsonable_python(event.properties),
            context=to_jsonable_python(event.context),
            event_metadata=to_jsonable_python(event.metadata),
        )

    @staticmethod
    def _from_record(record: AnalyticsEvent) -> Event:
        return Event(
            id=record.id,
            user_id=record.user_id,
            session_id=record.session_id,
            event_type=EventType(record.event_type),
            event_name=record.event_name,
            timestamp=ensure_utc(record.occurred_at),
            properties=dict(record.properties or {}),
            context=dict(record.context or {}),
            metadata=dict(record.event_metadata or {}),
        )
