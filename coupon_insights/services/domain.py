from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping
from uuid import uuid4

from coupon_insights.core.errors import FunnelDefinitionError
from coupon_insights.utils.periods import ensure_utc


SCHEMA_VERSION = "1.0"


class EventType(str, Enum):
    """Coarse classification derived from the event naming convention."""

    USER_ACTION = "user_action"
    BUSINESS_EVENT = "business_event"
    SYSTEM_EVENT = "system_event"
    PERFORMANCE_EVENT = "performance_event"
    ERROR_EVENT = "error_event"


class UserAction(str, Enum):
    """Canonical user action names emitted by the bot and web surfaces."""

    BOT_START = "bot_start"
    BOT_COMMAND = "bot_command"
    BUTTON_CLICK = "button_click"
    COUPON_VIEW = "coupon_view"
    COUPON_CLICK = "coupon_click"
    COUPON_COPY = "coupon_copy"
    COUPON_SHARE = "coupon_share"
    PURCHASE_INITIATED = "purchase_initiated"
    PURCHASE_COMPLETED = "purchase_completed"
    PURCHASE_CANCELLED = "purchase_cancelled"
    CASHBACK_EARNED = "cashback_earned"
    CASHBACK_WITHDRAWN = "cashback_withdrawn"
    SEARCH_PERFORMED = "search_performed"


CONVERSION_EVENT_NAMES = frozenset(
    {
        UserAction.COUPON_CLICK.value,
        UserAction.PURCHASE_COMPLETED.value,
        UserAction.CASHBACK_EARNED.value,
    }
)

_ERROR_PROPERTY_KEYS = ("error", "error_code", "errorCode")


def classify_event_type(event_name: str, properties: Mapping[str, Any] | None = None) -> EventType:
    if event_name.startswith("business_"):
        return EventType.BUSINESS_EVENT
    if event_name.startswith("system_"):
        return EventType.SYSTEM_EVENT
    if event_name.startswith("performance_"):
        return EventType.PERFORMANCE_EVENT
    if properties and any(properties.get(key) for key in _ERROR_PROPERTY_KEYS):
        return EventType.ERROR_EVENT
    return EventType.USER_ACTION


def new_identifier() -> str:
    return uuid4().hex


@dataclass(slots=True)
class Event:
    """A timestamped fact about user or system behavior.

    Events are mutable only while the collector is processing them (enrichment
    and rule actions); once flushed to the event store they are never changed.
    """

    id: str
    user_id: str
    session_id: str | None
    event_type: EventType
    event_name: str
    timestamp: datetime
    properties: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_filtered(self) -> bool:
        return bool(self.metadata.get("filtered"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "event_type": self.event_type.value,
            "event_name": self.event_name,
            "timestamp": self.timestamp,
            "properties": self.properties,
            "context": self.context,
            "metadata": self.metadata,
        }


@dataclass(frozen=True, slots=True)
class DateRange:
    """Half-open ``[start, end)`` analysis window in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        start = ensure_utc(self.start)
        end = ensure_utc(self.end)
        if end <= start:
            raise ValueError("Date range end must be after its start.")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) < self.end

    def shifted(self, delta: timedelta) -> "DateRange":
        return DateRange(self.start + delta, self.end + delta)


@dataclass(slots=True)
class UserSession:
    """A bounded visit of one user; at most one is open per user."""

    id: str
    user_id: str
    started_at: datetime
    last_activity_at: datetime
    platform: str = "telegram"
    source: str = "bot"
    ended_at: datetime | None = None
    duration_ms: int | None = None
    event_count: int = 0
    event_names: set[str] = field(default_factory=set)
    conversion_event_count: int = 0
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def unique_actions(self) -> int:
        return len(self.event_names)

    def is_idle(self, now: datetime, timeout: timedelta) -> bool:
        return now - self.last_activity_at > timeout

    def record(self, event: Event) -> None:
        self.event_count += 1
        self.event_names.add(event.event_name)
        if event.event_name in CONVERSION_EVENT_NAMES:
            self.conversion_event_count += 1
        if event.timestamp > self.last_activity_at:
            self.last_activity_at = event.timestamp

    def close(self, ended_at: datetime) -> "UserSession":
        ended_at = max(ensure_utc(ended_at), self.started_at)
        duration = ended_at - self.started_at
        return replace(
            self,
            ended_at=ended_at,
            duration_ms=int(duration.total_seconds() * 1000),
            event_names=set(self.event_names),
            context=dict(self.context),
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "events_count": self.event_count,
            "unique_actions": self.unique_actions,
            "conversion_events": self.conversion_event_count,
        }


@dataclass(frozen=True, slots=True)
class FunnelStep:
    id: str
    name: str
    match_event_name: str
    order: int
    match_properties: Mapping[str, Any] | None = None
    required: bool = True

    def matches(self, event: Event) -> bool:
        if event.event_name != self.match_event_name:
            return False
        if not self.match_properties:
            return True
        return all(
            event.properties.get(key) == expected
            for key, expected in self.match_properties.items()
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "match_event_name": self.match_event_name,
            "order": self.order,
            "match_properties": dict(self.match_properties) if self.match_properties else None,
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FunnelStep":
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            match_event_name=str(payload["match_event_name"]),
            order=int(payload["order"]),
            match_properties=payload.get("match_properties") or None,
            required=bool(payload.get("required", True)),
        )


@dataclass(frozen=True, slots=True)
class Funnel:
    """Ordered sequence of steps describing an intended user path."""

    id: str
    name: str
    steps: tuple[FunnelStep, ...]
    time_window: timedelta
    description: str | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.steps:
            raise FunnelDefinitionError("A funnel needs at least one step.")
        orders = [step.order for step in self.steps]
        if len(set(orders)) != len(orders):
            raise FunnelDefinitionError("Funnel steps must have distinct order values.")
        if self.time_window <= timedelta(0):
            raise FunnelDefinitionError("Funnel time window must be positive.")
        object.__setattr__(
            self, "steps", tuple(sorted(self.steps, key=lambda step: step.order))
        )

    @property
    def step_event_names(self) -> list[str]:
        return sorted({step.match_event_name for step in self.steps})

    def step(self, step_id: str) -> FunnelStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)
