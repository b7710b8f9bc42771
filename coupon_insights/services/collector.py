from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence

from pydantic_core import PydanticSerializationError, to_jsonable_python

from coupon_insights.core.config import AppSettings, get_settings
from coupon_insights.core.errors import (
    EnrichmentFailure,
    EventValidationError,
    FlushFailure,
)
from coupon_insights.integrations.event_store import EventStore
from coupon_insights.integrations.session_store import SessionStore
from coupon_insights.integrations.user_properties import UserPropertyStore
from coupon_insights.services.domain import (
    SCHEMA_VERSION,
    Event,
    UserAction,
    UserSession,
    classify_event_type,
    new_identifier,
)
from coupon_insights.services.rules import RuleEngine
from coupon_insights.utils.periods import ensure_utc


logger = logging.getLogger(__name__)


_EVENT_NAME_PATTERN = re.compile(r"[A-Za-z0-9_]+")
_DEFAULT_CONTEXT = {"platform": "telegram", "source": "bot"}

SystemStatus = Literal["success", "failure", "warning"]


@dataclass(slots=True)
class EventInput:
    """One item of a batch submission."""

    user_id: str
    event_name: str
    properties: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] | None = None
    timestamp: datetime | None = None


@dataclass(slots=True)
class BatchItemResult:
    index: int
    ok: bool
    event_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class BatchCollectionResult:
    results: list[BatchItemResult]

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.results if item.ok)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded


class EventCollectorService:
    """Validates, enriches, sessionizes and buffers behavioral events.

    Buffered events are written to the event store in batches, either when the
    buffer reaches ``collector_batch_size`` or on the periodic flush task started
    by :meth:`start`. A failed flush puts the batch back at the head of the
    buffer, so delivery is at-least-once and the store deduplicates by id.
    """

    def __init__(
        self,
        event_store: EventStore,
        session_store: SessionStore,
        *,
        user_properties: UserPropertyStore | None = None,
        rule_engine: RuleEngine | None = None,
        settings: AppSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._settings = settings or get_settings()
        self._event_store = event_store
        self._session_store = session_store
        self._user_properties = user_properties
        self._rules = rule_engine or RuleEngine()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._buffer: list[Event] = []
        self._buffer_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._session_lock = asyncio.Lock()
        self._flush_task: asyncio.Task[None] | None = None
        self._consecutive_flush_failures = 0
        self._owned_sessions: set[str] = set()
        self._property_cache: dict[str, tuple[datetime, dict[str, Any] | None]] = {}

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(minutes=self._settings.session_timeout_minutes)

    async def start(self) -> None:
        """Launch the interval flush task."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())
            logger.info(
                "Event collector started",
                extra={
                    "batch_size": self._settings.collector_batch_size,
                    "flush_interval": self._settings.collector_flush_interval_seconds,
                    "rules_count": len(self._rules.rules),
                },
            )

    async def shutdown(self) -> None:
        """Stop the timer, flush what is buffered and close sessions opened here."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

        await self._flush_safely()
        for session_id in list(self._owned_sessions):
            await self.end_session(session_id)
        logger.info("Event collector shutdown completed.")

    async def collect_event(
        self,
        user_id: str,
        event_name: str,
        properties: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
        *,
        timestamp: datetime | None = None,
    ) -> Event:
        """Validate, enrich and buffer a single event.

        Raises :class:`EventValidationError` without touching the buffer or the
        user's session when the input is malformed.
        """
        payload, event_context = self._validate(
            user_id,
            event_name,
            properties or {},
            {**_DEFAULT_CONTEXT, **dict(context or {})},
        )

        now = ensure_utc(self._clock())
        occurred_at = ensure_utc(timestamp) if timestamp else now

        async with self._session_lock:
            session = await self._resolve_session(user_id, event_context, now)
            events_before = session.event_count
            event = Event(
                id=new_identifier(),
                user_id=user_id,
                session_id=session.id,
                event_type=classify_event_type(event_name, payload),
                event_name=event_name,
                timestamp=occurred_at,
                properties=payload,
                context=event_context,
                metadata={
                    "version": SCHEMA_VERSION,
                    "environment": self._settings.app_env,
                    "server_timestamp": now.isoformat(),
                    "correlation_id": new_identifier(),
                },
            )
            session.record(event)
            await self._session_store.put(session)

        try:
            await self._enrich(event, session, events_before, now)
        except EnrichmentFailure as exc:
            logger.warning("Event enrichment failed", extra={"event_id": event.id, "error": str(exc)})

        self._rules.apply(event)

        async with self._buffer_lock:
            self._buffer.append(event)
            should_flush = len(self._buffer) >= self._settings.collector_batch_size

        if should_flush:
            await self._flush_safely()

        logger.debug(
            "Event collected",
            extra={
                "user_id": user_id,
                "event_name": event_name,
                "event_id": event.id,
                "buffer_size": len(self._buffer),
            },
        )
        return event

    async def collect_user_action(
        self,
        user_id: str,
        action: UserAction | str,
        properties: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> Event:
        action_name = action.value if isinstance(action, UserAction) else action
        return await self.collect_event(
            user_id, action_name, {"action": action_name, **dict(properties or {})}, context
        )

    async def collect_business_event(
        self,
        user_id: str,
        metric: str,
        value: float,
        properties: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> Event:
        extra = dict(properties or {})
        payload = {
            "business_metric": metric,
            "value": value,
            "currency": extra.pop("currency", "INR"),
            **extra,
        }
        return await self.collect_event(user_id, f"business_{metric}", payload, context)

    async def collect_system_event(
        self,
        user_id: str,
        component: str,
        operation: str,
        status: SystemStatus,
        properties: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> Event:
        if status not in ("success", "failure", "warning"):
            raise EventValidationError([f"unsupported system status '{status}'"])
        payload = {
            "system_component": component,
            "operation": operation,
            "status": status,
            **dict(properties or {}),
        }
        return await self.collect_event(
            user_id, f"system_{component}_{operation}", payload, context
        )

    async def collect_performance_event(
        self,
        user_id: str,
        metric: str,
        value: float,
        unit: str,
        properties: Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> Event:
        payload = {
            "performance_metric": metric,
            "value": value,
            "unit": unit,
            **dict(properties or {}),
        }
        return await self.collect_event(user_id, f"performance_{metric}", payload, context)

    async def collect_event_batch(
        self, items: Sequence[EventInput | Mapping[str, Any]]
    ) -> BatchCollectionResult:
        """Collect many events, reporting success or failure per item."""
        results: list[BatchItemResult] = []
        for index, raw in enumerate(items):
            item = raw if isinstance(raw, EventInput) else EventInput(**dict(raw))
            try:
                event = await self.collect_event(
                    item.user_id,
                    item.event_name,
                    item.properties,
                    item.context,
                    timestamp=item.timestamp,
                )
            except EventValidationError as exc:
                results.append(BatchItemResult(index=index, ok=False, error=str(exc)))
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected failure while collecting batch item %s", index)
                results.append(BatchItemResult(index=index, ok=False, error=str(exc)))
            else:
                results.append(BatchItemResult(index=index, ok=True, event_id=event.id))

        outcome = BatchCollectionResult(results=results)
        logger.info(
            "Event batch collected",
            extra={"event_count": len(items), "succeeded": outcome.succeeded, "failed": outcome.failed},
        )
        return outcome

    async def start_session(
        self,
        user_id: str,
        platform: str = "telegram",
        source: str = "bot",
        context: Mapping[str, Any] | None = None,
    ) -> UserSession:
        """Open a new session for ``user_id``, closing any session still open."""
        if not user_id:
            raise EventValidationError(["user_id is required"])
        now = ensure_utc(self._clock())
        session_context = {**_DEFAULT_CONTEXT, **dict(context or {}), "platform": platform, "source": source}

        async with self._session_lock:
            existing = await self._session_store.find_open_for_user(user_id)
            if existing is not None:
                await self._close_session(existing, now)
            session = self._new_session(user_id, session_context, now)
            await self._session_store.put(session)

        await self.collect_user_action(
            user_id,
            UserAction.BOT_START,
            {"session_id": session.id, "platform": platform, "source": source},
            session_context,
        )
        logger.info(
            "Session started",
            extra={"user_id": user_id, "session_id": session.id, "platform": platform, "source": source},
        )
        return await self._session_store.get(session.id) or session

    async def end_session(self, session_id: str) -> UserSession | None:
        """Finalize duration and counters and drop the session from the open set."""
        async with self._session_lock:
            session = await self._session_store.get(session_id)
            if session is None or not session.is_open:
                self._owned_sessions.discard(session_id)
                logger.warning("Session not found among open sessions", extra={"session_id": session_id})
                return None
            closed = await self._close_session(session, ensure_utc(self._clock()))

        logger.info(
            "Session ended",
            extra={
                "session_id": session_id,
                "user_id": closed.user_id,
                "duration_seconds": round((closed.duration_ms or 0) / 1000),
                **closed.snapshot(),
            },
        )
        return closed

    async def flush(self) -> int:
        """Write the whole buffer as one batch; raises :class:`FlushFailure` after requeueing."""
        async with self._flush_lock:
            async with self._buffer_lock:
                batch, self._buffer = self._buffer, []
            if not batch:
                return 0
            try:
                await self._event_store.append_batch(batch)
            except Exception as exc:
                async with self._buffer_lock:
                    self._buffer[:0] = batch
                self._consecutive_flush_failures += 1
                level = (
                    logging.CRITICAL
                    if self._consecutive_flush_failures > self._settings.collector_max_flush_retries
                    else logging.ERROR
                )
                logger.log(
                    level,
                    "Failed to flush events; batch requeued",
                    extra={
                        "event_count": len(batch),
                        "attempt": self._consecutive_flush_failures,
                        "error": str(exc),
                    },
                )
                raise FlushFailure(len(batch), exc) from exc

            self._consecutive_flush_failures = 0
            logger.debug("Events flushed to event store", extra={"event_count": len(batch)})
            return len(batch)

    async def _flush_safely(self) -> int:
        try:
            return await self.flush()
        except FlushFailure:
            return 0

    async def _flush_loop(self) -> None:
        interval = self._settings.collector_flush_interval_seconds
        while True:
            await asyncio.sleep(interval)
            await self._flush_safely()
            try:
                await self.expire_idle_sessions()
            except Exception:
                logger.exception("Idle session sweep failed")
            self.prune_property_cache()

    async def expire_idle_sessions(self) -> int:
        """Close every open session idle past the timeout, ending it at its last activity."""
        now = ensure_utc(self._clock())
        expired = 0
        async with self._session_lock:
            for session in await self._session_store.list_open():
                if session.is_idle(now, self.session_timeout):
                    await self._close_session(session, session.last_activity_at)
                    expired += 1
        if expired:
            logger.info("Expired idle sessions", extra={"session_count": expired})
        return expired

    def _validate(
        self,
        user_id: str,
        event_name: str,
        properties: Mapping[str, Any],
        context: Mapping[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Check the input and return properties and context as plain JSON values.

        Datetimes, sets, decimals and the like are converted here so that every
        buffered event can be written by any event store.
        """
        problems: list[str] = []
        if not user_id or not str(user_id).strip():
            problems.append("user_id is required")
        if not event_name:
            problems.append("event_name is required")
        elif not _EVENT_NAME_PATTERN.fullmatch(event_name):
            problems.append("event_name contains invalid characters")

        payload: dict[str, Any] = {}
        try:
            payload = to_jsonable_python(dict(properties))
            size = len(json.dumps(payload).encode("utf-8"))
        except (PydanticSerializationError, TypeError, ValueError):
            problems.append("properties must be JSON serializable")
        else:
            if size > self._settings.event_properties_max_bytes:
                problems.append("properties payload too large")

        event_context: dict[str, Any] = {}
        try:
            event_context = to_jsonable_python(dict(context))
        except (PydanticSerializationError, TypeError, ValueError):
            problems.append("context must be JSON serializable")

        if problems:
            raise EventValidationError(problems)
        return payload, event_context

    async def _resolve_session(
        self, user_id: str, context: dict[str, Any], now: datetime
    ) -> UserSession:
        session = await self._session_store.find_open_for_user(user_id)
        if session is not None and session.is_idle(now, self.session_timeout):
            await self._close_session(session, session.last_activity_at)
            session = None
        if session is None:
            session = self._new_session(user_id, context, now)
        return session

    def _new_session(self, user_id: str, context: dict[str, Any], now: datetime) -> UserSession:
        session = UserSession(
            id=new_identifier(),
            user_id=user_id,
            started_at=now,
            last_activity_at=now,
            platform=str(context.get("platform", "telegram")),
            source=str(context.get("source", "bot")),
            context=dict(context),
        )
        self._owned_sessions.add(session.id)
        return session

    async def _close_session(self, session: UserSession, ended_at: datetime) -> UserSession:
        closed = session.close(ended_at)
        await self._session_store.put(closed)
        self._owned_sessions.discard(session.id)
        return closed

    async def _enrich(
        self, event: Event, session: UserSession, events_before: int, now: datetime
    ) -> None:
        event.properties["session_properties"] = {
            "session_duration_ms": int((now - session.started_at).total_seconds() * 1000),
            "events_in_session": events_before,
        }
        if self._user_properties is None:
            return
        try:
            user_properties = await self._cached_user_properties(event.user_id)
        except Exception as exc:
            raise EnrichmentFailure(f"user properties unavailable: {exc}") from exc
        if user_properties:
            event.properties["user_properties"] = user_properties

    async def _cached_user_properties(self, user_id: str) -> dict[str, Any] | None:
        ttl = self._settings.user_properties_cache_seconds
        now = ensure_utc(self._clock())
        cached = self._property_cache.get(user_id)
        if cached is not None and cached[0] > now:
            return cached[1]
        assert self._user_properties is not None
        properties = await self._user_properties.get_user_properties(user_id)
        if ttl > 0:
            self._property_cache[user_id] = (now + timedelta(seconds=ttl), properties)
        return properties

    def prune_property_cache(self) -> int:
        """Drop cached user properties whose TTL has passed."""
        now = ensure_utc(self._clock())
        expired = [user_id for user_id, (expires_at, _) in self._property_cache.items() if expires_at <= now]
        for user_id in expired:
            del self._property_cache[user_id]
        return len(expired)

    def open_session_ids(self) -> Iterable[str]:
        return tuple(self._owned_sessions)
