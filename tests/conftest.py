import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest


def _ensure_project_on_path() -> None:
    root_dir = Path(__file__).resolve().parents[1]
    if str(root_dir) not in sys.path:
        sys.path.insert(0, str(root_dir))


_ensure_project_on_path()

from coupon_insights.core.config import AppSettings  # noqa: E402
from coupon_insights.services.domain import (  # noqa: E402
    Event,
    EventType,
    classify_event_type,
    new_identifier,
)


# A Sunday, so week buckets start exactly here.
BASE_TIME = datetime(2024, 3, 3, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> AppSettings:
    return AppSettings(
        app_env="test",
        collector_batch_size=100,
        collector_flush_interval_seconds=60.0,
        session_timeout_minutes=30.0,
        user_properties_cache_seconds=300.0,
        event_properties_max_bytes=10_000,
    )


@pytest.fixture()
def make_event() -> Callable[..., Event]:
    def factory(
        user_id: str,
        event_name: str,
        timestamp: datetime,
        properties: dict[str, Any] | None = None,
        *,
        context: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        event_type: EventType | None = None,
    ) -> Event:
        props = dict(properties or {})
        return Event(
            id=new_identifier(),
            user_id=user_id,
            session_id=None,
            event_type=event_type or classify_event_type(event_name, props),
            event_name=event_name,
            timestamp=timestamp,
            properties=props,
            context=dict(context or {"platform": "telegram", "source": "bot"}),
            metadata=dict(metadata or {}),
        )

    return factory
