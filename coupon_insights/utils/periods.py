"""Calendar bucketing helpers shared by the cohort and forecasting engines."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Literal


TimeUnit = Literal["day", "week", "month"]
TIME_UNITS: tuple[TimeUnit, ...] = ("day", "week", "month")


def ensure_utc(value: datetime | None) -> datetime:
    """Return ``value`` as an aware UTC datetime (now when ``None``)."""
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def bucket_start(value: datetime, unit: TimeUnit) -> datetime:
    """Start of the calendar day/week/month containing ``value`` (weeks start on Sunday)."""
    moment = ensure_utc(value)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == "day":
        return midnight
    if unit == "week":
        # weekday(): Monday=0 .. Sunday=6
        return midnight - timedelta(days=(midnight.weekday() + 1) % 7)
    if unit == "month":
        return midnight.replace(day=1)
    raise ValueError(f"Unsupported time unit '{unit}'.")


def add_time_units(value: datetime, amount: int, unit: TimeUnit) -> datetime:
    if unit == "day":
        return value + timedelta(days=amount)
    if unit == "week":
        return value + timedelta(weeks=amount)
    if unit == "month":
        month_index = value.month - 1 + amount
        year = value.year + month_index // 12
        month = month_index % 12 + 1
        day = min(value.day, calendar.monthrange(year, month)[1])
        return value.replace(year=year, month=month, day=day)
    raise ValueError(f"Unsupported time unit '{unit}'.")


def period_label(value: datetime, unit: TimeUnit) -> str:
    if unit == "month":
        return value.strftime("%Y-%m")
    return value.date().isoformat()


def cohort_name(value: datetime, unit: TimeUnit) -> str:
    if unit == "week":
        return f"Week of {value.date().isoformat()}"
    if unit == "month":
        return value.strftime("%B %Y")
    return value.date().isoformat()


def iter_periods(start: datetime, end: datetime, unit: TimeUnit) -> list[datetime]:
    """Bucket starts covering ``[start, end)``."""
    periods: list[datetime] = []
    cursor = bucket_start(start, unit)
    end = ensure_utc(end)
    while cursor < end:
        periods.append(cursor)
        cursor = add_time_units(cursor, 1, unit)
    return periods
