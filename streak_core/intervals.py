"""Interval bucketing (day / week / month) pinned to UTC.

Keys are ISO dates of the bucket's first day, so the same workout lands in
the same bucket on every device and on the server.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterator

INTERVAL_BUCKETS = ("day", "week", "month")


def _utc_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"expected date or datetime, got {type(value).__name__}")


def _check_bucket(bucket: str) -> None:
    if bucket not in INTERVAL_BUCKETS:
        raise ValueError(f"bucket must be one of {INTERVAL_BUCKETS}, got {bucket!r}")


def parse_iso_date(value: str | date | datetime | None) -> date | None:
    """Parse 'YYYY-MM-DD' (or a full ISO timestamp) into a UTC date.

    Returns None for None/empty input; raises ValueError on garbage.
    """
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return _utc_date(value)
    stripped = value.strip()
    if not stripped:
        return None
    if len(stripped) == 10:
        return date.fromisoformat(stripped)
    return _utc_date(datetime.fromisoformat(stripped.replace("Z", "+00:00")))


def interval_start(value: date | datetime, bucket: str, first_weekday: int = 0) -> date:
    """First day of the bucket containing ``value``."""
    _check_bucket(bucket)
    day = _utc_date(value)
    if bucket == "day":
        return day
    if bucket == "week":
        return day - timedelta(days=(day.weekday() - first_weekday) % 7)
    return day.replace(day=1)


def interval_key(value: date | datetime, bucket: str, first_weekday: int = 0) -> str:
    """Canonical interval identifier for ``value``.

    Examples (first_weekday=0, Monday):
        - (2026-03-18, "day")   -> "2026-03-18"
        - (2026-03-18, "week")  -> "2026-03-16"
        - (2026-03-18, "month") -> "2026-03-01"
    """
    return interval_start(value, bucket, first_weekday).isoformat()


def next_interval_start(value: date | datetime, bucket: str, first_weekday: int = 0) -> date:
    start = interval_start(value, bucket, first_weekday)
    if bucket == "day":
        return start + timedelta(days=1)
    if bucket == "week":
        return start + timedelta(days=7)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def iter_interval_keys(
    start: date | datetime,
    end: date | datetime,
    bucket: str,
    first_weekday: int = 0,
) -> Iterator[str]:
    """Yield keys of every interval touching the half-open range [start, end)."""
    _check_bucket(bucket)
    end_day = _utc_date(end)
    if _utc_date(start) >= end_day:
        return
    cursor = interval_start(start, bucket, first_weekday)
    while cursor < end_day:
        yield cursor.isoformat()
        cursor = next_interval_start(cursor, bucket, first_weekday)
