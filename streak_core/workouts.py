"""Turn per-day distances from the workout data provider into interval records."""
from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable, Mapping, Protocol

from .intervals import interval_key


class WorkoutDataProvider(Protocol):
    def daily_distances(
        self,
        user_id: str,
        start: date,
        end: date,
        activities: Iterable[str],
    ) -> Mapping[date, float]:
        """Aggregated distance per UTC day in [start, end) for the given activities."""
        ...


def build_intervals(
    daily: Mapping[date, float],
    bucket: str,
    first_weekday: int = 0,
) -> dict[str, float]:
    """Sum per-day distances into interval buckets (keys sorted)."""
    totals: dict[str, float] = {}
    for day, distance in daily.items():
        if not distance:
            continue
        key = interval_key(day, bucket, first_weekday)
        totals[key] = totals.get(key, 0.0) + float(distance)
    return dict(sorted(totals.items()))


class StaticWorkoutProvider:
    """Provider over a fixed {user_id: {(day, activity): distance}} table."""

    def __init__(self, table: Mapping[str, Mapping[tuple[date, str], float]] | None = None):
        self._table: dict[str, dict[tuple[date, str], float]] = {
            user: dict(rows) for user, rows in (table or {}).items()
        }

    def record(self, user_id: str, day: date, distance: float, activity: str = "run") -> None:
        rows = self._table.setdefault(user_id, {})
        rows[(day, activity)] = rows.get((day, activity), 0.0) + float(distance)

    def daily_distances(self, user_id, start, end, activities):
        allowed = set(activities)
        out: dict[date, float] = {}
        for (day, activity), distance in self._table.get(user_id, {}).items():
            if activity in allowed and start <= day < end:
                out[day] = out.get(day, 0.0) + distance
        return out


def collect_intervals(
    provider: WorkoutDataProvider,
    user_id: str,
    start: date,
    end: date,
    activities: Iterable[str],
    bucket: str,
    first_weekday: int = 0,
) -> dict[str, float]:
    """Fetch [start, end] inclusive of ``end`` and bucket it."""
    daily = provider.daily_distances(user_id, start, end + timedelta(days=1), activities)
    return build_intervals(daily, bucket, first_weekday)
