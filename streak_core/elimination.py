"""Lives and elimination for life-based variants (Streaks).

Two paths feed the same result type:
- server: ``remaining_lives`` reported by the backend, authoritative when present
- derived: local recount of missed, already-closed intervals (fallback until
  the server settles the interval)
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal, Mapping

from .intervals import interval_start, iter_interval_keys, parse_iso_date
from .types import CompetitionOptions, CompetitionUser

LIFE_BASED_TYPES = frozenset({"streaks"})

EliminationSource = Literal["server", "derived"]


@dataclass(frozen=True)
class EliminationStatus:
    lives_budget: int
    lives_remaining: int
    is_eliminated: bool
    missed_intervals: tuple[str, ...]
    source: EliminationSource


def uses_lives(competition_type: str, options: CompetitionOptions) -> bool:
    return competition_type in LIFE_BASED_TYPES and int(options.get("first_to") or 0) > 0


def missed_intervals(
    intervals: Mapping[str, float] | None,
    goal: float,
    start_date: date | str | None,
    as_of: date | datetime,
    bucket: str,
    first_weekday: int = 0,
) -> list[str]:
    """Closed interval keys (oldest first) whose distance fell short of ``goal``.

    The interval containing ``as_of`` is still open and is never judged.
    """
    start = parse_iso_date(start_date)
    if start is None:
        return []
    recorded = intervals or {}
    current = interval_start(as_of, bucket, first_weekday)
    return [
        key
        for key in iter_interval_keys(start, current, bucket, first_weekday)
        if float(recorded.get(key) or 0.0) < goal
    ]


def derive_elimination(
    intervals: Mapping[str, float] | None,
    goal: float,
    lives_budget: int,
    start_date: date | str | None,
    as_of: date | datetime,
    bucket: str,
    first_weekday: int = 0,
) -> EliminationStatus:
    missed = missed_intervals(intervals, goal, start_date, as_of, bucket, first_weekday)
    remaining = min(lives_budget, max(0, lives_budget - len(missed)))
    return EliminationStatus(
        lives_budget=lives_budget,
        lives_remaining=remaining,
        is_eliminated=remaining <= 0,
        missed_intervals=tuple(missed),
        source="derived",
    )


def resolve_elimination(
    user: CompetitionUser,
    competition_type: str,
    options: CompetitionOptions,
    start_date: date | str | None,
    as_of: date | datetime,
    first_weekday: int = 0,
) -> EliminationStatus | None:
    """Elimination state for one participant, or None when the variant has no lives."""
    if not uses_lives(competition_type, options):
        return None
    budget = int(options.get("first_to") or 0)
    derived = derive_elimination(
        user.get("intervals"),
        float(options.get("goal") or 0.0),
        budget,
        start_date,
        as_of,
        options.get("interval") or "day",
        first_weekday,
    )
    server_lives = user.get("remaining_lives")
    if server_lives is None:
        return derived
    remaining = min(budget, max(0, int(server_lives)))
    return EliminationStatus(
        lives_budget=budget,
        lives_remaining=remaining,
        is_eliminated=remaining <= 0,
        missed_intervals=derived.missed_intervals,
        source="server",
    )
