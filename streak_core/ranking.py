"""Leaderboard ordering and final placements.

Single source of truth for ordering across list/detail/trophy views:
- Comparator: comparable score, descending.
- Equal scores keep their input (membership) order unless a TieBreakResolver
  is supplied. No secondary key is built in.
- Eliminated participants drop out of the active board and are listed after
  it with their last known score.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Literal, Protocol, Sequence, TypeVar

from .config import get_settings
from .elimination import EliminationStatus, resolve_elimination
from .scoring import accepted_users, score_competition
from .types import CompetitionState

logger = logging.getLogger(__name__)

T = TypeVar("T")

PlacementPolicy = Literal["sequential", "shared"]


@dataclass(frozen=True)
class StandingRow:
    user_id: str
    username: str | None
    score: float
    rank: int
    is_eliminated: bool = False
    lives_remaining: int | None = None
    reached_target: bool = False
    is_current_user: bool = False


@dataclass(frozen=True)
class TieContext:
    score: float
    rank_start: int
    rank_end: int
    size: int


class TieBreakResolver(Protocol):
    def resolve(self, group: Sequence[Any], context: TieContext) -> Sequence[Any] | None:
        ...


@dataclass(frozen=True)
class Standings:
    active: tuple[StandingRow, ...]
    eliminated: tuple[StandingRow, ...]

    @property
    def full(self) -> tuple[StandingRow, ...]:
        return self.active + self.eliminated

    @property
    def leader(self) -> StandingRow | None:
        return self.active[0] if self.active else None

    def row_for(self, user_id: str) -> StandingRow | None:
        return next((row for row in self.full if row.user_id == user_id), None)


@dataclass(frozen=True)
class Placement:
    user_id: str
    placement: int
    score: float


def _default_score(entry: Any) -> float:
    if isinstance(entry, dict):
        return float(entry.get("score") or 0.0)
    return float(getattr(entry, "score", 0.0) or 0.0)


def _resolve_with_fallback(
    resolver: TieBreakResolver | None,
    group: list[T],
    context: TieContext,
) -> list[T]:
    if resolver is None:
        return group
    try:
        ordered = resolver.resolve(list(group), context)
    except Exception:
        logger.warning(
            f"Tie-break resolver failed for ranks {context.rank_start}-{context.rank_end}; "
            "keeping input order",
            exc_info=True,
        )
        return group
    if ordered is None:
        return group
    ordered = list(ordered)
    # Must be a permutation of the group (by identity), otherwise ignore it.
    if len(ordered) != len(group) or {id(x) for x in ordered} != {id(x) for x in group}:
        logger.warning(
            f"Tie-break resolver returned an invalid order for ranks "
            f"{context.rank_start}-{context.rank_end}; keeping input order"
        )
        return group
    return ordered


def rank(
    entries: Sequence[T],
    *,
    key: Callable[[T], float] = _default_score,
    tie_break_resolver: TieBreakResolver | None = None,
) -> list[T]:
    """Order entries by score descending; ties stay in input order by default."""
    ordered = sorted(entries, key=lambda e: -key(e))  # sorted() is stable
    if tie_break_resolver is None:
        return ordered

    result: list[T] = []
    i = 0
    while i < len(ordered):
        current_score = key(ordered[i])
        j = i + 1
        while j < len(ordered) and key(ordered[j]) == current_score:
            j += 1
        group = ordered[i:j]
        if len(group) > 1:
            group = _resolve_with_fallback(
                tie_break_resolver,
                group,
                TieContext(score=current_score, rank_start=i + 1, rank_end=j, size=len(group)),
            )
        result.extend(group)
        i = j
    return result


def _to_row(
    user: dict,
    score: float,
    position: int,
    status: EliminationStatus | None,
    reached_target: bool,
    current_user_id: str | None,
) -> StandingRow:
    return StandingRow(
        user_id=user.get("user_id", ""),
        username=user.get("username"),
        score=score,
        rank=position,
        is_eliminated=bool(status and status.is_eliminated),
        lives_remaining=status.lives_remaining if status else None,
        reached_target=reached_target,
        is_current_user=current_user_id is not None and user.get("user_id") == current_user_id,
    )


def compute_standings(
    competition: CompetitionState,
    as_of: date | datetime,
    current_user_id: str | None = None,
    *,
    first_weekday: int | None = None,
    tie_break_resolver: TieBreakResolver | None = None,
) -> Standings:
    """
    Compute active and eliminated standings for accepted participants.

    Args:
      competition: competition snapshot.
      as_of: evaluation instant (today's interval is still open).
      current_user_id: viewer, flagged on their row; never read from globals.
      first_weekday: week start for weekly buckets (settings default).
      tie_break_resolver: optional ordering for equal scores.
    """
    if first_weekday is None:
        first_weekday = get_settings().first_weekday
    scores = score_competition(competition, as_of, first_weekday)
    options = competition.get("options") or {}

    active: list[tuple[dict, float, EliminationStatus | None, bool]] = []
    eliminated: list[tuple[dict, float, EliminationStatus | None, bool]] = []
    for user in accepted_users(competition):
        result = scores[user.get("user_id", "")]
        status = resolve_elimination(
            user,
            competition.get("type", ""),
            options,
            competition.get("start_date"),
            as_of,
            first_weekday,
        )
        entry = (user, result.comparable, status, result.reached_target)
        (eliminated if status and status.is_eliminated else active).append(entry)

    def _rows(entries: list, offset: int = 0) -> tuple[StandingRow, ...]:
        ordered = rank(entries, key=lambda e: e[1], tie_break_resolver=tie_break_resolver)
        return tuple(
            _to_row(user, score, offset + idx + 1, status, reached, current_user_id)
            for idx, (user, score, status, reached) in enumerate(ordered)
        )

    active_rows = _rows(active)
    return Standings(active=active_rows, eliminated=_rows(eliminated, len(active_rows)))


def compute_placements(
    rows: Sequence[StandingRow],
    policy: PlacementPolicy | None = None,
) -> tuple[Placement, ...]:
    """1-based placements for final standings (rows already in board order).

    'sequential' numbers every row by position even when scores tie; this is
    what the app has always shown. 'shared' gives tied rows the same number
    (1, 1, 3). Rows only share a placement with an equal-score neighbour in
    the same section (active or eliminated).
    """
    if policy is None:
        policy = get_settings().placement_policy
    placements: list[Placement] = []
    for idx, row in enumerate(rows):
        placement = idx + 1
        if policy == "shared" and idx > 0:
            prev_row = rows[idx - 1]
            if prev_row.score == row.score and prev_row.is_eliminated == row.is_eliminated:
                placement = placements[-1].placement
        placements.append(Placement(user_id=row.user_id, placement=placement, score=row.score))
    return tuple(placements)
