"""Per-variant scoring (Streaks, Clash, Apex, Targets, Race).

Each variant is a strategy selected once by ``strategy_for(type)``; callers
downstream only see ``ScoreResult`` and never branch on the type again.

Every strategy is a pure projection over the interval records already on the
participant. A missing interval key means "no workout" and counts as 0.0.

Intervals:
- closed: strictly before the interval containing ``as_of``; final
- open: the interval containing ``as_of``; still accumulating distance
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Mapping, Protocol, Sequence

from .config import get_settings
from .elimination import resolve_elimination
from .intervals import interval_key, iter_interval_keys, parse_iso_date
from .types import CompetitionOptions, CompetitionState, CompetitionUser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntervalOutcome:
    key: str
    distance: float
    # None where the variant has no per-interval goal (Apex, Race)
    met_goal: bool | None
    points: int = 0
    closed: bool = True


@dataclass(frozen=True)
class ScoreResult:
    user_id: str
    score: float
    outcomes: tuple[IntervalOutcome, ...]
    # Race: cumulative goal reached. Clash: first_to points reached.
    reached_target: bool = False
    server_score: float | None = None

    @property
    def comparable(self) -> float:
        """Authoritative server score if present, else the local projection."""
        return self.server_score if self.server_score is not None else self.score


@dataclass(frozen=True)
class ScoringContext:
    start_date: date | None
    end_date: date | None
    first_weekday: int
    rivals: tuple[CompetitionUser, ...] = ()


class ScoringStrategy(Protocol):
    def score(
        self,
        user: CompetitionUser,
        options: CompetitionOptions,
        as_of: date | datetime,
        context: ScoringContext,
    ) -> ScoreResult:
        ...


def _distance(intervals: Mapping[str, float] | None, key: str) -> float:
    if not intervals:
        return 0.0
    value = intervals.get(key)
    return float(value) if value is not None else 0.0


def _as_day(value: date | datetime) -> date:
    return parse_iso_date(value)  # type: ignore[return-value]


def window_keys(
    user: CompetitionUser,
    options: CompetitionOptions,
    as_of: date | datetime,
    context: ScoringContext,
) -> list[str]:
    """Interval keys in play from the competition start up to and including ``as_of``."""
    bucket = options.get("interval") or "day"
    current = interval_key(as_of, bucket, context.first_weekday)
    if context.start_date is None:
        # No schedule known: fall back to whatever the server recorded so far
        return sorted(k for k in (user.get("intervals") or {}) if k <= current)
    upper = _as_day(as_of) + timedelta(days=1)
    if context.end_date is not None and context.end_date < upper:
        upper = context.end_date
    return list(iter_interval_keys(context.start_date, upper, bucket, context.first_weekday))


class StreaksScoring:
    """Consecutive goal-met intervals; stops counting at elimination."""

    def score(self, user, options, as_of, context):
        bucket = options.get("interval") or "day"
        current = interval_key(as_of, bucket, context.first_weekday)
        goal = float(options.get("goal") or 0.0)
        lives = int(options.get("first_to") or 0)
        intervals = user.get("intervals")

        run = 0
        misses = 0
        outcomes: list[IntervalOutcome] = []
        for key in window_keys(user, options, as_of, context):
            distance = _distance(intervals, key)
            met = distance >= goal
            closed = key < current
            outcomes.append(IntervalOutcome(key=key, distance=distance, met_goal=met, closed=closed))
            if not closed:
                # Today only extends the run once already met; it never breaks it.
                if met:
                    run += 1
                continue
            if met:
                run += 1
            else:
                run = 0
                misses += 1
                if lives > 0 and misses >= lives:
                    break
        return ScoreResult(
            user_id=user.get("user_id", ""),
            score=float(run),
            outcomes=tuple(outcomes),
            server_score=user.get("score"),
        )


class ClashScoring:
    """One point per closed interval to the strict leader; ties award nothing."""

    def score(self, user, options, as_of, context):
        bucket = options.get("interval") or "day"
        current = interval_key(as_of, bucket, context.first_weekday)
        user_id = user.get("user_id", "")
        rivals = [r for r in context.rivals if r.get("user_id") != user_id]

        points = 0
        outcomes: list[IntervalOutcome] = []
        for key in window_keys(user, options, as_of, context):
            distance = _distance(user.get("intervals"), key)
            closed = key < current
            won = (
                closed
                and distance > 0
                and all(distance > _distance(r.get("intervals"), key) for r in rivals)
            )
            points += 1 if won else 0
            outcomes.append(
                IntervalOutcome(
                    key=key, distance=distance, met_goal=None, points=1 if won else 0, closed=closed
                )
            )
        first_to = int(options.get("first_to") or 0)
        return ScoreResult(
            user_id=user_id,
            score=float(points),
            outcomes=tuple(outcomes),
            reached_target=first_to > 0 and points >= first_to,
            server_score=user.get("score"),
        )


class ApexScoring:
    """Total distance over the competition window."""

    def score(self, user, options, as_of, context):
        bucket = options.get("interval") or "day"
        current = interval_key(as_of, bucket, context.first_weekday)
        outcomes = tuple(
            IntervalOutcome(
                key=key,
                distance=_distance(user.get("intervals"), key),
                met_goal=None,
                closed=key < current,
            )
            for key in window_keys(user, options, as_of, context)
        )
        return ScoreResult(
            user_id=user.get("user_id", ""),
            score=sum(o.distance for o in outcomes),
            outcomes=outcomes,
            server_score=user.get("score"),
        )


class TargetsScoring:
    """One point per interval where the goal was met; nobody is eliminated."""

    def score(self, user, options, as_of, context):
        bucket = options.get("interval") or "day"
        current = interval_key(as_of, bucket, context.first_weekday)
        goal = float(options.get("goal") or 0.0)
        outcomes = []
        for key in window_keys(user, options, as_of, context):
            distance = _distance(user.get("intervals"), key)
            met = distance >= goal
            outcomes.append(
                IntervalOutcome(
                    key=key, distance=distance, met_goal=met, points=1 if met else 0, closed=key < current
                )
            )
        return ScoreResult(
            user_id=user.get("user_id", ""),
            score=float(sum(o.points for o in outcomes)),
            outcomes=tuple(outcomes),
            server_score=user.get("score"),
        )


class RaceScoring:
    """Cumulative distance; reaching the goal (inclusive) wins outright."""

    def score(self, user, options, as_of, context):
        result = ApexScoring().score(user, options, as_of, context)
        goal = float(options.get("goal") or 0.0)
        return ScoreResult(
            user_id=result.user_id,
            score=result.score,
            outcomes=result.outcomes,
            reached_target=goal > 0 and result.score >= goal,
            server_score=result.server_score,
        )


STRATEGIES: dict[str, ScoringStrategy] = {
    "streaks": StreaksScoring(),
    "clash": ClashScoring(),
    "apex": ApexScoring(),
    "targets": TargetsScoring(),
    "race": RaceScoring(),
}


def strategy_for(competition_type: str) -> ScoringStrategy:
    try:
        return STRATEGIES[competition_type]
    except KeyError:
        raise ValueError(f"unknown competition type {competition_type!r}") from None


def accepted_users(competition: CompetitionState) -> list[CompetitionUser]:
    return [u for u in competition.get("users") or [] if u.get("invite_status") == "accepted"]


def build_context(
    competition: CompetitionState,
    first_weekday: int | None = None,
    rivals: Sequence[CompetitionUser] | None = None,
) -> ScoringContext:
    if first_weekday is None:
        first_weekday = get_settings().first_weekday
    return ScoringContext(
        start_date=parse_iso_date(competition.get("start_date")),
        end_date=parse_iso_date(competition.get("end_date")),
        first_weekday=first_weekday,
        rivals=tuple(rivals if rivals is not None else accepted_users(competition)),
    )


def score_competition(
    competition: CompetitionState,
    as_of: date | datetime,
    first_weekday: int | None = None,
) -> dict[str, ScoreResult]:
    """Score every accepted participant, keyed by user id in membership order."""
    strategy = strategy_for(competition.get("type", ""))
    users = accepted_users(competition)
    context = build_context(competition, first_weekday, users)
    options = competition.get("options") or {}
    return {
        u.get("user_id", ""): strategy.score(u, options, as_of, context) for u in users
    }


def end_condition_met(
    competition: CompetitionState,
    as_of: date | datetime,
    first_weekday: int | None = None,
) -> str | None:
    """Reason the competition should finish at ``as_of``, or None to keep running.

    Reasons: 'duration_elapsed', 'goal_reached' (Race), 'points_reached' (Clash),
    'last_survivor' (Streaks with lives).
    """
    end_date = parse_iso_date(competition.get("end_date"))
    if end_date is not None and _as_day(as_of) >= end_date:
        return "duration_elapsed"

    ctype = competition.get("type", "")
    if ctype in ("race", "clash"):
        scores = score_competition(competition, as_of, first_weekday)
        if any(result.reached_target for result in scores.values()):
            return "goal_reached" if ctype == "race" else "points_reached"
        return None

    if ctype == "streaks":
        if first_weekday is None:
            first_weekday = get_settings().first_weekday
        users = accepted_users(competition)
        statuses = [
            resolve_elimination(
                u,
                ctype,
                competition.get("options") or {},
                competition.get("start_date"),
                as_of,
                first_weekday,
            )
            for u in users
        ]
        if len(users) < 2 or any(s is None for s in statuses):
            return None
        survivors = sum(1 for s in statuses if s is not None and not s.is_eliminated)
        if survivors <= 1:
            logger.info(
                f"Competition {competition.get('competition_id')} down to {survivors} survivor(s)"
            )
            return "last_survivor"
    return None
