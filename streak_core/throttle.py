"""Flex / nudge rate limiting.

Two independent per-day gates:
- flex:  once per UTC day per (competition, actor), only after the actor met
         the goal for the current interval
- nudge: once per UTC day per (competition, actor, target), only while the
         target has not met the goal for the current interval

The checks are pure (``check_flex`` / ``check_nudge``). ``SocialActionThrottle``
keeps the per-day ledger and hands accepted actions to the dispatcher.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Literal, Protocol

from . import errors
from .config import get_settings
from .elimination import resolve_elimination
from .errors import EngineError
from .intervals import interval_key, parse_iso_date
from .types import CompetitionState, CompetitionUser

logger = logging.getLogger(__name__)

SocialActionKind = Literal["flex", "nudge"]


@dataclass(frozen=True)
class SocialEvent:
    kind: SocialActionKind
    competition_id: str
    actor_id: str
    target_id: str | None
    day: str
    distance: float
    goal: float
    unit: str


class NotificationDispatcher(Protocol):
    def dispatch(self, event: SocialEvent) -> None:
        ...


def _member(competition: CompetitionState, user_id: str) -> CompetitionUser | None:
    for user in competition.get("users") or []:
        if user.get("user_id") == user_id and user.get("invite_status") == "accepted":
            return user
    return None


def current_distance(
    user: CompetitionUser, competition: CompetitionState, now: datetime, first_weekday: int
) -> float:
    bucket = (competition.get("options") or {}).get("interval") or "day"
    key = interval_key(now, bucket, first_weekday)
    return float((user.get("intervals") or {}).get(key) or 0.0)


def _check_common(
    competition: CompetitionState, actor_id: str, now: datetime, first_weekday: int
) -> tuple[CompetitionUser | None, EngineError | None]:
    if competition.get("status") != "active":
        return None, EngineError.of(errors.INVALID_TRANSITION, "competition is not active")
    actor = _member(competition, actor_id)
    if actor is None:
        return None, EngineError.of(errors.PERMISSION_DENIED, "not a participant")
    status = resolve_elimination(
        actor,
        competition.get("type", ""),
        competition.get("options") or {},
        competition.get("start_date"),
        now,
        first_weekday,
    )
    if status is not None and status.is_eliminated:
        return None, EngineError.of(errors.PERMISSION_DENIED, "eliminated participants cannot act")
    return actor, None


def check_flex(
    competition: CompetitionState,
    actor_id: str,
    now: datetime,
    *,
    already_today: bool = False,
    first_weekday: int | None = None,
) -> EngineError | None:
    if first_weekday is None:
        first_weekday = get_settings().first_weekday
    actor, error = _check_common(competition, actor_id, now, first_weekday)
    if error is not None:
        return error
    if already_today:
        return EngineError.of(errors.ALREADY_PERFORMED_TODAY, "already flexed today")
    goal = float((competition.get("options") or {}).get("goal") or 0.0)
    if current_distance(actor, competition, now, first_weekday) < goal:  # type: ignore[arg-type]
        return EngineError.of(errors.GOAL_NOT_MET, "complete today's goal before flexing")
    return None


def check_nudge(
    competition: CompetitionState,
    actor_id: str,
    target_id: str,
    now: datetime,
    *,
    already_today: bool = False,
    first_weekday: int | None = None,
) -> EngineError | None:
    if first_weekday is None:
        first_weekday = get_settings().first_weekday
    _, error = _check_common(competition, actor_id, now, first_weekday)
    if error is not None:
        return error
    target = _member(competition, target_id)
    if target is None or target_id == actor_id:
        return EngineError.of(errors.INVALID_REQUEST, "target is not another participant")
    if already_today:
        return EngineError.of(errors.ALREADY_PERFORMED_TODAY, "already nudged this user today")
    goal = float((competition.get("options") or {}).get("goal") or 0.0)
    if current_distance(target, competition, now, first_weekday) >= goal:
        return EngineError.of(errors.TARGET_ALREADY_DONE, "target already met today's goal")
    return None


class SocialActionThrottle:
    """Per-day ledger of performed flex/nudge actions."""

    def __init__(self, dispatcher: NotificationDispatcher, first_weekday: int | None = None):
        self._dispatcher = dispatcher
        self._first_weekday = (
            get_settings().first_weekday if first_weekday is None else first_weekday
        )
        self._performed: set[tuple[str, str, str, str | None, date]] = set()

    @staticmethod
    def _day(now: datetime) -> date:
        return parse_iso_date(now)  # type: ignore[return-value]

    def _prune(self, today: date) -> None:
        self._performed = {entry for entry in self._performed if entry[4] >= today}

    def has_performed(
        self, kind: SocialActionKind, competition_id: str, actor_id: str,
        target_id: str | None, now: datetime,
    ) -> bool:
        return (kind, competition_id, actor_id, target_id, self._day(now)) in self._performed

    def send_flex(
        self, competition: CompetitionState, actor_id: str, now: datetime | None = None
    ) -> EngineError | None:
        now = now or datetime.now(timezone.utc)
        cid = competition.get("competition_id", "")
        today = self._day(now)
        self._prune(today)
        error = check_flex(
            competition,
            actor_id,
            now,
            already_today=self.has_performed("flex", cid, actor_id, None, now),
            first_weekday=self._first_weekday,
        )
        if error is not None:
            logger.info(f"Flex by {actor_id} on {cid} rejected: {error.kind}")
            return error
        self._emit("flex", competition, actor_id, None, actor_id, now)
        return None

    def send_nudge(
        self,
        competition: CompetitionState,
        actor_id: str,
        target_id: str,
        now: datetime | None = None,
    ) -> EngineError | None:
        now = now or datetime.now(timezone.utc)
        cid = competition.get("competition_id", "")
        today = self._day(now)
        self._prune(today)
        error = check_nudge(
            competition,
            actor_id,
            target_id,
            now,
            already_today=self.has_performed("nudge", cid, actor_id, target_id, now),
            first_weekday=self._first_weekday,
        )
        if error is not None:
            logger.info(f"Nudge {actor_id}->{target_id} on {cid} rejected: {error.kind}")
            return error
        self._emit("nudge", competition, actor_id, target_id, target_id, now)
        return None

    def _emit(
        self,
        kind: SocialActionKind,
        competition: CompetitionState,
        actor_id: str,
        target_id: str | None,
        subject_id: str,
        now: datetime,
    ) -> None:
        options = competition.get("options") or {}
        subject = _member(competition, subject_id) or {}
        cid = competition.get("competition_id", "")
        event = SocialEvent(
            kind=kind,
            competition_id=cid,
            actor_id=actor_id,
            target_id=target_id,
            day=self._day(now).isoformat(),
            distance=current_distance(subject, competition, now, self._first_weekday),
            goal=float(options.get("goal") or 0.0),
            unit=options.get("unit") or "miles",
        )
        # Dispatch first: a failed delivery leaves the gate open for a retry.
        self._dispatcher.dispatch(event)
        self._performed.add((kind, cid, actor_id, target_id, self._day(now)))
        logger.info(f"{kind} {actor_id}->{target_id or 'all'} on {cid} dispatched")
