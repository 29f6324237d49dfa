"""In-process, server-authoritative backend.

Holds competitions in memory, applies lifecycle commands under a
per-competition lock and settles scores, lives and automatic transitions
before every read. Useful for tests and for running the engine without a
remote store.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from . import errors
from .config import get_settings
from .elimination import derive_elimination, uses_lives
from .errors import CompetitionServiceError
from .intervals import parse_iso_date
from .lifecycle import apply_command, create_competition, find_user, tick
from .scoring import accepted_users, score_competition
from .throttle import NotificationDispatcher, SocialActionThrottle, SocialEvent
from .trophies import Trophy
from .validation import CreateCompetitionRequest
from .workouts import WorkoutDataProvider, collect_intervals

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordingDispatcher:
    """Dispatcher that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: List[SocialEvent] = []

    def dispatch(self, event: SocialEvent) -> None:
        self.events.append(event)


class InMemoryCompetitionBackend:
    def __init__(
        self,
        *,
        dispatcher: NotificationDispatcher | None = None,
        workouts: WorkoutDataProvider | None = None,
        clock: Callable[[], datetime] = _utcnow,
        first_weekday: int | None = None,
    ):
        self.dispatcher = dispatcher or RecordingDispatcher()
        self._workouts = workouts
        self._clock = clock
        self._first_weekday = (
            get_settings().first_weekday if first_weekday is None else first_weekday
        )
        self._throttle = SocialActionThrottle(self.dispatcher, self._first_weekday)
        self._states: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._created: Dict[str, str] = {}
        self.trophies: List[Trophy] = []

    # ---------- storage ----------

    def _lock(self, competition_id: str) -> asyncio.Lock:
        return self._locks.setdefault(competition_id, asyncio.Lock())

    def _get(self, competition_id: str, caller_id: str | None) -> Dict[str, Any]:
        state = self._states.get(competition_id)
        if state is None or state.get("deleted"):
            raise CompetitionServiceError.of(errors.NOT_FOUND, f"competition {competition_id} not found")
        if caller_id is not None and find_user(state, caller_id) is None:
            raise CompetitionServiceError.of(errors.UNAUTHORIZED, "not a member of this competition")
        return state

    def record_intervals(self, competition_id: str, user_id: str, intervals: Dict[str, float]) -> None:
        """Overwrite a participant's per-interval distances (no workout provider)."""
        user = find_user(self._get(competition_id, None), user_id)
        if user is None:
            raise CompetitionServiceError.of(errors.NOT_FOUND, f"{user_id} is not a participant")
        user["intervals"] = dict(sorted(intervals.items()))

    def trophies_for(self, user_id: str) -> List[Trophy]:
        return [t for t in self.trophies if t.user_id == user_id]

    # ---------- settlement ----------

    def _settle_locked(self, competition_id: str) -> Dict[str, Any]:
        """Refresh distances, scores and lives, then run due automatic transitions."""
        state = self._states[competition_id]
        now = self._clock()
        if state.get("status") == "active":
            self._refresh_distances(state, now)
            self._refresh_scores(state, now)
        while True:
            outcome = tick(state, now=now, first_weekday=self._first_weekday)
            if outcome is None:
                break
            state = outcome.state
            self._states[competition_id] = state
            self.trophies.extend(outcome.trophies)
            if state.get("status") == "active":
                self._refresh_distances(state, now)
                self._refresh_scores(state, now)
        return state

    def _refresh_distances(self, state: Dict[str, Any], now: datetime) -> None:
        if self._workouts is None:
            return
        start = parse_iso_date(state.get("start_date"))
        if start is None:
            return
        today = parse_iso_date(now)
        bucket = (state.get("options") or {}).get("interval") or "day"
        for user in accepted_users(state):
            user["intervals"] = collect_intervals(
                self._workouts,
                user.get("user_id", ""),
                start,
                today,  # type: ignore[arg-type]
                state.get("workouts") or [],
                bucket,
                self._first_weekday,
            )

    def _refresh_scores(self, state: Dict[str, Any], now: datetime) -> None:
        options = state.get("options") or {}
        life_based = uses_lives(state.get("type", ""), options)
        results = score_competition(state, now, self._first_weekday)
        for user in accepted_users(state):
            user["score"] = results[user.get("user_id", "")].score
            if life_based:
                status = derive_elimination(
                    user.get("intervals"),
                    float(options.get("goal") or 0.0),
                    int(options.get("first_to") or 0),
                    state.get("start_date"),
                    now,
                    options.get("interval") or "day",
                    self._first_weekday,
                )
                user["remaining_lives"] = status.lives_remaining

    async def _apply(self, competition_id: str, cmd: Dict[str, Any], caller_id: str, request_id: str) -> None:
        async with self._lock(competition_id):
            self._get(competition_id, None)
            state = self._settle_locked(competition_id)
            outcome = apply_command(
                state,
                {**cmd, "actor_id": caller_id, "request_id": request_id},
                now=self._clock(),
                first_weekday=self._first_weekday,
            )
            if outcome.error is not None:
                raise CompetitionServiceError(outcome.error)
            if outcome.duplicate:
                return
            self._states[competition_id] = outcome.state
            self.trophies.extend(outcome.trophies)
            self._settle_locked(competition_id)

    # ---------- backend protocol ----------

    async def load_competition(self, competition_id: str, *, caller_id: str) -> Dict[str, Any]:
        async with self._lock(competition_id):
            self._get(competition_id, caller_id)
            return deepcopy(self._settle_locked(competition_id))

    async def create_competition(
        self,
        request: CreateCompetitionRequest,
        *,
        caller_id: str,
        request_id: str,
        owner_username: Optional[str] = None,
    ) -> str:
        if request_id in self._created:
            return self._created[request_id]
        state = create_competition(
            request,
            caller_id,
            competition_id=str(uuid.uuid4()),
            owner_username=owner_username,
        )
        state["applied_request_ids"] = [request_id]
        self._states[state["competition_id"]] = state
        self._created[request_id] = state["competition_id"]
        return state["competition_id"]

    async def invite_user(
        self, competition_id: str, user_id: str, *, caller_id: str, request_id: str
    ) -> None:
        await self._apply(competition_id, {"type": "INVITE_USER", "user_id": user_id}, caller_id, request_id)

    async def accept_invite(self, competition_id: str, *, caller_id: str, request_id: str) -> None:
        await self._apply(competition_id, {"type": "ACCEPT_INVITE"}, caller_id, request_id)

    async def decline_invite(self, competition_id: str, *, caller_id: str, request_id: str) -> None:
        await self._apply(competition_id, {"type": "DECLINE_INVITE"}, caller_id, request_id)

    async def schedule_competition(
        self, competition_id: str, start_date: str, *, caller_id: str, request_id: str
    ) -> None:
        await self._apply(
            competition_id, {"type": "SCHEDULE", "start_date": start_date}, caller_id, request_id
        )

    async def start_competition(self, competition_id: str, *, caller_id: str, request_id: str) -> None:
        await self._apply(competition_id, {"type": "START"}, caller_id, request_id)

    async def terminate_competition(
        self, competition_id: str, *, caller_id: str, request_id: str
    ) -> None:
        await self._apply(competition_id, {"type": "TERMINATE"}, caller_id, request_id)

    async def update_competition(
        self, competition_id: str, changes: Dict[str, Any], *, caller_id: str, request_id: str
    ) -> None:
        await self._apply(competition_id, {"type": "UPDATE_SETTINGS", **changes}, caller_id, request_id)

    async def delete_competition(self, competition_id: str, *, caller_id: str, request_id: str) -> None:
        await self._apply(competition_id, {"type": "DELETE"}, caller_id, request_id)
        async with self._lock(competition_id):
            self._states.pop(competition_id, None)
        self._locks.pop(competition_id, None)
        logger.info(f"Competition {competition_id} removed")

    async def send_flex(self, competition_id: str, *, caller_id: str, request_id: str) -> None:
        async with self._lock(competition_id):
            self._get(competition_id, caller_id)
            state = self._settle_locked(competition_id)
            error = self._throttle.send_flex(state, caller_id, self._clock())
            if error is not None:
                raise CompetitionServiceError(error)

    async def send_nudge(
        self, competition_id: str, target_user_id: str, *, caller_id: str, request_id: str
    ) -> None:
        async with self._lock(competition_id):
            self._get(competition_id, caller_id)
            state = self._settle_locked(competition_id)
            error = self._throttle.send_nudge(state, caller_id, target_user_id, self._clock())
            if error is not None:
                raise CompetitionServiceError(error)
