"""Type definitions for competition state and commands."""
from __future__ import annotations

from typing import Dict, List, Literal, Optional, TypedDict

CompetitionType = Literal["streaks", "clash", "apex", "targets", "race"]
CompetitionStatus = Literal["lobby", "scheduled", "active", "finished"]
InviteStatus = Literal["pending", "accepted", "declined"]
IntervalBucket = Literal["day", "week", "month"]
DistanceUnit = Literal["miles", "kilometers", "steps"]
CompetitionActivity = Literal["run", "walk"]

COMPETITION_TYPES = ("streaks", "clash", "apex", "targets", "race")
STATUS_ORDER = ("lobby", "scheduled", "active", "finished")


class CompetitionOptions(TypedDict, total=False):
    """Per-competition rules."""
    goal: float
    unit: str
    interval: Optional[str]  # 'day' | 'week' | 'month'
    # Streaks: misses allowed before elimination. Clash: points needed to win.
    first_to: int
    duration_hours: Optional[int]
    history: Optional[bool]


class CompetitionUser(TypedDict, total=False):
    """A participant's membership record as served by the backend."""
    competition_id: str
    user_id: str
    username: Optional[str]
    invite_status: str  # 'pending' | 'accepted' | 'declined'
    score: Optional[float]  # Server aggregate, semantics depend on type
    intervals: Dict[str, float]  # Interval key -> accumulated distance
    remaining_lives: Optional[int]  # Authoritative when present


class CompetitionState(TypedDict, total=False):
    """
    TypedDict representing a competition snapshot.

    All fields are optional (total=False) because fetched snapshots from
    older backends omit some of them; decode_competition() fills defaults.
    """
    competition_id: str
    competition_name: str
    type: str
    owner: str
    status: str  # 'lobby' | 'scheduled' | 'active' | 'finished'

    # ISO dates (YYYY-MM-DD), set once scheduling resolves
    start_date: Optional[str]
    end_date: Optional[str]

    workouts: List[str]
    options: CompetitionOptions
    users: List[CompetitionUser]

    # Monotonic counter bumped on every applied command
    version: int
    # Idempotency tokens of commands already applied (bounded, oldest first)
    applied_request_ids: List[str]
    # Set by DELETE; a deleted competition accepts no further commands
    deleted: bool


class CommandPayload(TypedDict, total=False):
    """
    TypedDict for command payloads sent to lifecycle.apply_command().

    Fields vary by command type.
    """
    # Common
    type: str
    actor_id: Optional[str]
    request_id: Optional[str]
    expected_version: Optional[int]

    # INVITE_USER
    user_id: Optional[str]
    username: Optional[str]

    # SCHEDULE
    start_date: Optional[str]

    # UPDATE_SETTINGS
    competition_name: Optional[str]
    workouts: Optional[List[str]]
    options: Optional[dict]
    competition_type: Optional[str]


StateDict = CompetitionState
CmdDict = CommandPayload
