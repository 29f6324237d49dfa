"""Competition lifecycle transitions (pure, no network/DB).

This module implements the lifecycle rules of a competition:
lobby -> scheduled -> active -> finished, never backwards.
All functions are deterministic and side-effect free given ``now``.

Architecture:
- State is a plain dict (CompetitionState) with snake_case keys as served by the backend
- Commands are plain dicts with a 'type' field (INVITE_USER, START, FINISH, etc.)
- apply_command() takes (state, cmd, now) and returns CommandOutcome with updated state
- Mutations are performed on a deepcopy; the input state is never touched
- A rejected command returns the original state and a typed EngineError

Key concepts:
- version: Monotonic counter incremented on every applied command
- request_id: Idempotency token; replaying an applied request is a no-op
- expected_version: Version the client last saw; older versions are rejected as stale
- trophies: Minted once, on the transition into 'finished'

State transitions:
- SCHEDULE: lobby -> scheduled with a future start_date (owner, needs an invite)
- START: lobby/scheduled -> active now (owner, needs min accepted participants)
- ACTIVATE: scheduled -> active once start_date is reached (automatic)
- FINISH: active -> finished when the variant's end condition holds (automatic)
- TERMINATE: active -> finished on owner request
- INVITE_USER / ACCEPT_INVITE / DECLINE_INVITE: membership changes
- UPDATE_SETTINGS: owner edits in lobby only; type is immutable
- DELETE: owner removes a competition that has not finished
"""
from __future__ import annotations

import logging
import math
import uuid
from copy import deepcopy
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict

from . import errors
from .config import get_settings
from .errors import EngineError
from .intervals import parse_iso_date
from .ranking import compute_standings
from .scoring import end_condition_met
from .trophies import Trophy, mint_trophies
from .types import CompetitionState
from .validation import CreateCompetitionRequest, InputSanitizer, ValidatedCmd

logger = logging.getLogger(__name__)

OWNER_ONLY = {"INVITE_USER", "SCHEDULE", "START", "TERMINATE", "UPDATE_SETTINGS", "DELETE"}


@dataclass
class CommandOutcome:
    """Result of applying a lifecycle command."""

    state: Dict[str, Any]
    cmd_payload: Dict[str, Any]
    snapshot_required: bool
    trophies: tuple[Trophy, ...] = ()
    error: EngineError | None = None
    duplicate: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _today(now: datetime) -> date:
    return parse_iso_date(now)  # type: ignore[return-value]


def default_state(
    owner: str,
    competition_type: str,
    *,
    competition_id: str | None = None,
    competition_name: str = "",
    options: Dict[str, Any] | None = None,
    workouts: list[str] | None = None,
    owner_username: str | None = None,
) -> Dict[str, Any]:
    """Create a fresh competition in the lobby with the owner as accepted member."""
    cid = competition_id or str(uuid.uuid4())
    return {
        "competition_id": cid,
        "competition_name": competition_name,
        "type": competition_type,
        "owner": owner,
        "status": "lobby",
        "start_date": None,
        "end_date": None,
        "workouts": list(workouts or ["run", "walk"]),
        "options": dict(options or {}),
        "users": [
            {
                "competition_id": cid,
                "user_id": owner,
                "username": owner_username,
                "invite_status": "accepted",
                "score": None,
                "intervals": {},
                "remaining_lives": None,
            }
        ],
        "version": 0,
        "applied_request_ids": [],
        "deleted": False,
    }


def create_competition(
    request: CreateCompetitionRequest,
    owner: str,
    *,
    competition_id: str | None = None,
    owner_username: str | None = None,
) -> Dict[str, Any]:
    """Build the lobby state for a validated creation request."""
    state = default_state(
        owner,
        request.type,
        competition_id=competition_id,
        competition_name=request.competition_name,
        options=request.to_options(),
        workouts=request.workouts,
        owner_username=owner_username,
    )
    if request.end_date:
        state["end_date"] = request.end_date[:10]
    logger.info(f"Created {request.type} competition {state['competition_id']} for {owner}")
    return state


def derive_status(state: CompetitionState, now: datetime | None = None) -> str:
    """Status from dates alone, for snapshots that do not carry one.

    Rules:
        - no start_date -> lobby
        - start_date in the future -> scheduled
        - end_date in the past -> finished
        - otherwise -> active
    """
    today = _today(now or _utcnow())
    start = parse_iso_date(state.get("start_date"))
    if start is None:
        return "lobby"
    if start > today:
        return "scheduled"
    end = parse_iso_date(state.get("end_date"))
    if end is not None and end < today:
        return "finished"
    return "active"


def compute_end_date(start: date | str | None, duration_hours: int | None) -> str | None:
    """End date (exclusive) for a fixed-length competition, rounded up to whole days."""
    start_day = parse_iso_date(start)
    if start_day is None or not duration_hours:
        return None
    return (start_day + timedelta(days=math.ceil(duration_hours / 24))).isoformat()


def find_user(state: CompetitionState, user_id: str | None) -> Dict[str, Any] | None:
    if not user_id:
        return None
    for user in state.get("users") or []:
        if isinstance(user, dict) and user.get("user_id") == user_id:
            return user  # type: ignore[return-value]
    return None


def accepted_count(state: CompetitionState) -> int:
    return sum(1 for u in state.get("users") or [] if u.get("invite_status") == "accepted")


def is_owner(state: CompetitionState, user_id: str | None) -> bool:
    return user_id is not None and state.get("owner") == user_id


def invite_status_for(state: CompetitionState, user_id: str | None) -> str | None:
    user = find_user(state, user_id)
    return user.get("invite_status") if user else None


def validate_version(state: CompetitionState, cmd: Dict[str, Any]) -> EngineError | None:
    """Reject commands built against an older snapshot.

    Example: client A starts the competition (version 5 -> 6), client B still
    showing version 5 edits settings -> rejected as stale_version, forcing a refresh.
    """
    incoming = cmd.get("expected_version")
    current = state.get("version", 0)
    if incoming is not None and incoming < current:
        return EngineError.of(
            errors.STALE_VERSION, f"command built on version {incoming}, current is {current}"
        )
    return None


def _check_command(
    state: CompetitionState,
    cmd: ValidatedCmd,
    now: datetime,
    first_weekday: int | None,
) -> EngineError | None:
    """Preconditions for ``cmd``; None when it may be applied."""
    ctype = cmd.type
    status = state.get("status", "lobby")
    min_participants = get_settings().min_participants

    if ctype in OWNER_ONLY and not is_owner(state, cmd.actor_id):
        return EngineError.of(errors.PERMISSION_DENIED, f"{ctype} is owner-only")

    if status == "finished":
        return EngineError.of(errors.INVALID_TRANSITION, "competition is finished and read-only")

    if ctype == "INVITE_USER":
        existing = find_user(state, cmd.user_id)
        if existing and existing.get("invite_status") in ("pending", "accepted"):
            return EngineError.of(errors.ALREADY_INVITED, f"{cmd.user_id} already invited")

    elif ctype in ("ACCEPT_INVITE", "DECLINE_INVITE"):
        user = find_user(state, cmd.actor_id)
        if not user or user.get("invite_status") != "pending":
            return EngineError.of(errors.NOT_PENDING, "no pending invite for this user")
        if ctype == "ACCEPT_INVITE" and status not in ("lobby", "scheduled"):
            return EngineError.of(errors.INVALID_TRANSITION, f"cannot join a competition that is {status}")

    elif ctype == "SCHEDULE":
        if status not in ("lobby", "scheduled"):
            return EngineError.of(errors.INVALID_TRANSITION, f"cannot schedule from {status}")
        if cmd.start_date is None or cmd.start_date <= _today(now):
            return EngineError.of(errors.INVALID_REQUEST, "start_date must be in the future")
        invited = [
            u
            for u in state.get("users") or []
            if u.get("user_id") != state.get("owner")
            and u.get("invite_status") in ("pending", "accepted")
        ]
        if not invited:
            return EngineError.of(
                errors.INSUFFICIENT_PARTICIPANTS, "invite at least one participant first"
            )

    elif ctype == "START":
        if status not in ("lobby", "scheduled"):
            return EngineError.of(errors.INVALID_TRANSITION, f"cannot start from {status}")
        if accepted_count(state) < min_participants:
            return EngineError.of(
                errors.INSUFFICIENT_PARTICIPANTS,
                f"needs {min_participants} accepted participants",
            )

    elif ctype == "ACTIVATE":
        if status != "scheduled":
            return EngineError.of(errors.INVALID_TRANSITION, f"cannot activate from {status}")
        start = parse_iso_date(state.get("start_date"))
        if start is None or start > _today(now):
            return EngineError.of(errors.INVALID_TRANSITION, "start date not reached")
        if accepted_count(state) < min_participants:
            return EngineError.of(
                errors.INSUFFICIENT_PARTICIPANTS,
                f"needs {min_participants} accepted participants",
            )

    elif ctype == "FINISH":
        if status != "active":
            return EngineError.of(errors.INVALID_TRANSITION, f"cannot finish from {status}")
        if end_condition_met(state, now, first_weekday) is None:
            return EngineError.of(errors.INVALID_TRANSITION, "end condition not met")

    elif ctype == "TERMINATE":
        if status != "active":
            return EngineError.of(errors.INVALID_TRANSITION, f"cannot terminate from {status}")

    elif ctype == "UPDATE_SETTINGS":
        if status != "lobby":
            return EngineError.of(errors.INVALID_TRANSITION, "settings can only change in the lobby")
        if cmd.competition_type is not None and cmd.competition_type != state.get("type"):
            return EngineError.of(errors.INVALID_REQUEST, "competition type cannot change")

    return None


def _finish(
    new_state: Dict[str, Any],
    payload: Dict[str, Any],
    now: datetime,
    reason: str,
    first_weekday: int | None,
) -> tuple[Trophy, ...]:
    today = _today(now)
    # end_date is exclusive: an early finish still counts today's interval.
    closing = (today + timedelta(days=1)).isoformat()
    end = new_state.get("end_date")
    if end is None or end > closing:
        new_state["end_date"] = closing
    new_state["status"] = "finished"
    standings = compute_standings(new_state, now, first_weekday=first_weekday)
    trophies = mint_trophies(new_state, standings, today.isoformat())
    payload["reason"] = reason
    logger.info(
        f"Competition {new_state.get('competition_id')} finished ({reason}); "
        f"{len(trophies)} trophies minted"
    )
    return trophies


def _apply_transition(
    state: CompetitionState,
    cmd: ValidatedCmd,
    raw_cmd: Dict[str, Any],
    now: datetime,
    first_weekday: int | None,
) -> CommandOutcome:
    """Apply a validated transition on a deepcopy of ``state``."""
    new_state: Dict[str, Any] = deepcopy(state)  # type: ignore[arg-type]
    ctype = cmd.type
    payload = dict(raw_cmd)
    trophies: tuple[Trophy, ...] = ()
    duration = (new_state.get("options") or {}).get("duration_hours")

    if ctype == "INVITE_USER":
        existing = find_user(new_state, cmd.user_id)
        if existing is not None:
            # Re-inviting someone who declined
            existing["invite_status"] = "pending"
        else:
            new_state.setdefault("users", []).append(
                {
                    "competition_id": new_state.get("competition_id"),
                    "user_id": cmd.user_id,
                    "username": InputSanitizer.sanitize_name(cmd.username) if cmd.username else None,
                    "invite_status": "pending",
                    "score": None,
                    "intervals": {},
                    "remaining_lives": None,
                }
            )

    elif ctype == "ACCEPT_INVITE":
        find_user(new_state, cmd.actor_id)["invite_status"] = "accepted"  # type: ignore[index]

    elif ctype == "DECLINE_INVITE":
        find_user(new_state, cmd.actor_id)["invite_status"] = "declined"  # type: ignore[index]

    elif ctype == "SCHEDULE":
        new_state["status"] = "scheduled"
        new_state["start_date"] = cmd.start_date.isoformat()  # type: ignore[union-attr]
        new_state["end_date"] = compute_end_date(new_state["start_date"], duration)
        payload["start_date"] = new_state["start_date"]

    elif ctype in ("START", "ACTIVATE"):
        if ctype == "START":
            new_state["start_date"] = _today(now).isoformat()
        new_state["status"] = "active"
        if duration:
            new_state["end_date"] = compute_end_date(new_state["start_date"], duration)
        payload["start_date"] = new_state["start_date"]

    elif ctype == "FINISH":
        reason = end_condition_met(new_state, now, first_weekday) or "duration_elapsed"
        trophies = _finish(new_state, payload, now, reason, first_weekday)

    elif ctype == "TERMINATE":
        trophies = _finish(new_state, payload, now, "terminated", first_weekday)

    elif ctype == "UPDATE_SETTINGS":
        if cmd.competition_name is not None:
            new_state["competition_name"] = cmd.competition_name
        if cmd.workouts is not None:
            new_state["workouts"] = cmd.workouts
        if cmd.options:
            options = dict(new_state.get("options") or {})
            options.update({k: v for k, v in cmd.options.items() if v is not None})
            new_state["options"] = options

    elif ctype == "DELETE":
        new_state["deleted"] = True

    payload["status"] = new_state.get("status")
    return CommandOutcome(
        state=new_state, cmd_payload=payload, snapshot_required=True, trophies=trophies
    )


def _rejected(state: CompetitionState, cmd: Dict[str, Any], error: EngineError) -> CommandOutcome:
    logger.warning(f"Rejected {cmd.get('type')} on {state.get('competition_id')}: {error.kind}")
    return CommandOutcome(
        state=deepcopy(state),  # type: ignore[arg-type]
        cmd_payload=dict(cmd),
        snapshot_required=False,
        error=error,
    )


def apply_command(
    state: CompetitionState,
    cmd: Dict[str, Any],
    *,
    now: datetime | None = None,
    first_weekday: int | None = None,
) -> CommandOutcome:
    """Apply a lifecycle command to a competition snapshot.

    Args:
        state: Current competition state (not mutated)
        cmd: Command dict with 'type' field and command-specific params
        now: Evaluation instant (UTC); defaults to the current time
        first_weekday: Week start for weekly buckets (settings default)

    Returns:
        CommandOutcome. On rejection ``error`` is set, ``state`` equals the input
        and ``snapshot_required`` is False.
    """
    now = now or _utcnow()
    try:
        validated = InputSanitizer.validate_cmd(cmd)
    except ValueError as e:
        return _rejected(state, cmd, EngineError.of(errors.INVALID_REQUEST, str(e)))

    if state.get("deleted"):
        return _rejected(state, cmd, EngineError.of(errors.NOT_FOUND, "competition was deleted"))

    request_id = validated.request_id
    if request_id and request_id in (state.get("applied_request_ids") or []):
        logger.info(f"Duplicate request {request_id} on {state.get('competition_id')}; ignoring")
        return CommandOutcome(
            state=deepcopy(state),  # type: ignore[arg-type]
            cmd_payload=dict(cmd),
            snapshot_required=False,
            duplicate=True,
        )

    error = validate_version(state, cmd) or _check_command(state, validated, now, first_weekday)
    if error is not None:
        return _rejected(state, cmd, error)

    outcome = _apply_transition(state, validated, cmd, now, first_weekday)
    new_state = outcome.state
    new_state["version"] = int(state.get("version", 0)) + 1
    if request_id:
        history = list(new_state.get("applied_request_ids") or [])
        history.append(request_id)
        new_state["applied_request_ids"] = history[-get_settings().request_id_history :]
    outcome.cmd_payload["version"] = new_state["version"]
    logger.info(
        f"{validated.type} applied to {new_state.get('competition_id')} "
        f"(status={new_state.get('status')}, version={new_state['version']})"
    )
    return outcome


def tick(
    state: CompetitionState,
    *,
    now: datetime | None = None,
    first_weekday: int | None = None,
) -> CommandOutcome | None:
    """Run whichever automatic transition is due at ``now``, if any.

    Returns None when nothing is due (or the due transition is not yet allowed,
    e.g. a scheduled start without enough accepted participants).
    """
    now = now or _utcnow()
    status = state.get("status")
    if status == "scheduled":
        cmd: Dict[str, Any] = {"type": "ACTIVATE"}
    elif status == "active":
        if end_condition_met(state, now, first_weekday) is None:
            return None
        cmd = {"type": "FINISH"}
    else:
        return None
    outcome = apply_command(state, cmd, now=now, first_weekday=first_weekday)
    return outcome if outcome.ok else None
