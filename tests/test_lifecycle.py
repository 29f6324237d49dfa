from datetime import datetime, timezone

from streak_core import (
    CreateCompetitionRequest,
    apply_command,
    compute_end_date,
    create_competition,
    default_state,
    derive_status,
    tick,
)
from streak_core.lifecycle import accepted_count, invite_status_for, is_owner

NOW = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)
OPTIONS = {"goal": 1.0, "unit": "miles", "interval": "day", "first_to": 1, "duration_hours": 48}


def _apply(state, cmd, now=NOW):
    outcome = apply_command(state, cmd, now=now, first_weekday=0)
    assert outcome.ok, outcome.error
    return outcome.state


def _lobby_with_bob(accept=True):
    state = default_state("alice", "streaks", competition_id="c1", options=OPTIONS)
    state = _apply(state, {"type": "INVITE_USER", "actor_id": "alice", "user_id": "bob", "username": "Bob"})
    if accept:
        state = _apply(state, {"type": "ACCEPT_INVITE", "actor_id": "bob"})
    return state


def _user(state, user_id):
    return next(u for u in state["users"] if u["user_id"] == user_id)


def test_default_state_puts_owner_in_lobby():
    state = default_state("alice", "streaks", competition_id="c1")
    assert state["status"] == "lobby"
    assert state["version"] == 0
    assert state["start_date"] is None
    assert state["users"][0]["user_id"] == "alice"
    assert state["users"][0]["invite_status"] == "accepted"


def test_create_competition_from_request():
    request = CreateCompetitionRequest(
        competition_name="  Morning <Miles>  ",
        type="apex",
        workouts=["run", "run", "walk"],
        unit="kilometers",
        interval="week",
        duration_hours=168,
    )
    state = create_competition(request, "alice", competition_id="c9")
    assert state["competition_id"] == "c9"
    assert state["competition_name"] == "Morning Miles"
    assert state["workouts"] == ["run", "walk"]
    assert state["options"]["duration_hours"] == 168
    assert state["options"]["goal"] == 0.0
    assert state["status"] == "lobby"


def test_invite_accept_bumps_version():
    state = _lobby_with_bob(accept=False)
    assert _user(state, "bob")["invite_status"] == "pending"
    assert _user(state, "bob")["username"] == "Bob"
    assert state["version"] == 1
    state = _apply(state, {"type": "ACCEPT_INVITE", "actor_id": "bob"})
    assert _user(state, "bob")["invite_status"] == "accepted"
    assert state["version"] == 2


def test_owner_only_commands_reject_other_members():
    state = _lobby_with_bob()
    outcome = apply_command(
        state, {"type": "INVITE_USER", "actor_id": "bob", "user_id": "cara"}, now=NOW
    )
    assert outcome.error.kind == "permission_denied"
    assert outcome.error.status_code == 403
    assert outcome.snapshot_required is False
    assert outcome.state == state


def test_rejected_transition_has_no_side_effects():
    state = _lobby_with_bob()
    before = dict(state)
    outcome = apply_command(state, {"type": "TERMINATE", "actor_id": "alice"}, now=NOW)
    assert outcome.error.kind == "invalid_transition"
    assert outcome.state == state
    assert state == before
    assert state["version"] == 2


def test_start_needs_enough_accepted_participants():
    state = _lobby_with_bob(accept=False)
    outcome = apply_command(state, {"type": "START", "actor_id": "alice"}, now=NOW)
    assert outcome.error.kind == "insufficient_participants"


def test_start_activates_and_sets_dates():
    state = _apply(_lobby_with_bob(), {"type": "START", "actor_id": "alice"})
    assert state["status"] == "active"
    assert state["start_date"] == "2026-03-16"
    assert state["end_date"] == "2026-03-18"


def test_duplicate_request_is_ignored():
    state = _lobby_with_bob(accept=False)
    cmd = {"type": "ACCEPT_INVITE", "actor_id": "bob", "request_id": "req-1"}
    first = apply_command(state, cmd, now=NOW)
    assert first.ok
    second = apply_command(first.state, cmd, now=NOW)
    assert second.ok
    assert second.duplicate is True
    assert second.state["version"] == first.state["version"]
    assert second.snapshot_required is False


def test_stale_version_is_rejected():
    state = _lobby_with_bob()
    outcome = apply_command(
        state,
        {
            "type": "UPDATE_SETTINGS",
            "actor_id": "alice",
            "competition_name": "Renamed",
            "expected_version": 1,
        },
        now=NOW,
    )
    assert outcome.error.kind == "stale_version"
    ok = apply_command(
        state,
        {
            "type": "UPDATE_SETTINGS",
            "actor_id": "alice",
            "competition_name": "Renamed",
            "expected_version": 2,
        },
        now=NOW,
    )
    assert ok.state["competition_name"] == "Renamed"


def test_update_settings_only_in_lobby_and_type_is_fixed():
    state = _lobby_with_bob()
    outcome = apply_command(
        state, {"type": "UPDATE_SETTINGS", "actor_id": "alice", "competition_type": "race"}, now=NOW
    )
    assert outcome.error.kind == "invalid_request"

    state = _apply(state, {"type": "UPDATE_SETTINGS", "actor_id": "alice", "options": {"goal": 2.0}})
    assert state["options"]["goal"] == 2.0
    assert state["options"]["first_to"] == 1

    active = _apply(state, {"type": "START", "actor_id": "alice"})
    outcome = apply_command(
        active, {"type": "UPDATE_SETTINGS", "actor_id": "alice", "competition_name": "x"}, now=NOW
    )
    assert outcome.error.kind == "invalid_transition"


def test_cannot_join_after_start():
    state = _lobby_with_bob()
    state = _apply(state, {"type": "INVITE_USER", "actor_id": "alice", "user_id": "cara"})
    state = _apply(state, {"type": "START", "actor_id": "alice"})
    outcome = apply_command(state, {"type": "ACCEPT_INVITE", "actor_id": "cara"}, now=NOW)
    assert outcome.error.kind == "invalid_transition"
    outcome = apply_command(state, {"type": "ACCEPT_INVITE", "actor_id": "zed"}, now=NOW)
    assert outcome.error.kind == "not_pending"


def test_schedule_then_tick_activates_on_start_date():
    state = _lobby_with_bob()
    outcome = apply_command(
        state, {"type": "SCHEDULE", "actor_id": "alice", "start_date": "2026-03-16"}, now=NOW
    )
    assert outcome.error.kind == "invalid_request"

    state = _apply(state, {"type": "SCHEDULE", "actor_id": "alice", "start_date": "2026-03-20"})
    assert state["status"] == "scheduled"
    assert state["end_date"] == "2026-03-22"

    assert tick(state, now=NOW, first_weekday=0) is None
    outcome = tick(state, now=datetime(2026, 3, 20, 0, 5, tzinfo=timezone.utc), first_weekday=0)
    assert outcome.state["status"] == "active"
    assert outcome.state["start_date"] == "2026-03-20"


def test_tick_finishes_when_duration_elapsed():
    state = _apply(_lobby_with_bob(), {"type": "START", "actor_id": "alice"})
    for user in state["users"]:
        user["intervals"] = {"2026-03-16": 1.0, "2026-03-17": 1.0}
    assert tick(state, now=datetime(2026, 3, 17, 23, 0, tzinfo=timezone.utc), first_weekday=0) is None
    outcome = tick(state, now=datetime(2026, 3, 18, 0, 1, tzinfo=timezone.utc), first_weekday=0)
    assert outcome.state["status"] == "finished"
    assert outcome.cmd_payload["reason"] == "duration_elapsed"
    assert outcome.state["end_date"] == "2026-03-18"
    assert len(outcome.trophies) == 2


def test_terminate_mints_trophies_and_freezes_competition():
    state = _apply(_lobby_with_bob(), {"type": "START", "actor_id": "alice"})
    outcome = apply_command(state, {"type": "TERMINATE", "actor_id": "alice"}, now=NOW)
    assert outcome.state["status"] == "finished"
    assert outcome.cmd_payload["reason"] == "terminated"
    assert [(t.user_id, t.placement) for t in outcome.trophies] == [("alice", 1), ("bob", 2)]

    finished = outcome.state
    for cmd in (
        {"type": "DELETE", "actor_id": "alice"},
        {"type": "INVITE_USER", "actor_id": "alice", "user_id": "cara"},
        {"type": "FINISH"},
    ):
        assert apply_command(finished, cmd, now=NOW).error.kind == "invalid_transition"


def test_delete_then_everything_is_not_found():
    state = _apply(_lobby_with_bob(), {"type": "DELETE", "actor_id": "alice"})
    assert state["deleted"] is True
    outcome = apply_command(state, {"type": "ACCEPT_INVITE", "actor_id": "bob"}, now=NOW)
    assert outcome.error.kind == "not_found"


def test_unknown_command_is_invalid_request():
    state = default_state("alice", "streaks")
    outcome = apply_command(state, {"type": "JUMP", "actor_id": "alice"}, now=NOW)
    assert outcome.error.kind == "invalid_request"
    outcome = apply_command(state, {"type": "START"}, now=NOW)
    assert outcome.error.kind == "invalid_request"


def test_derive_status_and_end_date():
    assert derive_status({"start_date": None}, NOW) == "lobby"
    assert derive_status({"start_date": "2026-03-20"}, NOW) == "scheduled"
    assert derive_status({"start_date": "2026-03-10", "end_date": "2026-03-15"}, NOW) == "finished"
    assert derive_status({"start_date": "2026-03-10", "end_date": "2026-03-16"}, NOW) == "active"
    assert compute_end_date("2026-03-16", 25) == "2026-03-18"
    assert compute_end_date("2026-03-16", None) is None


def test_membership_helpers():
    state = _lobby_with_bob(accept=False)
    assert accepted_count(state) == 1
    assert is_owner(state, "alice") is True
    assert is_owner(state, "bob") is False
    assert invite_status_for(state, "bob") == "pending"
    assert invite_status_for(state, "zed") is None


def _started(competition_type, options, intervals):
    state = default_state("alice", competition_type, competition_id="c2", options=options)
    state = _apply(state, {"type": "INVITE_USER", "actor_id": "alice", "user_id": "bob"})
    state = _apply(state, {"type": "ACCEPT_INVITE", "actor_id": "bob"})
    state = _apply(
        state, {"type": "START", "actor_id": "alice"}, now=datetime(2026, 3, 15, 8, 0, tzinfo=timezone.utc)
    )
    for user in state["users"]:
        user["intervals"] = intervals[user["user_id"]]
    return state


def test_race_finish_counts_the_interval_that_reached_the_goal():
    state = _started(
        "race",
        {"goal": 10.0, "unit": "miles", "interval": "day"},
        {"alice": {"2026-03-15": 5.0, "2026-03-16": 5.0}, "bob": {"2026-03-15": 8.0}},
    )
    outcome = tick(state, now=NOW, first_weekday=0)
    assert outcome.cmd_payload["reason"] == "goal_reached"
    assert outcome.state["end_date"] == "2026-03-17"
    assert [(t.user_id, t.placement, t.score) for t in outcome.trophies] == [
        ("alice", 1, 10.0),
        ("bob", 2, 8.0),
    ]
    assert outcome.trophies[0].completed_date == "2026-03-16"


def test_terminate_apex_keeps_todays_distance():
    state = _started(
        "apex",
        {"unit": "miles", "interval": "day", "duration_hours": 168},
        {"alice": {"2026-03-15": 5.0, "2026-03-16": 5.0}, "bob": {"2026-03-15": 8.0}},
    )
    assert state["end_date"] == "2026-03-22"
    outcome = apply_command(state, {"type": "TERMINATE", "actor_id": "alice"}, now=NOW, first_weekday=0)
    assert outcome.state["end_date"] == "2026-03-17"
    assert [(t.user_id, t.placement, t.score) for t in outcome.trophies] == [
        ("alice", 1, 10.0),
        ("bob", 2, 8.0),
    ]
