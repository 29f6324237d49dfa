from datetime import date

import pytest

from streak_core import end_condition_met, score_competition, strategy_for


def _competition(ctype, users, **options):
    opts = {"goal": 1.0, "unit": "miles", "interval": "day", "first_to": 0}
    opts.update(options)
    return {
        "competition_id": "c1",
        "type": ctype,
        "status": "active",
        "start_date": "2026-03-16",
        "end_date": None,
        "options": opts,
        "users": [
            {"user_id": uid, "invite_status": "accepted", "intervals": intervals}
            for uid, intervals in users.items()
        ],
    }


def _scores(competition, as_of):
    return {uid: r.score for uid, r in score_competition(competition, as_of, 0).items()}


def test_clash_awards_closed_intervals_to_strict_leader():
    comp = _competition("clash", {"a": {"2026-03-16": 5.0}, "b": {"2026-03-16": 3.0}})
    assert _scores(comp, date(2026, 3, 17)) == {"a": 1.0, "b": 0.0}


def test_clash_tie_awards_nothing():
    comp = _competition("clash", {"a": {"2026-03-16": 4.0}, "b": {"2026-03-16": 4.0}})
    assert _scores(comp, date(2026, 3, 17)) == {"a": 0.0, "b": 0.0}


def test_clash_open_interval_awards_nothing():
    comp = _competition("clash", {"a": {"2026-03-16": 5.0}, "b": {}})
    assert _scores(comp, date(2026, 3, 16)) == {"a": 0.0, "b": 0.0}


def test_clash_points_end_the_competition():
    comp = _competition(
        "clash",
        {"a": {"2026-03-16": 5.0, "2026-03-17": 2.0}, "b": {"2026-03-16": 3.0, "2026-03-17": 1.0}},
        first_to=2,
    )
    assert end_condition_met(comp, date(2026, 3, 17), 0) is None
    assert end_condition_met(comp, date(2026, 3, 18), 0) == "points_reached"


def test_race_reaches_goal_inclusively():
    comp = _competition(
        "race",
        {"a": {"2026-03-16": 4.0, "2026-03-17": 6.0}, "b": {"2026-03-16": 9.99}},
        goal=10.0,
    )
    results = score_competition(comp, date(2026, 3, 17), 0)
    assert results["a"].score == 10.0
    assert results["a"].reached_target is True
    assert results["b"].reached_target is False
    assert end_condition_met(comp, date(2026, 3, 17), 0) == "goal_reached"


def test_streak_resets_after_a_miss():
    comp = _competition(
        "streaks",
        {"a": {"2026-03-16": 1.0, "2026-03-18": 1.5, "2026-03-19": 1.0}},
    )
    assert _scores(comp, date(2026, 3, 20)) == {"a": 2.0}


def test_streak_counts_today_only_once_met():
    comp = _competition("streaks", {"a": {"2026-03-16": 1.0, "2026-03-17": 1.0}})
    assert _scores(comp, date(2026, 3, 17)) == {"a": 2.0}
    comp["users"][0]["intervals"]["2026-03-17"] = 0.4
    assert _scores(comp, date(2026, 3, 17)) == {"a": 1.0}


def test_apex_sums_the_competition_window():
    comp = _competition(
        "apex",
        {"a": {"2026-03-15": 50.0, "2026-03-16": 2.5, "2026-03-17": 3.0}},
        duration_hours=72,
    )
    comp["end_date"] = "2026-03-19"
    # Distance before start_date does not count, today's open interval does
    assert _scores(comp, date(2026, 3, 17)) == {"a": 5.5}


def test_targets_counts_intervals_meeting_goal():
    comp = _competition(
        "targets",
        {"a": {"2026-03-16": 3.0, "2026-03-17": 1.0, "2026-03-18": 2.0}},
        goal=2.0,
    )
    assert _scores(comp, date(2026, 3, 18)) == {"a": 2.0}


def test_duration_elapsed_ends_any_variant():
    comp = _competition("apex", {"a": {}, "b": {}})
    comp["end_date"] = "2026-03-18"
    assert end_condition_met(comp, date(2026, 3, 17), 0) is None
    assert end_condition_met(comp, date(2026, 3, 18), 0) == "duration_elapsed"


def test_last_survivor_ends_streaks_with_lives():
    comp = _competition(
        "streaks",
        {"a": {"2026-03-16": 1.2}, "b": {"2026-03-16": 1.0, "2026-03-17": 1.0}},
        first_to=1,
    )
    assert end_condition_met(comp, date(2026, 3, 17), 0) is None
    assert end_condition_met(comp, date(2026, 3, 18), 0) == "last_survivor"


def test_server_score_is_comparable_when_present():
    comp = _competition("apex", {"a": {"2026-03-16": 2.0}})
    comp["users"][0]["score"] = 7.0
    result = score_competition(comp, date(2026, 3, 16), 0)["a"]
    assert result.score == 2.0
    assert result.comparable == 7.0


def test_unknown_type_has_no_strategy():
    with pytest.raises(ValueError):
        strategy_for("marathon")
