from streak_core import DisplayedCompetition, reconcile
from streak_core.reconcile import mark_flex_sent, mark_nudge_sent


def _snapshot(status="active", score=0.0):
    return {
        "competition_id": "c1",
        "status": status,
        "users": [{"user_id": "alice", "invite_status": "accepted", "score": score}],
    }


def test_fetch_replaces_displayed_in_full():
    shown = reconcile(None, _snapshot(score=1.0), fetch_generation=1)
    shown = mark_nudge_sent(mark_flex_sent(shown), "bob")
    assert shown.flex_sent_today is True
    assert shown.nudged_today == frozenset({"bob"})

    fetched = _snapshot(score=3.0)
    refreshed = reconcile(shown, fetched, fetch_generation=2)
    assert refreshed.competition is fetched
    assert refreshed.flex_sent_today is False
    assert refreshed.nudged_today == frozenset()


def test_older_fetch_is_discarded():
    newer = reconcile(None, _snapshot(score=5.0), fetch_generation=4)
    result = reconcile(newer, _snapshot(score=1.0), fetch_generation=3)
    assert result is newer


def test_status_regression_still_applies(caplog):
    shown = DisplayedCompetition(competition=_snapshot(status="finished"), fetch_generation=1)
    with caplog.at_level("WARNING"):
        result = reconcile(shown, _snapshot(status="active"), fetch_generation=2)
    assert result.competition["status"] == "active"
    assert "moved back" in caplog.text
