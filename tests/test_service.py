from datetime import date, datetime, timezone

import pytest

from streak_core import (
    CompetitionClient,
    CompetitionServiceError,
    EngineSettings,
    InMemoryCompetitionBackend,
    RefreshTrigger,
    StaticWorkoutProvider,
    TransientBackendError,
    compute_standings,
)


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class _FlakyBackend(InMemoryCompetitionBackend):
    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.accept_request_ids = []

    async def accept_invite(self, competition_id, *, caller_id, request_id):
        self.accept_request_ids.append(request_id)
        if self.failures > 0:
            self.failures -= 1
            raise TransientBackendError("connection reset")
        await super().accept_invite(competition_id, caller_id=caller_id, request_id=request_id)


SETTINGS = EngineSettings(retry_attempts=3, retry_wait_max=0.0)
DAY_ONE = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)


def _setup(backend_cls=InMemoryCompetitionBackend, **backend_kwargs):
    clock = _Clock(DAY_ONE)
    provider = StaticWorkoutProvider()
    backend = backend_cls(workouts=provider, clock=clock, first_weekday=0, **backend_kwargs)
    alice = CompetitionClient(backend, "alice", settings=SETTINGS, clock=clock)
    bob = CompetitionClient(backend, "bob", settings=SETTINGS, clock=clock)
    return clock, provider, backend, alice, bob


async def _streaks_with_bob(alice, bob, *, start=True):
    cid = await alice.create_competition(
        "Morning Miles", "streaks", ["run"], 1.0, "miles", 1, "day"
    )
    await alice.invite_user(cid, "bob")
    await bob.refresh(cid)
    await bob.accept_invite(cid)
    await alice.refresh(cid)
    if start:
        await alice.start_competition(cid)
    return cid


@pytest.mark.asyncio
async def test_streaks_competition_end_to_end():
    clock, provider, backend, alice, bob = _setup()
    cid = await _streaks_with_bob(alice, bob)
    assert alice.displayed(cid).competition["status"] == "active"
    assert alice.displayed(cid).competition["start_date"] == "2026-03-16"

    provider.record("alice", date(2026, 3, 16), 1.2)
    provider.record("bob", date(2026, 3, 16), 1.0)
    provider.record("bob", date(2026, 3, 17), 1.0)
    clock.now = datetime(2026, 3, 18, 9, 0, tzinfo=timezone.utc)

    view = await bob.refresh(cid)
    competition = view.competition
    assert competition["status"] == "finished"
    assert competition["end_date"] == "2026-03-19"

    standings = compute_standings(competition, clock.now, "bob", first_weekday=0)
    assert [r.user_id for r in standings.active] == ["bob"]
    assert [r.user_id for r in standings.eliminated] == ["alice"]
    assert standings.leader.score == 2.0
    assert standings.leader.is_current_user is True
    assert standings.row_for("alice").lives_remaining == 0

    assert [t.placement for t in backend.trophies_for("bob")] == [1]
    assert [t.placement for t in backend.trophies_for("alice")] == [2]


@pytest.mark.asyncio
async def test_second_flex_same_day_is_throttled():
    clock, provider, backend, alice, bob = _setup()
    cid = await _streaks_with_bob(alice, bob)
    provider.record("alice", date(2026, 3, 16), 1.5)
    await alice.refresh(cid)

    view = await alice.send_flex(cid)
    # Refreshed snapshot replaces the optimistic flag
    assert view.flex_sent_today is False
    assert len(backend.dispatcher.events) == 1

    with pytest.raises(CompetitionServiceError) as excinfo:
        await alice.send_flex(cid)
    assert excinfo.value.kind == "already_performed_today"
    assert len(backend.dispatcher.events) == 1


@pytest.mark.asyncio
async def test_flex_before_goal_is_rejected_locally():
    clock, provider, backend, alice, bob = _setup()
    cid = await _streaks_with_bob(alice, bob)
    await alice.refresh(cid)
    with pytest.raises(CompetitionServiceError) as excinfo:
        await alice.send_flex(cid)
    assert excinfo.value.kind == "goal_not_met"
    assert backend.dispatcher.events == []


@pytest.mark.asyncio
async def test_owner_only_action_fails_before_reaching_backend():
    clock, provider, backend, alice, bob = _setup()
    cid = await _streaks_with_bob(alice, bob, start=False)
    await bob.refresh(cid)
    with pytest.raises(CompetitionServiceError) as excinfo:
        await bob.invite_user(cid, "cara")
    assert excinfo.value.kind == "permission_denied"
    view = await alice.refresh(cid)
    assert [u["user_id"] for u in view.competition["users"]] == ["alice", "bob"]


@pytest.mark.asyncio
async def test_start_needs_refreshed_participants():
    clock, provider, backend, alice, bob = _setup()
    cid = await alice.create_competition("Duel", "clash", ["run"], None, "miles", 3, "day")
    with pytest.raises(CompetitionServiceError) as excinfo:
        await alice.start_competition(cid)
    assert excinfo.value.kind == "insufficient_participants"


@pytest.mark.asyncio
async def test_transient_failures_retry_with_same_request_id():
    clock, provider, backend, alice, bob = _setup(_FlakyBackend, failures=2)
    cid = await _streaks_with_bob(alice, bob, start=False)
    assert len(backend.accept_request_ids) == 3
    assert len(set(backend.accept_request_ids)) == 1
    roster = {u["user_id"]: u["invite_status"] for u in bob.displayed(cid).competition["users"]}
    assert roster["bob"] == "accepted"


@pytest.mark.asyncio
async def test_transient_failures_give_up_after_attempts():
    clock, provider, backend, alice, bob = _setup(_FlakyBackend, failures=5)
    cid = await alice.create_competition("Morning Miles", "streaks", ["run"], 1.0, "miles", 1, "day")
    await alice.invite_user(cid, "bob")
    with pytest.raises(TransientBackendError):
        await bob.accept_invite(cid)
    assert len(backend.accept_request_ids) == SETTINGS.retry_attempts


@pytest.mark.asyncio
async def test_backend_replay_of_same_request_is_a_no_op():
    clock, provider, backend, alice, bob = _setup()
    cid = await alice.create_competition("Morning Miles", "streaks", ["run"], 1.0, "miles", 1, "day")
    await alice.invite_user(cid, "bob")
    await backend.accept_invite(cid, caller_id="bob", request_id="req-7")
    version = (await backend.load_competition(cid, caller_id="bob"))["version"]
    await backend.accept_invite(cid, caller_id="bob", request_id="req-7")
    assert (await backend.load_competition(cid, caller_id="bob"))["version"] == version


@pytest.mark.asyncio
async def test_outsiders_and_missing_competitions():
    clock, provider, backend, alice, bob = _setup()
    cid = await alice.create_competition("Solo", "race", ["run", "walk"], 26.2, "miles", 0, None)
    with pytest.raises(CompetitionServiceError) as excinfo:
        await bob.refresh(cid)
    assert excinfo.value.kind == "unauthorized"
    with pytest.raises(CompetitionServiceError) as excinfo:
        await alice.refresh("nope")
    assert excinfo.value.kind == "not_found"


@pytest.mark.asyncio
async def test_invalid_creation_is_rejected():
    clock, provider, backend, alice, bob = _setup()
    with pytest.raises(CompetitionServiceError) as excinfo:
        await alice.create_competition("Apex", "apex", ["run"], None, "miles", 0, "day")
    assert excinfo.value.kind == "invalid_request"
    assert "duration_hours" in str(excinfo.value)


@pytest.mark.asyncio
async def test_delete_removes_competition():
    clock, provider, backend, alice, bob = _setup()
    cid = await _streaks_with_bob(alice, bob, start=False)
    await alice.delete_competition(cid)
    assert alice.displayed(cid) is None
    assert cid not in backend._locks
    with pytest.raises(CompetitionServiceError) as excinfo:
        await alice.refresh(cid)
    assert excinfo.value.kind == "not_found"


@pytest.mark.asyncio
async def test_decline_update_and_nudge():
    clock, provider, backend, alice, bob = _setup()
    cara = CompetitionClient(backend, "cara", settings=SETTINGS, clock=clock)
    cid = await alice.create_competition("Morning Miles", "streaks", ["run"], 1.0, "miles", 2, "day")
    await alice.invite_user(cid, "bob")
    await alice.invite_user(cid, "cara")

    await cara.refresh(cid)
    view = await cara.decline_invite(cid)
    statuses = {u["user_id"]: u["invite_status"] for u in view.competition["users"]}
    assert statuses == {"alice": "accepted", "bob": "pending", "cara": "declined"}

    view = await alice.update_competition(
        cid, {"competition_name": "Evening Miles", "options": {"goal": 2.0}}
    )
    assert view.competition["competition_name"] == "Evening Miles"
    assert view.competition["options"]["goal"] == 2.0

    await bob.refresh(cid)
    await bob.accept_invite(cid)
    await alice.refresh(cid)
    await alice.start_competition(cid)

    provider.record("alice", date(2026, 3, 16), 2.5)
    await alice.refresh(cid)
    await alice.send_nudge(cid, "bob")
    event = backend.dispatcher.events[-1]
    assert (event.kind, event.actor_id, event.target_id) == ("nudge", "alice", "bob")

    with pytest.raises(CompetitionServiceError) as excinfo:
        await alice.send_nudge(cid, "bob")
    assert excinfo.value.kind == "already_performed_today"
    assert len(backend.dispatcher.events) == 1


@pytest.mark.asyncio
async def test_schedule_activates_then_owner_terminates():
    clock, provider, backend, alice, bob = _setup()
    cid = await _streaks_with_bob(alice, bob, start=False)
    view = await alice.schedule_competition(cid, date(2026, 3, 18))
    assert view.competition["status"] == "scheduled"
    assert view.competition["start_date"] == "2026-03-18"

    clock.now = datetime(2026, 3, 18, 8, 0, tzinfo=timezone.utc)
    view = await alice.refresh(cid, RefreshTrigger.PULL_TO_REFRESH)
    assert view.competition["status"] == "active"

    view = await alice.terminate_competition(cid)
    assert view.competition["status"] == "finished"
    assert sorted(t.user_id for t in backend.trophies) == ["alice", "bob"]


@pytest.mark.asyncio
async def test_recorded_intervals_without_provider():
    clock = _Clock(DAY_ONE)
    backend = InMemoryCompetitionBackend(clock=clock, first_weekday=0)
    alice = CompetitionClient(backend, "alice", settings=SETTINGS, clock=clock)
    bob = CompetitionClient(backend, "bob", settings=SETTINGS, clock=clock)
    cid = await _streaks_with_bob(alice, bob)

    backend.record_intervals(cid, "bob", {"2026-03-16": 3.0})
    view = await alice.refresh(cid)
    scores = {u["user_id"]: u["score"] for u in view.competition["users"]}
    assert scores == {"alice": 0.0, "bob": 1.0}


@pytest.mark.asyncio
async def test_start_rechecks_a_stale_roster_before_rejecting():
    clock, provider, backend, alice, bob = _setup()
    cid = await alice.create_competition("Morning Miles", "streaks", ["run"], 1.0, "miles", 1, "day")
    await alice.invite_user(cid, "bob")
    await bob.refresh(cid)
    await bob.accept_invite(cid)
    # alice still shows bob as pending
    roster = {u["user_id"]: u["invite_status"] for u in alice.displayed(cid).competition["users"]}
    assert roster["bob"] == "pending"

    view = await alice.start_competition(cid)
    assert view.competition["status"] == "active"


@pytest.mark.asyncio
async def test_flex_rechecks_goal_after_workout_syncs():
    clock, provider, backend, alice, bob = _setup()
    cid = await _streaks_with_bob(alice, bob)
    await alice.refresh(cid)
    provider.record("alice", date(2026, 3, 16), 1.5)

    await alice.send_flex(cid)
    assert len(backend.dispatcher.events) == 1
    assert backend.dispatcher.events[0].kind == "flex"
