import itertools
import json
from datetime import timedelta

import pytest

from fakes import T0, join_request, save_profile
from queuing.services.profiles import ProfileReader
from queuing.services.publisher import OutboxRelay, RedisEventPublisher
from queuing.services.scheduler import JOB_ID, CyclePhase, MatchingScheduler


def _scheduler(store, index, session_factory, fake_redis, **overrides):
    options = {
        "batch_size": 50,
        "min_score": 0.4,
        "gender_priority": ["WOMAN", "NONBINARY", "MAN"],
        "soft_deadline_seconds": 60,
        "interval_seconds": 3600,
        "algorithm_version": "test_v1",
    }
    options.update(overrides)
    relay = OutboxRelay(store, RedisEventPublisher(fake_redis, channel="matches"))
    return MatchingScheduler(store, index, ProfileReader(session_factory, cache_ttl_seconds=0), relay, **options)


@pytest.fixture
def scheduler(store, index, session_factory, fake_redis):
    return _scheduler(store, index, session_factory, fake_redis)


def _matched_pairs(report):
    return {frozenset((e.user1_id, e.user2_id)) for e in report.matches}


def test_scenario_a_matched_within_one_cycle(manager, scheduler, session_factory, store, fake_redis):
    save_profile(session_factory, "u", prefs={"preferred_min_age": 24, "preferred_max_age": 35, "preferred_genders": ["MAN"]})
    save_profile(session_factory, "v", prefs={"preferred_min_age": 25, "preferred_max_age": 35, "preferred_genders": ["WOMAN"]})
    manager.join(join_request("u", gender="WOMAN", age=28, latitude=40.7128, longitude=-74.0060, interests=[]), now=T0)
    manager.join(join_request("v", gender="MAN", age=26, latitude=40.7578, longitude=-73.9855, interests=[]), now=T0)

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert _matched_pairs(report) == {frozenset({"u", "v"})}
    assert report.matches[0].score > 0.4
    assert manager.status("u", now=T0).in_queue is False
    assert manager.status("v", now=T0).in_queue is False
    assert manager.index.count() == 0

    attempts = store.list_match_attempts(user_id="u")
    assert len(attempts) == 1
    assert attempts[0]["algorithm_version"] == "test_v1"

    assert report.published == 1
    channel, message = fake_redis.published[0]
    assert channel == "matches"
    payload = json.loads(message)
    assert {payload["user1Id"], payload["user2Id"]} == {"u", "v"}
    assert payload["matchId"] == attempts[0]["id"]
    assert store.fetch_pending_events() == []


def test_gender_gate_blocks_otherwise_ideal_pair(manager, scheduler, session_factory, store):
    # Same place, same age, shared language and interests, but "u" only seeks women.
    save_profile(
        session_factory,
        "u",
        prefs={"preferred_genders": ["WOMAN"], "preferred_interests": ["hiking"]},
        profile={"relationship_intents": ["LONG_TERM"], "is_premium": True},
    )
    save_profile(
        session_factory,
        "v",
        prefs={"preferred_genders": ["WOMAN"], "preferred_interests": ["hiking"]},
        profile={"relationship_intents": ["LONG_TERM"], "is_premium": True},
    )
    manager.join(join_request("u", gender="WOMAN", interests=["hiking"]), now=T0)
    manager.join(join_request("v", gender="MAN", interests=["hiking"]), now=T0)

    for i in range(3):
        report = scheduler.run_cycle(now=T0 + timedelta(seconds=5 * (i + 1)))
        assert report.matches == []

    assert store.list_match_attempts() == []
    assert manager.status("u", now=T0 + timedelta(seconds=20)).in_queue is True
    assert manager.status("v", now=T0 + timedelta(seconds=20)).in_queue is True


def test_no_user_is_matched_twice(manager, scheduler, store):
    manager.join(join_request("a", gender="WOMAN"), now=T0)
    manager.join(join_request("b", gender="MAN"), now=T0 + timedelta(seconds=1))
    manager.join(join_request("c", gender="MAN"), now=T0 + timedelta(seconds=2))

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert _matched_pairs(report) == {frozenset({"a", "b"})}
    assert report.scanned == 2
    assert store.get_waiting("c").attempts == 1
    assert manager.status("c", now=T0).in_queue is True

    second = scheduler.run_cycle(now=T0 + timedelta(seconds=10))
    assert second.matches == []
    assert store.get_waiting("c").attempts == 2


def test_different_intents_are_never_paired(manager, scheduler):
    manager.join(join_request("a", gender="WOMAN", intent="SERIOUS"), now=T0)
    manager.join(join_request("b", gender="MAN", intent="CASUAL"), now=T0)

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert report.matches == []
    assert report.scanned == 2


def test_scenario_b_no_shared_language_never_matched(manager, scheduler, store):
    manager.join(join_request("a", gender="WOMAN", languages=["en"]), now=T0)
    manager.join(join_request("b", gender="MAN", languages=["fr"]), now=T0)

    for i in range(3):
        assert scheduler.run_cycle(now=T0 + timedelta(seconds=5 * (i + 1))).matches == []

    assert store.get_waiting("a").attempts == 3
    assert store.list_match_attempts() == []


def test_scenario_c_leave_before_cycle(manager, scheduler, store):
    manager.join(join_request("a", gender="WOMAN"), now=T0)
    manager.join(join_request("b", gender="MAN"), now=T0)
    manager.leave("a")

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert report.matches == []
    assert manager.status("a", now=T0).in_queue is False
    assert store.list_match_attempts(user_id="a") == []


@pytest.mark.parametrize(
    "policy,expected",
    [
        (["WOMAN", "NONBINARY", "MAN"], {"w", "m1"}),
        (["MAN", "WOMAN"], {"m1", "m2"}),
    ],
)
def test_gender_priority_policy_decides_scan_order(manager, store, index, session_factory, fake_redis, policy, expected):
    manager.join(join_request("m1", gender="MAN"), now=T0)
    manager.join(join_request("m2", gender="MAN"), now=T0 + timedelta(seconds=1))
    manager.join(join_request("w", gender="WOMAN"), now=T0 + timedelta(seconds=2))
    scheduler = _scheduler(store, index, session_factory, fake_redis, gender_priority=policy)

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert _matched_pairs(report) == {frozenset(expected)}


def test_crash_between_store_commit_and_index_removal_self_heals(manager, scheduler, store, index, fake_redis):
    manager.join(join_request("a", gender="WOMAN"), now=T0)
    manager.join(join_request("b", gender="MAN"), now=T0)
    fake_redis.fail.add("zrem")

    first = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert _matched_pairs(first) == {frozenset({"a", "b"})}
    assert index.contains("a") and index.contains("b")
    assert first.errors >= 1

    fake_redis.fail.clear()
    second = scheduler.run_cycle(now=T0 + timedelta(seconds=10))

    assert second.matches == []
    assert second.stale_removed == 2
    assert index.count() == 0
    assert len(store.list_match_attempts()) == 1


def test_sweep_readds_waiting_users_missing_from_index(manager, scheduler, index):
    manager.join(join_request("a", gender="WOMAN", languages=["en"]), now=T0)
    manager.join(join_request("b", gender="MAN", languages=["de"]), now=T0)
    index.remove("b")

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert report.reconciled_added == 1
    assert index.score("b") == T0.timestamp()


def test_expired_entries_are_swept(manager, scheduler, store, index):
    manager.join(join_request("a", gender="WOMAN"), now=T0)
    manager.join(join_request("b", gender="MAN"), now=T0)

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=601))

    assert report.matches == []
    assert report.expired == 2
    assert index.count() == 0
    assert store.list_waiting() == {}
    for uid in ("a", "b"):
        status = manager.status(uid, now=T0 + timedelta(seconds=602))
        assert status.in_queue is False
        assert status.position is None


def test_overlapping_tick_is_skipped(manager, store, index, session_factory, fake_redis):
    manager.join(join_request("a", gender="WOMAN"), now=T0)
    manager.join(join_request("b", gender="MAN"), now=T0)
    nested = []
    phases = []

    class _ReentrantRelay:
        def drain(self, limit=100):
            phases.append(scheduler.phase)
            nested.append(scheduler.run_cycle(now=T0 + timedelta(seconds=6)))
            return {"processed": 0, "sent": 0, "failed": 0}

    scheduler = _scheduler(store, index, session_factory, fake_redis)
    scheduler.relay = _ReentrantRelay()

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert len(report.matches) == 1
    assert nested[0].skipped is True
    assert nested[0].matches == []
    assert scheduler.skipped_ticks == 1
    assert phases == [CyclePhase.PUBLISHING]
    assert scheduler.phase == CyclePhase.IDLE


def test_soft_deadline_aborts_scan_but_still_sweeps(manager, store, index, session_factory, fake_redis):
    manager.join(join_request("a", gender="WOMAN"), now=T0)
    manager.join(join_request("b", gender="MAN"), now=T0)
    manager.join(join_request("old", gender="MAN"), now=T0 - timedelta(seconds=700))
    ticks = itertools.chain([0.0], itertools.repeat(1000.0))
    scheduler = _scheduler(store, index, session_factory, fake_redis, clock=lambda: next(ticks))

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert report.deadline_hit is True
    assert report.scanned == 0
    assert report.matches == []
    assert report.expired == 1
    assert store.get_waiting("a") is not None


def test_per_user_failure_keeps_user_waiting(manager, scheduler, store, monkeypatch):
    manager.join(join_request("a", gender="WOMAN"), now=T0)
    manager.join(join_request("b", gender="MAN"), now=T0)

    def _boom(*args, **kwargs):
        raise RuntimeError("scoring backend exploded")

    monkeypatch.setattr(store, "commit_match", _boom)

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert report.errors >= 1
    assert report.matches == []
    assert store.get_waiting("a") is not None
    assert store.get_waiting("b") is not None


def test_batch_size_limits_selection_to_oldest(manager, store, index, session_factory, fake_redis):
    manager.join(join_request("a", gender="WOMAN"), now=T0)
    manager.join(join_request("b", gender="MAN"), now=T0 + timedelta(seconds=1))
    manager.join(join_request("c", gender="MAN"), now=T0 + timedelta(seconds=2))
    scheduler = _scheduler(store, index, session_factory, fake_redis, batch_size=1)

    report = scheduler.run_cycle(now=T0 + timedelta(seconds=5))

    assert report.selected == 1
    assert report.matches == []


def test_background_job_lifecycle(scheduler):
    scheduler.start()
    try:
        assert scheduler.running
        job = scheduler._background.get_job(JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
    finally:
        scheduler.shutdown()
    assert not scheduler.running
