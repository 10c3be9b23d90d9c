from datetime import datetime, timedelta, timezone

import pytest

from quest_engine.core.errors import ConflictError
from quest_engine.models.challenge import ChallengeInstance
from quest_engine.models.quest import QuestCategory

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def test_start_creates_active_instance_at_day_zero(services):
    instance, emitted = services.challenges.start_challenge(
        user_id="alice", persona="Vibe Seeker", stage="validation", group_id="g1", now=T0
    )

    assert instance.status == "active"
    assert instance.current_day == 0
    assert instance.total_points == 0
    assert instance.current_stage == 1
    assert instance.group_id == "g1"
    assert instance.challenge_start_date == T0
    assert [e["type"] for e in emitted] == ["challenge.started"]


def test_start_supersedes_previous_active_instance(services):
    first, _ = services.challenges.start_challenge(user_id="alice", now=T0)
    second, emitted = services.challenges.start_challenge(user_id="alice", now=T0 + timedelta(days=2))

    assert services.store.get_instance(first.id).status == "completed"
    assert services.store.get_active_instance("alice").id == second.id
    assert emitted[0]["type"] == "challenge.superseded"
    assert len(services.store.list_instances(user_id="alice", status="active")) == 1


def test_restart_is_one_way(services):
    instance, _ = services.challenges.start_challenge(user_id="alice", now=T0)

    closed, emitted = services.challenges.restart_challenge(user_id="alice")
    assert closed == 1
    assert emitted[0]["type"] == "challenge.restarted"
    assert services.store.get_instance(instance.id).status == "completed"
    assert services.store.get_active_instance("alice") is None

    closed_again, emitted_again = services.challenges.restart_challenge(user_id="alice")
    assert closed_again == 0
    assert emitted_again == []


def test_store_refuses_second_active_instance(store):
    store.create_instance(ChallengeInstance(id="a", user_id="alice", challenge_start_date=T0, last_active_date=T0))

    with pytest.raises(ConflictError):
        store.create_instance(ChallengeInstance(id="b", user_id="alice", challenge_start_date=T0, last_active_date=T0))


def test_three_idle_days_advance_three_days(services, notifier):
    services.challenges.start_challenge(user_id="alice", now=T0)
    services.challenges.load_active("alice", T0 + timedelta(days=1))
    notifier.sent.clear()

    loaded = services.challenges.load_active("alice", T0 + timedelta(days=4))

    assert loaded.instance.current_day == 4
    assert loaded.days_advanced == 3
    assert notifier.tags() == ["day-2", "day-3", "day-4"]
    assert [e["payload"]["day"] for e in loaded.emitted] == [2, 3, 4]
    assert notifier.sent[0].title == "Day 2 Unlocked!"


def test_same_day_load_does_not_advance(services, notifier):
    services.challenges.start_challenge(user_id="alice", now=T0)

    loaded = services.challenges.load_active("alice", T0 + timedelta(hours=14))

    assert loaded.instance.current_day == 0
    assert loaded.days_advanced == 0
    assert notifier.sent == []


def test_advance_is_midnight_normalized(services):
    late = datetime(2024, 1, 1, 23, 50, tzinfo=timezone.utc)
    services.challenges.start_challenge(user_id="alice", now=late)

    loaded = services.challenges.load_active("alice", late + timedelta(minutes=20))

    assert loaded.instance.current_day == 1


def test_advance_uses_callers_timezone(services):
    eastern = timezone(timedelta(hours=-5))
    start = datetime(2024, 1, 1, 18, 0, tzinfo=eastern)
    services.challenges.start_challenge(user_id="alice", now=start)

    # Past UTC midnight but still Jan 1 in the caller's zone
    loaded = services.challenges.load_active("alice", datetime(2024, 1, 1, 22, 0, tzinfo=eastern))

    assert loaded.instance.current_day == 0


def test_day_is_capped_at_seven(services, notifier):
    services.challenges.start_challenge(user_id="alice", now=T0)

    loaded = services.challenges.load_active("alice", T0 + timedelta(days=10))
    assert loaded.instance.current_day == 7
    assert notifier.tags() == [f"day-{d}" for d in range(1, 8)]

    again = services.challenges.load_active("alice", T0 + timedelta(days=12))
    assert again.instance.current_day == 7
    assert again.emitted == []
    assert len(notifier.sent) == 7


def test_current_day_never_decreases(services):
    services.challenges.start_challenge(user_id="alice", now=T0)
    services.challenges.load_active("alice", T0 + timedelta(days=3))

    # A clock that goes backwards does nothing
    loaded = services.challenges.load_active("alice", T0 + timedelta(days=1))

    assert loaded.instance.current_day == 3


def test_load_active_without_challenge_returns_none(services):
    assert services.challenges.load_active("nobody", T0) is None


def test_streak_break_resets_on_load(services):
    services.challenges.start_challenge(user_id="alice", now=T0)
    services.challenges.load_active("alice", T0 + timedelta(days=1))
    instance = services.store.get_active_instance("alice")
    services.completions.attempt_completion(
        instance, services.catalog.get("recognise_journal"), "note", T0 + timedelta(days=1)
    )
    assert services.store.get_active_instance("alice").streak_days == 1

    # Yesterday's activity keeps the streak alive
    kept = services.challenges.load_active("alice", T0 + timedelta(days=2))
    assert not kept.streak_broken
    assert kept.instance.streak_days == 1

    broken = services.challenges.load_active("alice", T0 + timedelta(days=4))
    assert broken.streak_broken
    assert broken.instance.streak_days == 0
    assert broken.instance.longest_streak == 1


def test_visible_quests_flags_locks_and_today(services):
    services.challenges.start_challenge(user_id="alice", now=T0)
    instance = services.store.get_active_instance("alice")
    services.completions.attempt_completion(instance, services.catalog.get("bonus_share_story"), "story", T0)

    views = services.challenges.visible_quests(services.store.get_active_instance("alice"), T0)

    daily = {v.quest_id: v for v in views[QuestCategory.DAILY]}
    assert daily["recognise_journal"].locked
    assert daily["recognise_journal"].lock_reason == "day_zero_locked"

    flow = {v.quest_id: v for v in views[QuestCategory.FLOW_FINDER]}
    assert flow["flow_finder_persona"].lock_reason == "prerequisite_not_met"
    assert "flow_finder_integration" not in flow

    bonus = {v.quest_id: v for v in views[QuestCategory.BONUS]}
    assert bonus["bonus_share_story"].completed_today
    assert bonus["bonus_share_story"].ever_completed
    assert not bonus["bonus_first_sale"].completed_today
