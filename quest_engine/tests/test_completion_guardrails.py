import json
from datetime import datetime, timedelta, timezone

import pytest

from quest_engine.core.errors import CollaboratorError, StaleInstanceError, StoreError
from quest_engine.features.catalog.loader import parse_catalog
from quest_engine.features.engine import build_services
from quest_engine.features.ledger.store import InMemoryChallengeStore
from quest_engine.features.notifications.service import RecordingNotifier
from quest_engine.models.completion import RejectionReason
from quest_engine.models.quest import Pillar

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)  # Monday, day 0
D1 = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)  # day 1


def _active(services, user_id="alice"):
    return services.store.get_active_instance(user_id)


def _on_day_one(services, user_id="alice", **kwargs):
    services.challenges.start_challenge(user_id=user_id, now=T0, **kwargs)
    return services.challenges.load_active(user_id, D1 - timedelta(hours=1)).instance


def _complete(services, quest_id, raw_input=None, now=D1, user_id="alice"):
    quest = services.catalog.get(quest_id)
    return services.completions.attempt_completion(_active(services, user_id), quest, raw_input, now)


def test_same_quest_twice_in_one_local_day_is_rejected(services):
    _on_day_one(services)

    first = _complete(services, "recognise_journal", "Noticed I rush mornings", D1)
    second = _complete(services, "recognise_journal", "Another note", D1.replace(hour=18))

    assert first.accepted
    assert not second.accepted
    assert second.reason == RejectionReason.ALREADY_COMPLETED_TODAY
    entries = services.store.list_completions(user_id="alice", quest_id="recognise_journal")
    assert len(entries) == 1


def test_same_quest_next_local_day_is_accepted(services):
    _on_day_one(services)

    assert _complete(services, "recognise_journal", "day one", D1).accepted
    assert _complete(services, "recognise_journal", "day two", D1 + timedelta(days=1)).accepted


def test_local_day_follows_callers_timezone(services):
    _on_day_one(services)
    eastern = timezone(timedelta(hours=-5))

    # 23:30 and 00:30 local are different days even though UTC sees one day
    late = datetime(2024, 1, 2, 23, 30, tzinfo=eastern)
    early = datetime(2024, 1, 3, 0, 30, tzinfo=eastern)

    assert _complete(services, "recognise_journal", "late", late).accepted
    assert _complete(services, "recognise_journal", "early", early).accepted


def test_max_per_day_allows_multiple_slots(services):
    _on_day_one(services)
    payload = {"project_id": "proj-1", "direction": "north"}

    results = [_complete(services, "rewire_flow_log", payload, D1 + timedelta(minutes=i)) for i in range(3)]

    assert [r.accepted for r in results] == [True, True, False]
    assert results[2].reason == RejectionReason.ALREADY_COMPLETED_TODAY


def test_milestone_is_rejected_forever_even_after_restart(services):
    services.challenges.start_challenge(user_id="alice", now=T0)

    assert _complete(services, "bonus_first_sale", {"evidence_text": "Sold one!"}, T0).accepted
    again = _complete(services, "bonus_first_sale", {"evidence_text": "Again"}, T0 + timedelta(days=3))
    assert again.reason == RejectionReason.ALREADY_COMPLETED_LIFETIME

    services.challenges.start_challenge(user_id="alice", now=T0 + timedelta(days=10))
    after_restart = _complete(services, "bonus_first_sale", {"evidence_text": "New run"}, T0 + timedelta(days=10))
    assert after_restart.reason == RejectionReason.ALREADY_COMPLETED_LIFETIME


def test_completion_limit_per_instance(services):
    _on_day_one(services)

    assert _complete(services, "recognise_weekly_review", "week review", D1).accepted
    capped = _complete(services, "recognise_weekly_review", "again", D1 + timedelta(days=1))

    assert capped.reason == RejectionReason.COMPLETION_LIMIT_REACHED


def test_daily_quests_locked_on_day_zero(services):
    services.challenges.start_challenge(user_id="alice", now=T0)

    result = _complete(services, "recognise_journal", "too early", T0)

    assert result.reason == RejectionReason.DAY_ZERO_LOCKED
    # Other categories are open on day zero
    assert _complete(services, "bonus_share_story", "My story", T0).accepted


def test_prerequisite_quest_must_be_completed_first(services):
    services.challenges.start_challenge(user_id="alice", now=T0)

    blocked = _complete(services, "flow_finder_persona", None, T0)
    assert blocked.reason == RejectionReason.PREREQUISITE_NOT_MET

    assert _complete(services, "flow_finder_skills", None, T0).accepted
    assert _complete(services, "flow_finder_persona", None, T0).accepted


def test_feature_gate_opens_when_flow_is_completed(services):
    _on_day_one(services)

    gated = _complete(services, "release_daily_challenge", None, D1)
    assert gated.reason == RejectionReason.FEATURE_GATE_NOT_MET

    assert services.completions.complete_flow_quest("alice", "healing_compass", D1) is None
    assert _complete(services, "release_daily_challenge", None, D1).accepted


@pytest.mark.parametrize(
    "quest_id,raw_input",
    [
        ("recognise_journal", None),
        ("recognise_journal", "   "),
        ("recognise_journal", "<p></p>"),
        ("rewire_affirmation", "Not one of the options"),
        ("reconnect_conversation", "just text"),
        ("release_groan", None),
    ],
)
def test_missing_or_invalid_input_rejected(services, quest_id, raw_input):
    _on_day_one(services)

    result = _complete(services, quest_id, raw_input, D1)

    assert result.reason == RejectionReason.INPUT_MISSING


def test_rejection_order_first_failure_wins(services):
    _on_day_one(services)

    # Day-zero lock beats the feature gate
    services.challenges.start_challenge(user_id="bob", now=T0)
    assert _complete(services, "release_daily_challenge", None, T0, user_id="bob").reason == RejectionReason.DAY_ZERO_LOCKED

    # Input validation beats the duplicate check
    assert _complete(services, "recognise_journal", "first", D1).accepted
    assert _complete(services, "recognise_journal", "", D1).reason == RejectionReason.INPUT_MISSING


def test_prerequisite_beats_input_validation():
    catalog = parse_catalog(
        {
            "quests": [
                {"id": "intro", "category": "Tracker", "points": 5},
                {"id": "reflect", "category": "Tracker", "points": 5, "input_kind": "text", "requires_quest": "intro"},
            ]
        }
    )
    services = build_services(store=InMemoryChallengeStore(), catalog=catalog, notifier=RecordingNotifier())
    services.challenges.start_challenge(user_id="alice", now=T0)

    result = _complete(services, "reflect", "", T0)

    assert result.reason == RejectionReason.PREREQUISITE_NOT_MET


def test_subflow_failure_stops_before_ledger_write(services):
    _on_day_one(services)

    with pytest.raises(CollaboratorError) as exc:
        _complete(services, "reconnect_conversation", {"person_type": "founder"}, D1)

    assert "conversation_summary" in exc.value.message
    assert exc.value.already_completed is False
    assert services.store.list_completions(user_id="alice") == []
    assert _active(services).total_points == 0


def test_flow_compass_requires_project(services):
    _on_day_one(services)

    with pytest.raises(CollaboratorError) as exc:
        _complete(services, "tracker_flow_compass", {"direction": "east"}, D1)

    assert exc.value.message == "Please set up your Flow Compass first"


def test_milestone_writer_reports_already_completed(services):
    services.challenges.start_challenge(user_id="alice", stage=2, now=T0)
    services.store.mark_feature_complete("alice", "milestone:bonus_landing_page")

    with pytest.raises(CollaboratorError) as exc:
        _complete(services, "bonus_landing_page", None, T0)

    assert exc.value.already_completed is True
    assert services.store.list_completions(user_id="alice") == []


def test_subflow_payload_is_stored_as_json(services):
    _on_day_one(services)

    result = _complete(
        services,
        "reconnect_conversation",
        {"person_type": "customer", "conversation_summary": "They want faster onboarding"},
        D1,
    )

    stored = json.loads(result.completion.payload)
    assert stored["person_type"] == "customer"
    assert stored["conversations_logged"] == 1
    assert len(services.journal.for_user("conversation_log", "alice")) == 1


def test_text_input_is_sanitized(services):
    _on_day_one(services)

    result = _complete(services, "recognise_journal", "  <b>Noticed</b> a   <script>pattern</script> ", D1)

    assert result.completion.payload == "Noticed a pattern"


def test_accepted_completion_updates_points_and_pillar_counters(services):
    _on_day_one(services)

    _complete(services, "recognise_journal", "daily note", D1)
    _complete(services, "recognise_weekly_review", "weekly note", D1)
    instance = _active(services)

    assert instance.total_points == 15
    assert instance.daily_points[Pillar.RECOGNISE] == 5
    assert instance.weekly_points[Pillar.RECOGNISE] == 10
    assert instance.last_active_date == D1


def test_completion_copies_definition_at_acceptance(services):
    _on_day_one(services)

    result = _complete(services, "recognise_journal", "note", D1)
    completion = result.completion

    assert completion.points_earned == 5
    assert completion.category.value == "Daily"
    assert completion.pillar == Pillar.RECOGNISE
    assert completion.challenge_day == 1
    assert completion.completed_at == D1


def test_stale_instance_write_conflicts(services):
    stale = _on_day_one(services)

    assert _complete(services, "recognise_journal", "fresh", D1).accepted
    with pytest.raises(StaleInstanceError):
        services.completions.attempt_completion(stale, services.catalog.get("reconnect_gratitude"), "thanks", D1)

    assert len(services.store.list_completions(user_id="alice")) == 1


def test_flow_completion_records_linked_quest(services):
    services.challenges.start_challenge(user_id="alice", now=T0)

    result = services.completions.complete_flow_quest("alice", "skills", T0)

    assert result.accepted
    assert result.completion.quest_id == "flow_finder_skills"
    assert services.store.is_feature_complete("alice", "skills")
    repeat = services.completions.complete_flow_quest("alice", "skills", T0 + timedelta(days=1))
    assert repeat.reason == RejectionReason.COMPLETION_LIMIT_REACHED


def test_flow_completion_without_active_challenge_only_records_flag(services):
    assert services.completions.complete_flow_quest("alice", "skills", T0) is None
    assert services.store.is_feature_complete("alice", "skills")


def test_streak_grows_on_first_completion_of_each_day(services):
    _on_day_one(services)

    _complete(services, "recognise_journal", "one", D1)
    _complete(services, "reconnect_gratitude", "two", D1.replace(hour=12))
    assert _active(services).streak_days == 1

    _complete(services, "recognise_journal", "three", D1 + timedelta(days=1))
    instance = _active(services)
    assert instance.streak_days == 2
    assert instance.longest_streak == 2


def test_milestone_retry_after_stale_commit_is_accepted(services):
    services.challenges.start_challenge(user_id="alice", now=T0)
    stale = _active(services)
    assert _complete(services, "bonus_share_story", "My story", T0).accepted

    with pytest.raises(StaleInstanceError):
        services.completions.attempt_completion(
            stale, services.catalog.get("bonus_first_sale"), {"evidence_text": "Sold one!"}, T0
        )
    assert services.store.list_completions(quest_id="bonus_first_sale") == []
    assert not services.store.is_feature_complete("alice", "milestone:bonus_first_sale")
    assert services.journal.for_user("milestone", "alice") == []

    retry = _complete(services, "bonus_first_sale", {"evidence_text": "Sold one!"}, T0)

    assert retry.accepted
    assert services.store.is_feature_complete("alice", "milestone:bonus_first_sale")
    assert len(services.journal.for_user("milestone", "alice")) == 1


def test_milestone_retry_after_store_failure_is_accepted(services, monkeypatch):
    services.challenges.start_challenge(user_id="alice", now=T0)
    real_commit = services.store.commit_completion

    def failing_commit(*args, **kwargs):
        raise StoreError("database went away")

    monkeypatch.setattr(services.store, "commit_completion", failing_commit)
    with pytest.raises(StoreError):
        _complete(services, "bonus_first_sale", {"evidence_text": "Sold one!"}, T0)

    monkeypatch.setattr(services.store, "commit_completion", real_commit)
    assert _complete(services, "bonus_first_sale", {"evidence_text": "Sold one!"}, T0).accepted


def test_milestones_sharing_a_type_are_tracked_per_quest():
    quests = [
        {"id": "bonus_first_sale", "name": "First Sale", "category": "Bonus", "points": 50,
         "input_kind": "milestone", "milestone_type": "first_sale"},
        {"id": "bonus_first_sale_repeat", "name": "First Sale Again", "category": "Bonus", "points": 10,
         "input_kind": "milestone", "milestone_type": "first_sale"},
    ]
    services = build_services(
        store=InMemoryChallengeStore(),
        catalog=parse_catalog({"quests": quests, "artifacts": []}),
        notifier=RecordingNotifier(),
    )
    services.challenges.start_challenge(user_id="alice", now=T0)

    assert _complete(services, "bonus_first_sale", {"evidence_text": "one"}, T0).accepted
    assert _complete(services, "bonus_first_sale_repeat", {"evidence_text": "two"}, T0).accepted

    again = _complete(services, "bonus_first_sale", {"evidence_text": "three"}, T0 + timedelta(days=1))
    assert again.reason == RejectionReason.ALREADY_COMPLETED_LIFETIME
