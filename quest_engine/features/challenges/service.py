from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from quest_engine.core.dates import calendar_days_between, ensure_aware, local_day_bounds, utc_iso
from quest_engine.core.logging import log_event
from quest_engine.features.eligibility.service import (
    PersonaNormalizer,
    convert_legacy_stage,
    eligible_quests,
    normalize_persona,
)
from quest_engine.features.notifications.service import Notifier, day_unlocked_message
from quest_engine.features.streaks.service import StreakTracker
from quest_engine.models.challenge import MAX_CHALLENGE_DAY, ChallengeInstance, LoadResult
from quest_engine.models.completion import RejectionReason
from quest_engine.models.progress import QuestView
from quest_engine.models.quest import QuestCatalog, QuestCategory, QuestDefinition


class ChallengeService:
    """Challenge instance lifecycle: start, supersede, lazy day advance, completion updates."""

    def __init__(
        self,
        store,
        catalog: QuestCatalog,
        streaks: StreakTracker,
        notifier: Notifier,
        normalizer: PersonaNormalizer = normalize_persona,
        max_day: int = MAX_CHALLENGE_DAY,
    ):
        self.store = store
        self.catalog = catalog
        self.streaks = streaks
        self.notifier = notifier
        self.normalizer = normalizer
        self.max_day = max_day

    def start_challenge(
        self,
        *,
        user_id: str,
        persona: Optional[str] = None,
        stage: Union[int, str, None] = None,
        group_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[ChallengeInstance, List[dict]]:
        """Supersede any active instance and open a new one at day 0."""
        started_at = ensure_aware(now)
        emitted: List[dict] = []

        superseded = self.store.complete_active_instances(user_id)
        if superseded:
            emitted.append(
                {"type": "challenge.superseded", "payload": {"userId": user_id, "count": superseded}}
            )

        instance = self.store.create_instance(
            ChallengeInstance(
                id=str(uuid.uuid4()),
                user_id=user_id,
                group_id=group_id,
                challenge_start_date=started_at,
                last_active_date=started_at,
                persona=persona,
                current_stage=convert_legacy_stage(stage),
            )
        )
        emitted.append(
            {
                "type": "challenge.started",
                "payload": {
                    "userId": user_id,
                    "challengeInstanceId": instance.id,
                    "startedAt": utc_iso(started_at),
                },
            }
        )
        log_event(
            "info",
            "Challenge started",
            user_id=user_id,
            challenge_instance_id=instance.id,
            event_type="challenge.started",
        )
        return instance, emitted

    def restart_challenge(self, *, user_id: str) -> Tuple[int, List[dict]]:
        """active -> completed for the user's current run. Returns how many were closed."""
        closed = self.store.complete_active_instances(user_id)
        emitted: List[dict] = []
        if closed:
            emitted.append({"type": "challenge.restarted", "payload": {"userId": user_id}})
            log_event("info", "Challenge restarted", user_id=user_id, event_type="challenge.restarted")
        return closed, emitted

    def load_active(self, user_id: str, now: Optional[datetime] = None) -> Optional[LoadResult]:
        """
        Fetch the active instance for a view.

        Runs the streak break check (reloading if it reset the streak) and
        then the lazy day advance, in that order.
        """
        now = ensure_aware(now)
        instance = self.store.get_active_instance(user_id)
        if instance is None:
            return None

        check = self.streaks.check_streak_break(user_id, instance.id, now)
        if check.streak_broken:
            instance = self.store.get_instance(instance.id)

        before = instance.current_day
        instance, emitted = self.advance_if_due(instance, now)
        return LoadResult(
            instance=instance,
            streak_broken=check.streak_broken,
            days_advanced=instance.current_day - before,
            emitted=emitted,
        )

    def advance_if_due(self, instance: ChallengeInstance, now: Optional[datetime] = None) -> Tuple[ChallengeInstance, List[dict]]:
        """
        Move current_day forward by whole calendar days since last activity,
        capped at the final day. Notifies once per newly unlocked day.
        """
        now = ensure_aware(now)
        days = calendar_days_between(instance.last_active_date, now)
        if days < 1 or instance.current_day >= self.max_day:
            return instance, []

        old_day = instance.current_day
        updated = instance.clone()
        updated.current_day = min(old_day + days, self.max_day)
        updated.last_active_date = now
        updated = self.store.update_instance(updated)

        emitted: List[dict] = []
        for day in range(old_day + 1, updated.current_day + 1):
            title, body, tag = day_unlocked_message(day)
            self.notifier.notify(updated.user_id, title, body, tag)
            emitted.append(
                {
                    "type": "challenge.day_unlocked",
                    "payload": {"userId": updated.user_id, "challengeInstanceId": updated.id, "day": day},
                }
            )

        log_event(
            "info",
            f"Challenge advanced from day {old_day} to day {updated.current_day}",
            user_id=updated.user_id,
            challenge_instance_id=updated.id,
            event_type="challenge.day_advanced",
        )
        return updated, emitted

    def apply_completion(self, instance: ChallengeInstance, quest: QuestDefinition, now: datetime) -> List[dict]:
        """
        Completion-driven counter update. Mutates `instance` in place; the
        caller commits it together with the ledger entry.
        """
        instance.total_points += quest.points
        if quest.pillar is not None and quest.category.is_pillar_category:
            counters = instance.daily_points if quest.category == QuestCategory.DAILY else instance.weekly_points
            counters[quest.pillar] = counters.get(quest.pillar, 0) + quest.points
        instance.last_active_date = now
        return self.streaks.record_activity(instance, now)

    def visible_quests(self, instance: ChallengeInstance, now: Optional[datetime] = None) -> Dict[QuestCategory, List[QuestView]]:
        """Eligible quests per category, with lock and completed-today flags for this user."""
        now = ensure_aware(now)
        start, end = local_day_bounds(now)
        instance_completions = self.store.list_completions(challenge_instance_id=instance.id)
        today_counts: Dict[str, int] = {}
        for completion in instance_completions:
            if start <= ensure_aware(completion.completed_at) <= end:
                today_counts[completion.quest_id] = today_counts.get(completion.quest_id, 0) + 1

        views: Dict[QuestCategory, List[QuestView]] = {}
        for category in QuestCategory:
            quests = eligible_quests(self.catalog, category, instance.persona, instance.current_stage, self.normalizer)
            views[category] = [self._view(instance, quest, today_counts) for quest in quests]
        return views

    def _view(self, instance: ChallengeInstance, quest: QuestDefinition, today_counts: Dict[str, int]) -> QuestView:
        lock_reason = None
        if quest.category == QuestCategory.DAILY and instance.current_day == 0:
            lock_reason = RejectionReason.DAY_ZERO_LOCKED.value
        elif quest.requires_quest and not self.store.has_completion(instance.user_id, quest.requires_quest):
            lock_reason = RejectionReason.PREREQUISITE_NOT_MET.value
        elif quest.feature_gate and not self.store.is_feature_complete(instance.user_id, quest.feature_gate):
            lock_reason = RejectionReason.FEATURE_GATE_NOT_MET.value

        return QuestView(
            quest_id=quest.id,
            name=quest.name,
            category=quest.category,
            pillar=quest.pillar,
            points=quest.points,
            input_kind=quest.input_kind.value,
            locked=lock_reason is not None,
            lock_reason=lock_reason,
            completed_today=today_counts.get(quest.id, 0) >= quest.daily_limit,
            ever_completed=self.store.has_completion(instance.user_id, quest.id),
            options=list(quest.options),
        )
