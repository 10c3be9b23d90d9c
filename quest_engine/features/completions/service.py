"""
quest_engine/features/completions/service.py

Quest completion protocol.

Validation order (first failure wins):
1. Locks: day zero, prerequisite quest, feature gate
2. Input for the quest's input kind
3. Duplicates: lifetime for milestones, per local day otherwise, then the
   per-instance completion cap
4. Sub-flow writer (hard stop on failure, before anything is appended)
5. Ledger append + instance update in one store unit of work
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from quest_engine.core.dates import ensure_aware, local_date, local_day_bounds
from quest_engine.core.errors import CollaboratorError
from quest_engine.core.logging import log_event
from quest_engine.features.accounting.service import Accountant
from quest_engine.features.challenges.service import ChallengeService
from quest_engine.features.completions.validators import validate_input
from quest_engine.features.subflows.writers import SubflowRegistry
from quest_engine.models.challenge import ChallengeInstance
from quest_engine.models.completion import AttemptResult, QuestCompletion, RejectionReason
from quest_engine.models.quest import QuestCatalog, QuestCategory, QuestDefinition


def dedup_key(instance: ChallengeInstance, quest: QuestDefinition, now: datetime, slot: int) -> str:
    """
    Insert-if-not-exists key for a completion.

    Milestones are keyed per (user, quest) for life; everything else per
    (instance, quest, local day, slot) so max_per_day slots stay distinct.
    """
    if quest.is_milestone:
        return f"lifetime:{instance.user_id}:{quest.id}"
    return f"daily:{instance.id}:{quest.id}:{local_date(now, now).isoformat()}:{slot}"


class CompletionService:
    def __init__(
        self,
        store,
        catalog: QuestCatalog,
        challenges: ChallengeService,
        accountant: Accountant,
        subflows: SubflowRegistry,
    ):
        self.store = store
        self.catalog = catalog
        self.challenges = challenges
        self.accountant = accountant
        self.subflows = subflows

    def _reject(self, instance: ChallengeInstance, quest: QuestDefinition, reason: RejectionReason) -> AttemptResult:
        log_event(
            "info",
            f"Quest completion rejected: {reason.value}",
            user_id=instance.user_id,
            challenge_instance_id=instance.id,
            quest_id=quest.id,
            event_type="completion.rejected",
            error_code=reason.value,
        )
        return AttemptResult.rejected(reason)

    def _lock_reason(self, instance: ChallengeInstance, quest: QuestDefinition) -> Optional[RejectionReason]:
        if quest.category == QuestCategory.DAILY and instance.current_day == 0:
            return RejectionReason.DAY_ZERO_LOCKED
        if quest.requires_quest and not self.store.has_completion(instance.user_id, quest.requires_quest):
            return RejectionReason.PREREQUISITE_NOT_MET
        if quest.feature_gate and not self.store.is_feature_complete(instance.user_id, quest.feature_gate):
            return RejectionReason.FEATURE_GATE_NOT_MET
        return None

    def attempt_completion(
        self,
        instance: ChallengeInstance,
        quest: QuestDefinition,
        raw_input: Any = None,
        now: Optional[datetime] = None,
    ) -> AttemptResult:
        """
        Validate and record one quest completion.

        Returns:
            AttemptResult, accepted or rejected with a RejectionReason

        Raises:
            CollaboratorError if the quest's sub-flow writer fails
            StaleInstanceError if the instance changed since it was read
            StoreError if persistence fails
        """
        now = ensure_aware(now)

        reason = self._lock_reason(instance, quest)
        if reason:
            return self._reject(instance, quest, reason)

        ok, normalized = validate_input(quest, raw_input)
        if not ok:
            return self._reject(instance, quest, RejectionReason.INPUT_MISSING)

        slot = 0
        if quest.is_milestone:
            if self.store.has_completion(instance.user_id, quest.id):
                return self._reject(instance, quest, RejectionReason.ALREADY_COMPLETED_LIFETIME)
        else:
            start, end = local_day_bounds(now)
            today = self.store.list_completions(
                user_id=instance.user_id,
                challenge_instance_id=instance.id,
                quest_id=quest.id,
                start=start,
                end=end,
            )
            if len(today) >= quest.daily_limit:
                return self._reject(instance, quest, RejectionReason.ALREADY_COMPLETED_TODAY)
            slot = len(today)

        if quest.max_completions is not None:
            held = self.store.list_completions(challenge_instance_id=instance.id, quest_id=quest.id)
            if len(held) >= quest.max_completions:
                return self._reject(instance, quest, RejectionReason.COMPLETION_LIMIT_REACHED)

        payload = normalized
        on_commit = None
        writer = self.subflows.writer_for(quest)
        if writer is not None:
            result = writer.write(instance.user_id, instance, quest, normalized if isinstance(normalized, dict) else None)
            if not result.success:
                log_event(
                    "warning",
                    f"Sub-flow write failed: {result.error}",
                    user_id=instance.user_id,
                    challenge_instance_id=instance.id,
                    quest_id=quest.id,
                    event_type="completion.subflow_failed",
                    error_code="collaborator_failure",
                )
                raise CollaboratorError(result.error or "Sub-flow failed", already_completed=result.already_completed)
            payload = result.payload
            on_commit = result.on_commit

        completion = QuestCompletion(
            id=str(uuid.uuid4()),
            user_id=instance.user_id,
            challenge_instance_id=instance.id,
            quest_id=quest.id,
            category=quest.category,
            pillar=quest.pillar,
            points_earned=quest.points,
            challenge_day=instance.current_day,
            completed_at=now,
            payload=json.dumps(payload, sort_keys=True, default=str) if isinstance(payload, dict) else payload,
        )

        updated = instance.clone()
        emitted: List[dict] = self.challenges.apply_completion(updated, quest, now)
        committed = self.store.commit_completion(completion, dedup_key(instance, quest, now, slot), updated)
        if committed is None:
            duplicate = (
                RejectionReason.ALREADY_COMPLETED_LIFETIME if quest.is_milestone else RejectionReason.ALREADY_COMPLETED_TODAY
            )
            return self._reject(instance, quest, duplicate)
        if on_commit is not None:
            on_commit()

        emitted.insert(
            0,
            {
                "type": "challenge.quest_completed",
                "payload": {
                    "userId": committed.user_id,
                    "challengeInstanceId": committed.id,
                    "questId": quest.id,
                    "pointsEarned": quest.points,
                    "challengeDay": completion.challenge_day,
                },
            },
        )

        settled, settle_events, bonus, unlocked = self.accountant.settle(committed)
        emitted.extend(settle_events)

        log_event(
            "info",
            f"Quest completed: +{quest.points} points",
            user_id=settled.user_id,
            challenge_instance_id=settled.id,
            quest_id=quest.id,
            event_type="completion.accepted",
            extra={"total_points": settled.total_points, "bonus_awarded": bonus},
        )
        return AttemptResult(
            accepted=True,
            completion=completion,
            total_points=settled.total_points,
            bonus_awarded=bonus,
            unlocked_artifacts=unlocked,
            emitted=emitted,
        )

    def complete_flow_quest(self, user_id: str, flow_id: str, now: Optional[datetime] = None) -> Optional[AttemptResult]:
        """
        Record an external flow as finished (opens feature gates) and complete
        the quest linked to it, if the user has an active challenge.

        Returns:
            The attempt result, or None when no quest was attempted
        """
        now = ensure_aware(now)
        instance = self.store.get_active_instance(user_id)
        self.store.mark_feature_complete(
            user_id,
            flow_id,
            challenge_instance_id=instance.id if instance else None,
            completed_at=now,
        )

        quest = self.catalog.by_flow_id(flow_id)
        if instance is None or quest is None:
            return None
        return self.attempt_completion(instance, quest, None, now)
