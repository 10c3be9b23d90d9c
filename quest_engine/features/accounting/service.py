"""
quest_engine/features/accounting/service.py

Points & artifact accountant.

Reads:
- Daily/Weekly points come from the stored pillar counters (authoritative, O(1))
- Every other category is a fold over the instance's ledger entries whose
  quest is currently eligible for the user's persona/stage

Writes (only after an accepted completion):
- One-way artifact unlock flags
- The one-time tab completion bonus per category
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from quest_engine.core.config import settings
from quest_engine.core.dates import ensure_aware, local_date, local_day_bounds
from quest_engine.core.logging import log_event
from quest_engine.features.eligibility.service import (
    PersonaNormalizer,
    STAGES,
    eligible_quests,
    is_eligible,
    normalize_persona,
    total_points,
)
from quest_engine.models.challenge import ChallengeInstance
from quest_engine.models.completion import QuestCompletion
from quest_engine.models.progress import (
    ArtifactProgress,
    CategoryPoints,
    PillarProgress,
    ReconciliationReport,
    TabCompletionStatus,
)
from quest_engine.models.quest import Artifact, Pillar, QuestCatalog, QuestCategory, QuestDefinition


def round_half_up(value: Decimal) -> int:
    """Halves round away from zero: 2.5 -> 3, not banker's 2."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class Accountant:
    def __init__(
        self,
        store,
        catalog: QuestCatalog,
        normalizer: PersonaNormalizer = normalize_persona,
        bonus_percentage: Optional[int] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.normalizer = normalizer
        self.bonus_percentage = settings.TAB_BONUS_PERCENTAGE if bonus_percentage is None else bonus_percentage

    # Helpers ----------------------------------------------------------
    def eligible(self, instance: ChallengeInstance, category: QuestCategory) -> List[QuestDefinition]:
        return eligible_quests(self.catalog, category, instance.persona, instance.current_stage, self.normalizer)

    def _completions(self, instance: ChallengeInstance) -> List[QuestCompletion]:
        return self.store.list_completions(challenge_instance_id=instance.id)

    def _eligible_completions(
        self,
        instance: ChallengeInstance,
        category: QuestCategory,
        completions: Optional[List[QuestCompletion]] = None,
    ) -> List[QuestCompletion]:
        valid_ids = {q.id for q in self.eligible(instance, category)}
        if completions is None:
            completions = self._completions(instance)
        return [c for c in completions if c.category == category and c.quest_id in valid_ids]

    # Points -----------------------------------------------------------
    def category_points(
        self,
        instance: ChallengeInstance,
        category: QuestCategory,
        pillar: Optional[Pillar] = None,
    ) -> CategoryPoints:
        """
        {daily, weekly, total} for a category.

        With `pillar`, returns that pillar's daily/weekly counter pair.
        """
        if pillar is not None:
            daily = instance.pillar_points(pillar, "daily")
            weekly = instance.pillar_points(pillar, "weekly")
            return CategoryPoints(category=category, daily=daily, weekly=weekly, total=daily + weekly)

        if category == QuestCategory.DAILY:
            daily = sum(instance.daily_points.values())
            return CategoryPoints(category=category, daily=daily, weekly=0, total=daily)
        if category == QuestCategory.WEEKLY:
            weekly = sum(instance.weekly_points.values())
            return CategoryPoints(category=category, daily=0, weekly=weekly, total=weekly)

        total = sum(c.points_earned for c in self._eligible_completions(instance, category))
        return CategoryPoints(category=category, total=total)

    def points_today(self, instance: ChallengeInstance, category: QuestCategory, now: Optional[datetime] = None) -> int:
        """Eligible points earned in `category` during now's local day."""
        start, end = local_day_bounds(ensure_aware(now))
        today = self.store.list_completions(challenge_instance_id=instance.id, start=start, end=end)
        return sum(c.points_earned for c in self._eligible_completions(instance, category, today))

    def daily_streak(
        self,
        instance: ChallengeInstance,
        quest_id: str,
        now: Optional[datetime] = None,
        days: Optional[int] = None,
    ) -> List[bool]:
        """Completion grid for one quest: slot i is challenge day i+1's calendar date."""
        reference = ensure_aware(now)
        length = days or settings.CHALLENGE_LENGTH_DAYS
        start = local_date(instance.challenge_start_date, reference)
        completed_on = {
            local_date(c.completed_at, reference)
            for c in self.store.list_completions(challenge_instance_id=instance.id, quest_id=quest_id)
        }
        return [start + timedelta(days=offset) in completed_on for offset in range(length)]

    def completed_stages(self, instance: ChallengeInstance) -> List[int]:
        """Stages whose persona-eligible stage quests have all been completed in this instance."""
        completed_ids = {c.quest_id for c in self._completions(instance)}
        finished = []
        for stage in sorted(set(STAGES.values())):
            stage_quests = [q for q in self.catalog.quests if q.stage_required == stage]
            relevant = [q for q in stage_quests if is_eligible(q, instance.persona, stage, self.normalizer)]
            if relevant and all(q.id in completed_ids for q in relevant):
                finished.append(stage)
        return finished

    # Artifacts --------------------------------------------------------
    def points_required(self, instance: ChallengeInstance, artifact: Artifact) -> Optional[int]:
        if artifact.category == QuestCategory.FLOW_FINDER:
            dynamic = total_points(self.eligible(instance, artifact.category))
            return dynamic or artifact.points_required
        return artifact.points_required

    def _pillar_progress(self, instance: ChallengeInstance, artifact: Artifact) -> Dict[Pillar, PillarProgress]:
        return {
            pillar: PillarProgress(
                daily_required=req.daily_required,
                weekly_required=req.weekly_required,
                daily_points=instance.pillar_points(pillar, "daily"),
                weekly_points=instance.pillar_points(pillar, "weekly"),
            )
            for pillar, req in (artifact.pillars or {}).items()
        }

    def live_unlocked(self, instance: ChallengeInstance, artifact: Artifact) -> bool:
        """The unlock predicate, ignoring any stored flag."""
        if artifact.pillars:
            return all(p.met for p in self._pillar_progress(instance, artifact).values())
        required = self.points_required(instance, artifact)
        if required is None:
            return False
        return self.category_points(instance, artifact.category).total >= required

    def is_unlocked(self, instance: ChallengeInstance, artifact: Artifact) -> bool:
        return artifact.id in instance.unlocked_artifacts or self.live_unlocked(instance, artifact)

    def artifact_progress(self, instance: ChallengeInstance, category: QuestCategory) -> Optional[ArtifactProgress]:
        artifact = self.catalog.artifact_for(category)
        if artifact is None:
            return None
        unlocked = self.is_unlocked(instance, artifact)
        if artifact.pillars:
            return ArtifactProgress(
                artifact_id=artifact.id,
                name=artifact.name,
                category=category,
                unlocked=unlocked,
                pillars=self._pillar_progress(instance, artifact),
            )
        return ArtifactProgress(
            artifact_id=artifact.id,
            name=artifact.name,
            category=category,
            unlocked=unlocked,
            current_points=self.category_points(instance, category).total,
            points_required=self.points_required(instance, artifact),
        )

    def evaluate_artifacts(self, instance: ChallengeInstance) -> List[str]:
        """Set unlock flags whose predicate now holds. Mutates `instance`; returns new ids."""
        newly_unlocked = []
        for artifact in self.catalog.artifacts:
            if artifact.id in instance.unlocked_artifacts:
                continue
            if self.live_unlocked(instance, artifact):
                instance.unlocked_artifacts.add(artifact.id)
                newly_unlocked.append(artifact.id)
        return newly_unlocked

    # Tab completion bonus ---------------------------------------------
    def tab_completion_status(self, instance: ChallengeInstance, category: QuestCategory) -> TabCompletionStatus:
        quests = self.eligible(instance, category)
        awarded = instance.is_bonus_awarded(category.flag_key)
        if not quests:
            return TabCompletionStatus(
                category=category,
                total_quests=0,
                completed_quests=0,
                is_complete=False,
                bonus_points=0,
                bonus_awarded=awarded,
                percentage=0,
                bonus_percentage=self.bonus_percentage,
            )

        completed_ids = {c.quest_id for c in self._completions(instance)}
        completed = sum(1 for q in quests if q.id in completed_ids)
        return TabCompletionStatus(
            category=category,
            total_quests=len(quests),
            completed_quests=completed,
            is_complete=completed >= len(quests),
            bonus_points=round_half_up(Decimal(total_points(quests) * self.bonus_percentage) / 100),
            bonus_awarded=awarded,
            percentage=round_half_up(Decimal(completed * 100) / len(quests)),
            bonus_percentage=self.bonus_percentage,
        )

    def _apply_bonus(self, instance: ChallengeInstance, category: QuestCategory) -> int:
        status = self.tab_completion_status(instance, category)
        if status.bonus_awarded or not status.is_complete:
            return 0
        instance.bonus_awarded[category.flag_key] = status.bonus_points
        instance.total_points += status.bonus_points
        log_event(
            "info",
            f"Tab completion bonus awarded: +{status.bonus_points} ({category.value})",
            user_id=instance.user_id,
            challenge_instance_id=instance.id,
            event_type="bonus.awarded",
        )
        return status.bonus_points

    def check_and_award_bonus(
        self, instance: ChallengeInstance, category: QuestCategory
    ) -> Tuple[ChallengeInstance, int]:
        """Award the category bonus once; persists when awarded. Returns (instance, points awarded)."""
        updated = instance.clone()
        awarded = self._apply_bonus(updated, category)
        if not awarded:
            return instance, 0
        return self.store.update_instance(updated), awarded

    # After-completion settlement --------------------------------------
    def settle(self, instance: ChallengeInstance) -> Tuple[ChallengeInstance, List[dict], int, List[str]]:
        """
        Run bonus and artifact checks for every category after an accepted
        completion. One versioned write if anything changed.

        Returns:
            (instance, emitted events, bonus points awarded, newly unlocked artifact ids)
        """
        updated = instance.clone()
        emitted: List[dict] = []
        bonus_total = 0

        for category in QuestCategory:
            amount = self._apply_bonus(updated, category)
            if amount:
                bonus_total += amount
                emitted.append(
                    {
                        "type": "challenge.bonus_awarded",
                        "payload": {
                            "userId": updated.user_id,
                            "challengeInstanceId": updated.id,
                            "category": category.value,
                            "bonusPoints": amount,
                        },
                    }
                )

        unlocked = self.evaluate_artifacts(updated)
        for artifact_id in unlocked:
            log_event(
                "info",
                f"Artifact unlocked: {artifact_id}",
                user_id=updated.user_id,
                challenge_instance_id=updated.id,
                event_type="artifact.unlocked",
            )
            emitted.append(
                {
                    "type": "challenge.artifact_unlocked",
                    "payload": {
                        "userId": updated.user_id,
                        "challengeInstanceId": updated.id,
                        "artifactId": artifact_id,
                    },
                }
            )

        if not bonus_total and not unlocked:
            return instance, [], 0, []
        return self.store.update_instance(updated), emitted, bonus_total, unlocked

    # Reconciliation ---------------------------------------------------
    def reconcile(self, instance: ChallengeInstance) -> ReconciliationReport:
        """Recompute totals and pillar counters from the ledger and report drift."""
        completions = self._completions(instance)
        ledger_total = sum(c.points_earned for c in completions)

        expected: Dict[str, int] = {}
        for pillar in Pillar:
            expected[f"{pillar.key}_daily"] = 0
            expected[f"{pillar.key}_weekly"] = 0
        for c in completions:
            if c.pillar is None or not c.category.is_pillar_category:
                continue
            frequency = "daily" if c.category == QuestCategory.DAILY else "weekly"
            expected[f"{c.pillar.key}_{frequency}"] += c.points_earned

        drift = {}
        for pillar in Pillar:
            for frequency in ("daily", "weekly"):
                key = f"{pillar.key}_{frequency}"
                delta = instance.pillar_points(pillar, frequency) - expected[key]
                if delta:
                    drift[key] = delta

        report = ReconciliationReport(
            challenge_instance_id=instance.id,
            stored_total=instance.total_points,
            ledger_total=ledger_total,
            bonus_total=sum(instance.bonus_awarded.values()),
            pillar_drift=drift,
        )
        if not report.consistent:
            log_event(
                "warning",
                "Challenge instance drifted from ledger",
                user_id=instance.user_id,
                challenge_instance_id=instance.id,
                event_type="reconcile.drift",
                extra={"stored_total": report.stored_total, "expected_total": report.expected_total, "drift": drift},
            )
        return report
