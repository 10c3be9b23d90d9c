"""
quest_engine/features/subflows/writers.py

Sub-flow completion writers.

Structured quests (conversation logs, milestones, flow compass entries,
groan reflections) record their own artifact before the ledger write. A
writer that reports success=False stops the completion attempt.

Writes that must not outlive a failed ledger commit go in
SubflowResult.on_commit, which runs only once the completion is stored.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from quest_engine.models.challenge import ChallengeInstance
from quest_engine.models.quest import InputKind, QuestDefinition


MILESTONE_FEATURE_PREFIX = "milestone:"


@dataclass
class SubflowResult:
    success: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    already_completed: bool = False
    on_commit: Optional[Callable[[], None]] = None

    @classmethod
    def failed(cls, error: str, *, already_completed: bool = False) -> "SubflowResult":
        return cls(success=False, error=error, already_completed=already_completed)


class SubflowWriter(Protocol):
    def write(
        self,
        user_id: str,
        instance: ChallengeInstance,
        quest: QuestDefinition,
        payload: Optional[Dict[str, Any]],
    ) -> SubflowResult:
        ...


@dataclass
class SubflowJournal:
    """In-memory record of sub-flow entries, keyed by kind."""

    entries: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    def append(self, kind: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        record = {"id": str(uuid.uuid4()), "recorded_at": datetime.now(timezone.utc).isoformat(), **entry}
        self.entries.setdefault(kind, []).append(record)
        return record

    def for_user(self, kind: str, user_id: str) -> List[Dict[str, Any]]:
        return [e for e in self.entries.get(kind, []) if e.get("user_id") == user_id]

    def clear(self) -> None:
        self.entries.clear()


def _missing(payload: Dict[str, Any], keys) -> List[str]:
    return [key for key in keys if not str(payload.get(key) or "").strip()]


class ConversationLogWriter:
    required_fields = ("person_type", "conversation_summary")

    def __init__(self, journal: SubflowJournal):
        self.journal = journal

    def write(self, user_id, instance, quest, payload) -> SubflowResult:
        payload = payload or {}
        missing = _missing(payload, self.required_fields)
        if missing:
            return SubflowResult.failed(f"Conversation log is missing: {', '.join(missing)}")

        entry = self.journal.append(
            "conversation_log",
            {
                "user_id": user_id,
                "challenge_instance_id": instance.id,
                "stage": instance.current_stage,
                "person_type": payload["person_type"],
                "conversation_summary": payload["conversation_summary"],
                "key_insights": payload.get("key_insights"),
            },
        )
        count = len(self.journal.for_user("conversation_log", user_id))
        return SubflowResult(success=True, payload={**payload, "log_id": entry["id"], "conversations_logged": count})


class MilestoneWriter:
    """
    Milestones are unique per (user, quest) for life. The feature registry
    key `milestone:{quest_id}` mirrors the ledger and is only set once the
    completion has committed, so a failed commit leaves no flag behind.
    """

    def __init__(self, store, journal: SubflowJournal):
        self.store = store
        self.journal = journal

    @staticmethod
    def feature_key(quest: QuestDefinition) -> str:
        return f"{MILESTONE_FEATURE_PREFIX}{quest.id}"

    def write(self, user_id, instance, quest, payload) -> SubflowResult:
        payload = payload or {}
        milestone_type = quest.milestone_type or payload.get("milestone_type")
        if not milestone_type:
            return SubflowResult.failed("Milestone type is required")

        if self.store.is_feature_complete(user_id, self.feature_key(quest)):
            return SubflowResult.failed("You have already completed this milestone!", already_completed=True)

        def record() -> None:
            self.store.mark_feature_complete(user_id, self.feature_key(quest), challenge_instance_id=instance.id)
            self.journal.append(
                "milestone",
                {
                    "user_id": user_id,
                    "quest_id": quest.id,
                    "milestone_type": milestone_type,
                    "stage": instance.current_stage,
                    "persona": instance.persona,
                    "evidence_text": payload.get("evidence_text"),
                },
            )

        return SubflowResult(success=True, payload={**payload, "milestone_type": milestone_type}, on_commit=record)


class FlowCompassWriter:
    def __init__(self, journal: SubflowJournal, default_project_id: Optional[str] = None):
        self.journal = journal
        self.default_project_id = default_project_id

    def write(self, user_id, instance, quest, payload) -> SubflowResult:
        payload = payload or {}
        project_id = payload.get("project_id") or self.default_project_id
        if not project_id:
            return SubflowResult.failed("Please set up your Flow Compass first")
        if not payload.get("direction"):
            return SubflowResult.failed("Flow direction is required")

        entry = self.journal.append(
            "flow_compass",
            {
                "user_id": user_id,
                "challenge_instance_id": instance.id,
                "project_id": project_id,
                "direction": payload["direction"],
                "internal_state": payload.get("internal_state"),
                "external_state": payload.get("external_state"),
                "activity_description": payload.get("activity_description"),
                "reasoning": payload.get("reasoning"),
            },
        )
        return SubflowResult(success=True, payload={**payload, "project_id": project_id, "entry_id": entry["id"]})


class GroanReflectionWriter:
    def __init__(self, journal: SubflowJournal):
        self.journal = journal

    def write(self, user_id, instance, quest, payload) -> SubflowResult:
        payload = payload or {}
        if _missing(payload, ("groan_task",)):
            return SubflowResult.failed("Please describe the groan task you completed")

        entry = self.journal.append(
            "groan",
            {
                "user_id": user_id,
                "challenge_instance_id": instance.id,
                "quest_id": quest.id,
                "groan_task": payload["groan_task"],
                "protective_archetype": payload.get("protective_archetype"),
                "fear_type": payload.get("fear_type"),
                "flow_direction": payload.get("flow_direction"),
                "reflection": payload.get("reflection"),
            },
        )
        return SubflowResult(success=True, payload={**payload, "reflection_id": entry["id"]})


class SubflowRegistry:
    """Picks the writer for a quest; None means the quest has no sub-flow."""

    def __init__(self, writers: Dict[InputKind, SubflowWriter], milestone_writer: SubflowWriter):
        self._writers = dict(writers)
        self._milestone_writer = milestone_writer

    def writer_for(self, quest: QuestDefinition) -> Optional[SubflowWriter]:
        if quest.input_kind in self._writers:
            return self._writers[quest.input_kind]
        if quest.is_milestone:
            return self._milestone_writer
        return None


def build_registry(store, journal: Optional[SubflowJournal] = None) -> SubflowRegistry:
    journal = journal or SubflowJournal()
    milestone = MilestoneWriter(store, journal)
    return SubflowRegistry(
        {
            InputKind.CONVERSATION_LOG: ConversationLogWriter(journal),
            InputKind.MILESTONE: milestone,
            InputKind.FLOW_COMPASS: FlowCompassWriter(journal),
            InputKind.GROAN: GroanReflectionWriter(journal),
        },
        milestone_writer=milestone,
    )
