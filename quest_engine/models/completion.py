"""
quest_engine/models/completion.py
Completion ledger entries and the outcome of a completion attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from quest_engine.models.quest import Pillar, QuestCategory


class QuestCompletion(BaseModel):
    """Immutable record that a user finished a quest."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    challenge_instance_id: str
    quest_id: str
    category: QuestCategory
    pillar: Optional[Pillar] = None
    points_earned: int = Field(ge=0)
    challenge_day: int = Field(ge=0)
    completed_at: datetime
    payload: Optional[str] = Field(default=None, description="Sanitized text or JSON from a sub-flow")


class RejectionReason(str, Enum):
    """Expected, user-facing validation failures (first failure wins)."""

    DAY_ZERO_LOCKED = "day_zero_locked"
    PREREQUISITE_NOT_MET = "prerequisite_not_met"
    FEATURE_GATE_NOT_MET = "feature_gate_not_met"
    INPUT_MISSING = "input_missing"
    ALREADY_COMPLETED_TODAY = "already_completed_today"
    ALREADY_COMPLETED_LIFETIME = "already_completed_lifetime"
    COMPLETION_LIMIT_REACHED = "completion_limit_reached"


REJECTION_STATUS = {
    RejectionReason.DAY_ZERO_LOCKED: 403,
    RejectionReason.PREREQUISITE_NOT_MET: 403,
    RejectionReason.FEATURE_GATE_NOT_MET: 403,
    RejectionReason.INPUT_MISSING: 400,
    RejectionReason.ALREADY_COMPLETED_TODAY: 409,
    RejectionReason.ALREADY_COMPLETED_LIFETIME: 409,
    RejectionReason.COMPLETION_LIMIT_REACHED: 409,
}

REJECTION_MESSAGES = {
    RejectionReason.DAY_ZERO_LOCKED: "Daily quests unlock on Day 1.",
    RejectionReason.PREREQUISITE_NOT_MET: "Complete the required quest first.",
    RejectionReason.FEATURE_GATE_NOT_MET: "Finish the linked flow before this quest.",
    RejectionReason.INPUT_MISSING: "This quest needs your input before it can be completed.",
    RejectionReason.ALREADY_COMPLETED_TODAY: "You have already completed this quest today!",
    RejectionReason.ALREADY_COMPLETED_LIFETIME: "You have already completed this milestone!",
    RejectionReason.COMPLETION_LIMIT_REACHED: "This quest has no completions left.",
}


@dataclass
class Rejection:
    reason: RejectionReason
    message: str = ""

    def __post_init__(self):
        if not self.message:
            self.message = REJECTION_MESSAGES[self.reason]


@dataclass
class AttemptResult:
    """Accepted(completion) | Rejected(reason), plus events emitted on acceptance."""

    accepted: bool
    completion: Optional[QuestCompletion] = None
    rejection: Optional[Rejection] = None
    total_points: int = 0
    bonus_awarded: int = 0
    unlocked_artifacts: List[str] = field(default_factory=list)
    emitted: List[dict] = field(default_factory=list)

    @classmethod
    def rejected(cls, reason: RejectionReason, message: str = "") -> "AttemptResult":
        return cls(accepted=False, rejection=Rejection(reason=reason, message=message))

    @property
    def reason(self) -> Optional[RejectionReason]:
        return self.rejection.reason if self.rejection else None
