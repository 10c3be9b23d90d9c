"""
quest_engine/models/progress.py
Read models derived by the points & artifact accountant.
All deterministic: same instance + same ledger + same catalog => same output.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from quest_engine.models.quest import Pillar, QuestCategory


class CategoryPoints(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: QuestCategory
    daily: int = Field(ge=0, default=0)
    weekly: int = Field(ge=0, default=0)
    total: int = Field(ge=0, default=0)


class PillarProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    daily_required: int
    weekly_required: int
    daily_points: int
    weekly_points: int

    @property
    def met(self) -> bool:
        return self.daily_points >= self.daily_required and self.weekly_points >= self.weekly_required


class ArtifactProgress(BaseModel):
    """Where a user stands against a category's artifact."""

    model_config = ConfigDict(frozen=True)

    artifact_id: str
    name: str
    category: QuestCategory
    unlocked: bool
    current_points: Optional[int] = None
    points_required: Optional[int] = None
    pillars: Optional[Dict[Pillar, PillarProgress]] = None


class TabCompletionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: QuestCategory
    total_quests: int = Field(ge=0)
    completed_quests: int = Field(ge=0)
    is_complete: bool
    bonus_points: int = Field(ge=0)
    bonus_awarded: bool
    percentage: int = Field(ge=0, le=100)
    bonus_percentage: int


class ReconciliationReport(BaseModel):
    """Stored counters vs. a fresh fold over the ledger."""

    model_config = ConfigDict(frozen=True)

    challenge_instance_id: str
    stored_total: int
    ledger_total: int
    bonus_total: int
    pillar_drift: Dict[str, int] = Field(default_factory=dict, description="counter key -> stored minus ledger")

    @property
    def expected_total(self) -> int:
        return self.ledger_total + self.bonus_total

    @property
    def consistent(self) -> bool:
        return self.stored_total == self.expected_total and not self.pillar_drift


class QuestView(BaseModel):
    """A quest as one user currently sees it."""

    model_config = ConfigDict(frozen=True)

    quest_id: str
    name: str
    category: QuestCategory
    pillar: Optional[Pillar] = None
    points: int
    input_kind: str
    locked: bool
    lock_reason: Optional[str] = None
    completed_today: bool
    ever_completed: bool
    options: List[str] = Field(default_factory=list)
