"""
quest_engine/models/quest.py
Static quest catalog models: quest definitions, artifacts and the catalog itself.
Read-only to the engine; loaded once from JSON.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class QuestCategory(str, Enum):
    """Tabs a quest can live under."""

    FLOW_FINDER = "Flow Finder"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    BONUS = "Bonus"
    TRACKER = "Tracker"

    @property
    def is_pillar_category(self) -> bool:
        return self in (QuestCategory.DAILY, QuestCategory.WEEKLY)

    @property
    def flag_key(self) -> str:
        """Storage key used for per-category flags ("flow_finder", "daily", ...)."""
        return self.value.lower().replace(" ", "_")


class Pillar(str, Enum):
    """The four R's."""

    RECOGNISE = "Recognise"
    RELEASE = "Release"
    REWIRE = "Rewire"
    RECONNECT = "Reconnect"

    @property
    def key(self) -> str:
        return self.value.lower()


class InputKind(str, Enum):
    """What a user must supply to complete a quest."""

    TEXT = "text"
    DROPDOWN = "dropdown"
    CHECKBOX = "checkbox"
    FLOW = "flow"
    CONVERSATION_LOG = "conversation_log"
    MILESTONE = "milestone"
    FLOW_COMPASS = "flow_compass"
    GROAN = "groan"


class QuestDefinition(BaseModel):
    """A single quest. Immutable once loaded."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    category: QuestCategory
    pillar: Optional[Pillar] = Field(default=None, description="One of the four R's (Daily/Weekly only)")
    points: int = Field(gt=0)
    input_kind: InputKind = InputKind.CHECKBOX
    options: List[str] = Field(default_factory=list, description="Dropdown choices")
    persona_specific: Optional[List[str]] = None
    stage_required: Optional[int] = Field(default=None, ge=1, le=6)
    requires_quest: Optional[str] = None
    max_completions: Optional[int] = Field(default=None, ge=1)
    max_per_day: Optional[int] = Field(default=None, ge=1)
    milestone_type: Optional[str] = None
    feature_gate: Optional[str] = Field(default=None, description="External flow that must be completed first")
    flow_id: Optional[str] = Field(default=None, description="External flow that auto-completes this quest")

    @model_validator(mode="after")
    def _pillar_only_on_pillar_categories(self):
        if self.pillar is not None and not self.category.is_pillar_category:
            raise ValueError(f"quest {self.id}: pillar is only valid for Daily/Weekly quests")
        if self.input_kind == InputKind.DROPDOWN and not self.options:
            raise ValueError(f"quest {self.id}: dropdown quests need options")
        return self

    @property
    def is_milestone(self) -> bool:
        return bool(self.milestone_type)

    @property
    def daily_limit(self) -> int:
        return self.max_per_day or 1


class PillarRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    daily_required: int = Field(default=0, ge=0)
    weekly_required: int = Field(default=0, ge=0)


class Artifact(BaseModel):
    """Reward unlocked once a category's point thresholds are met."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    category: QuestCategory
    points_required: Optional[int] = Field(default=None, ge=0)
    pillars: Optional[Dict[Pillar, PillarRequirement]] = None

    @model_validator(mode="after")
    def _one_threshold_shape(self):
        if self.category.is_pillar_category:
            if not self.pillars:
                raise ValueError(f"artifact {self.id}: Daily/Weekly artifacts need a pillar mapping")
        elif self.points_required is None and self.category != QuestCategory.FLOW_FINDER:
            raise ValueError(f"artifact {self.id}: points_required is required")
        return self


class QuestCatalog(BaseModel):
    """Every quest and artifact definition, with lookup helpers."""

    model_config = ConfigDict(frozen=True)

    quests: List[QuestDefinition] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self):
        ids = [q.id for q in self.quests]
        duplicates = {qid for qid in ids if ids.count(qid) > 1}
        if duplicates:
            raise ValueError(f"duplicate quest ids: {sorted(duplicates)}")
        known = set(ids)
        for quest in self.quests:
            if quest.requires_quest and quest.requires_quest not in known:
                raise ValueError(f"quest {quest.id} requires unknown quest {quest.requires_quest}")
        categories = [a.category for a in self.artifacts]
        if len(categories) != len(set(categories)):
            raise ValueError("at most one artifact per category")
        return self

    def get(self, quest_id: str) -> Optional[QuestDefinition]:
        for quest in self.quests:
            if quest.id == quest_id:
                return quest
        return None

    def by_category(self, category: QuestCategory) -> List[QuestDefinition]:
        return [q for q in self.quests if q.category == category]

    def by_flow_id(self, flow_id: str) -> Optional[QuestDefinition]:
        for quest in self.quests:
            if quest.flow_id == flow_id:
                return quest
        return None

    def artifact_for(self, category: QuestCategory) -> Optional[Artifact]:
        for artifact in self.artifacts:
            if artifact.category == category:
                return artifact
        return None
