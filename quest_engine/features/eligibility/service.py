"""
Eligibility filter: which quests currently count for a user.

Recomputed on demand from (catalog, persona, stage); never cached, so a
persona or stage change immediately changes what counts toward totals.
"""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Set, Union

from quest_engine.models.quest import QuestCatalog, QuestCategory, QuestDefinition

PersonaNormalizer = Callable[[Optional[str]], Optional[str]]

PERSONA_DISPLAY_NAMES = {
    "Vibe Seeker": "vibe_seeker",
    "Vibe Riser": "vibe_riser",
    "Movement Maker": "movement_maker",
}

STAGES = {
    "validation": 1,
    "product_creation": 2,
    "testing": 3,
    "money_models": 4,
    "campaign_creation": 5,
    "launch": 6,
}

# Older stage names stored on instances created before numbered stages
LEGACY_STAGE_MAPPING = {
    "clarity": 1,
    "validation": 1,
    "creation": 2,
    "testing": 3,
    "ideation": 4,
    "launch": 6,
}


def normalize_persona(persona: Optional[str]) -> Optional[str]:
    """Map a persona label ("Vibe Seeker", "vibe seeker", "vibe_seeker") to its canonical tag."""
    if not persona:
        return None
    cleaned = persona.strip()
    if not cleaned:
        return None
    if cleaned in PERSONA_DISPLAY_NAMES:
        return PERSONA_DISPLAY_NAMES[cleaned]
    return "_".join(cleaned.lower().split())


def convert_legacy_stage(stage: Union[int, str, None]) -> Optional[int]:
    """Resolve a stored stage (number, numeric string or legacy name) to 1..6."""
    if stage is None or stage == "":
        return None
    if isinstance(stage, int):
        return stage
    text = str(stage).strip().lower()
    if text.isdigit():
        return int(text)
    if text in STAGES:
        return STAGES[text]
    return LEGACY_STAGE_MAPPING.get(text, STAGES["validation"])


def is_eligible(
    quest: QuestDefinition,
    persona: Optional[str],
    stage: Union[int, str, None],
    normalizer: PersonaNormalizer = normalize_persona,
) -> bool:
    if quest.persona_specific:
        user_persona = normalizer(persona)
        allowed = {normalizer(p) for p in quest.persona_specific}
        if user_persona is None or user_persona not in allowed:
            return False

    if quest.stage_required is not None:
        if quest.stage_required != convert_legacy_stage(stage):
            return False

    return True


def eligible_quests(
    catalog: QuestCatalog,
    category: QuestCategory,
    persona: Optional[str],
    stage: Union[int, str, None],
    normalizer: PersonaNormalizer = normalize_persona,
) -> List[QuestDefinition]:
    """Quests in `category` that currently count for this persona/stage, in catalog order."""
    return [
        quest
        for quest in catalog.by_category(category)
        if is_eligible(quest, persona, stage, normalizer)
    ]


def valid_quest_ids(
    catalog: QuestCatalog,
    category: QuestCategory,
    persona: Optional[str],
    stage: Union[int, str, None],
    normalizer: PersonaNormalizer = normalize_persona,
) -> Set[str]:
    return {q.id for q in eligible_quests(catalog, category, persona, stage, normalizer)}


def total_points(quests: Iterable[QuestDefinition]) -> int:
    return sum(q.points for q in quests)
