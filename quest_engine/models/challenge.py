from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Literal, Optional, Set

from quest_engine.models.quest import Pillar

ChallengeStatus = Literal["active", "completed"]
LeaderboardView = Literal["weekly", "alltime"]

MAX_CHALLENGE_DAY = 7


def _zeroed_pillars() -> Dict[Pillar, int]:
    return {pillar: 0 for pillar in Pillar}


@dataclass
class ChallengeInstance:
    """One user's run through the 7-day challenge."""

    id: str
    user_id: str
    challenge_start_date: datetime
    last_active_date: datetime
    status: ChallengeStatus = "active"
    group_id: Optional[str] = None
    current_day: int = 0
    total_points: int = 0
    daily_points: Dict[Pillar, int] = field(default_factory=_zeroed_pillars)
    weekly_points: Dict[Pillar, int] = field(default_factory=_zeroed_pillars)
    unlocked_artifacts: Set[str] = field(default_factory=set)
    bonus_awarded: Dict[str, int] = field(default_factory=dict)  # category flag key -> bonus points
    persona: Optional[str] = None
    current_stage: Optional[int] = None
    streak_days: int = 0
    longest_streak: int = 0
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def pillar_points(self, pillar: Pillar, frequency: str) -> int:
        counters = self.daily_points if frequency == "daily" else self.weekly_points
        return counters.get(pillar, 0)

    def is_bonus_awarded(self, flag_key: str) -> bool:
        return flag_key in self.bonus_awarded

    def clone(self) -> "ChallengeInstance":
        """Deep copy so stores never hand out shared mutable state."""
        return copy.deepcopy(self)


@dataclass
class StreakCheck:
    """Result of the streak-break detector."""

    streak_broken: bool
    streak_days: int = 0


@dataclass
class LoadResult:
    """An instance after the per-load streak check and day advance."""

    instance: ChallengeInstance
    streak_broken: bool = False
    days_advanced: int = 0
    emitted: list = field(default_factory=list)
