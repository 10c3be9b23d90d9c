"""
quest_engine/models/leaderboard.py
Leaderboard read models.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class LeaderboardEntry(BaseModel):
    """Single entry in leaderboard."""

    model_config = ConfigDict(frozen=True)

    rank: int = Field(ge=1, description="1-based position by sort order")
    user_id: str
    name: str = Field(description="First token of the profile name, or 'Anonymous'")
    total_points: int = Field(ge=0)
    current_day: int = Field(ge=0)
    is_current_user: bool = False


class LeaderboardResponse(BaseModel):
    """Response for leaderboard endpoint."""

    model_config = ConfigDict(frozen=True)

    view: Literal["weekly", "alltime"]
    scope: Literal["group", "weekly", "alltime"]
    entries: List[LeaderboardEntry] = Field(default_factory=list)
    user_rank: Optional[int] = None
    computed_at: datetime
