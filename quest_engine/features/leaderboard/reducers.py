"""
quest_engine/features/leaderboard/reducers.py

Pure leaderboard projection over challenge instances.
(viewer, instances, view, names, now) -> immutable read model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from quest_engine.core.dates import ensure_aware, week_window
from quest_engine.models.challenge import ChallengeInstance, LeaderboardView
from quest_engine.models.leaderboard import LeaderboardEntry, LeaderboardResponse

ANONYMOUS = "Anonymous"


class ProfileDirectory(Protocol):
    def display_name(self, user_id: str) -> Optional[str]:
        ...


class StaticProfileDirectory:
    """Profile names held in memory."""

    def __init__(self, names: Optional[Mapping[str, str]] = None):
        self._names: Dict[str, str] = dict(names or {})

    def display_name(self, user_id: str) -> Optional[str]:
        return self._names.get(user_id)


def first_name(full_name: Optional[str]) -> str:
    if not full_name or not full_name.strip():
        return ANONYMOUS
    return full_name.split()[0]


def _in_cohort(instance: ChallengeInstance, viewer: ChallengeInstance) -> bool:
    start, end = week_window(viewer.challenge_start_date)
    started = ensure_aware(instance.challenge_start_date)
    return start <= started < end


def reduce_leaderboard(
    viewer: ChallengeInstance,
    instances: List[ChallengeInstance],
    view: LeaderboardView = "weekly",
    display_name: Optional[Callable[[str], Optional[str]]] = None,
    now: Optional[datetime] = None,
) -> LeaderboardResponse:
    """
    Rank active instances by total points.

    Scope: the viewer's group if they have one (regardless of view), else
    the viewer's Monday-aligned start week for "weekly", else everyone.
    Ties keep input order (stable sort); ranks are 1-based positions.
    """
    now = ensure_aware(now)
    active = [i for i in instances if i.is_active]

    if viewer.group_id:
        scope = "group"
        scoped = [i for i in active if i.group_id == viewer.group_id]
    elif view == "weekly":
        scope = "weekly"
        scoped = [i for i in active if _in_cohort(i, viewer)]
    else:
        scope = "alltime"
        scoped = active

    ranked = sorted(scoped, key=lambda i: -i.total_points)
    lookup = display_name or (lambda user_id: None)

    entries = [
        LeaderboardEntry(
            rank=position,
            user_id=instance.user_id,
            name=first_name(lookup(instance.user_id)),
            total_points=instance.total_points,
            current_day=instance.current_day,
            is_current_user=instance.user_id == viewer.user_id,
        )
        for position, instance in enumerate(ranked, start=1)
    ]
    user_rank = next((e.rank for e in entries if e.user_id == viewer.user_id), None)

    return LeaderboardResponse(
        view=view,
        scope=scope,
        entries=entries,
        user_rank=user_rank,
        computed_at=now,
    )


def project_leaderboard(
    store,
    viewer: ChallengeInstance,
    view: LeaderboardView = "weekly",
    profiles: Optional[ProfileDirectory] = None,
    now: Optional[datetime] = None,
) -> LeaderboardResponse:
    """Query candidate instances from the store and reduce them."""
    if viewer.group_id:
        candidates = store.list_instances(status="active", group_id=viewer.group_id)
    elif view == "weekly":
        start, end = week_window(viewer.challenge_start_date)
        candidates = store.list_instances(status="active", start_from=start, start_before=end)
    else:
        candidates = store.list_instances(status="active")
    lookup = profiles.display_name if profiles is not None else None
    return reduce_leaderboard(viewer, candidates, view, lookup, now)
