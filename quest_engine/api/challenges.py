from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional, Union

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from quest_engine.core.errors import NotFoundError, QuestRejectedError
from quest_engine.features.engine import get_services
from quest_engine.features.leaderboard.reducers import project_leaderboard
from quest_engine.models.challenge import ChallengeInstance
from quest_engine.models.completion import REJECTION_STATUS, AttemptResult
from quest_engine.models.quest import Pillar, QuestCategory

router = APIRouter(prefix="/v1/challenges")


class StartRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    persona: Optional[str] = None
    stage: Optional[Union[int, str]] = None
    group_id: Optional[str] = None
    now: Optional[datetime] = None  # deterministic testing


class RestartRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class CompleteQuestRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    input: Optional[Any] = Field(default=None, description="Text, dropdown choice or structured sub-flow payload")
    now: Optional[datetime] = None


class CompleteFlowRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    now: Optional[datetime] = None


def _instance_payload(instance: ChallengeInstance) -> dict:
    return {
        "id": instance.id,
        "user_id": instance.user_id,
        "group_id": instance.group_id,
        "status": instance.status,
        "current_day": instance.current_day,
        "challenge_start_date": instance.challenge_start_date.isoformat(),
        "last_active_date": instance.last_active_date.isoformat(),
        "total_points": instance.total_points,
        "daily_points": {p.value: instance.daily_points.get(p, 0) for p in Pillar},
        "weekly_points": {p.value: instance.weekly_points.get(p, 0) for p in Pillar},
        "unlocked_artifacts": sorted(instance.unlocked_artifacts),
        "bonus_awarded": dict(instance.bonus_awarded),
        "persona": instance.persona,
        "current_stage": instance.current_stage,
        "streak_days": instance.streak_days,
        "longest_streak": instance.longest_streak,
        "version": instance.version,
    }


def _active_instance(user_id: str) -> ChallengeInstance:
    instance = get_services().store.get_active_instance(user_id)
    if instance is None:
        raise NotFoundError(f"No active challenge for user {user_id}")
    return instance


def _attempt_payload(result: AttemptResult) -> dict:
    completion = result.completion
    return {
        "accepted": True,
        "completion": completion.model_dump(mode="json") if completion else None,
        "total_points": result.total_points,
        "bonus_awarded": result.bonus_awarded,
        "unlocked_artifacts": result.unlocked_artifacts,
        "emitted": result.emitted,
    }


def _raise_rejection(result: AttemptResult) -> None:
    reason = result.reason
    raise QuestRejectedError(
        result.rejection.message,
        code=reason.value,
        status_code=REJECTION_STATUS[reason],
    )


@router.post("/start")
def start_challenge(req: StartRequest):
    """Start a new 7-day challenge (supersedes any active one)."""
    instance, emitted = get_services().challenges.start_challenge(
        user_id=req.user_id,
        persona=req.persona,
        stage=req.stage,
        group_id=req.group_id,
        now=req.now,
    )
    return {"challenge": _instance_payload(instance), "emitted": emitted}


@router.post("/restart")
def restart_challenge(req: RestartRequest):
    closed, emitted = get_services().challenges.restart_challenge(user_id=req.user_id)
    return {"closed": closed, "emitted": emitted}


@router.get("/current")
def get_current_challenge(
    user_id: str = Query(..., min_length=1),
    now: Optional[datetime] = Query(None, description="Override current time (testing)"),
):
    """Active challenge after the streak check and lazy day advance, with visible quests."""
    services = get_services()
    loaded = services.challenges.load_active(user_id, now)
    if loaded is None:
        raise NotFoundError(f"No active challenge for user {user_id}")

    quests = services.challenges.visible_quests(loaded.instance, now)
    return {
        "challenge": _instance_payload(loaded.instance),
        "streak_broken": loaded.streak_broken,
        "days_advanced": loaded.days_advanced,
        "quests": {
            category.value: [view.model_dump(mode="json") for view in views]
            for category, views in quests.items()
        },
        "emitted": loaded.emitted,
    }


@router.post("/quests/{quest_id}/complete")
def complete_quest(quest_id: str, req: CompleteQuestRequest):
    """
    Submit a quest completion.

    Rejections come back as structured errors whose code is the rejection
    reason (403 locks, 400 missing input, 409 duplicates/caps).
    """
    services = get_services()
    quest = services.catalog.get(quest_id)
    if quest is None:
        raise NotFoundError(f"Unknown quest {quest_id}")

    loaded = services.challenges.load_active(req.user_id, req.now)
    if loaded is None:
        raise NotFoundError(f"No active challenge for user {req.user_id}")

    result = services.completions.attempt_completion(loaded.instance, quest, req.input, req.now)
    if not result.accepted:
        _raise_rejection(result)
    payload = _attempt_payload(result)
    payload["emitted"] = loaded.emitted + payload["emitted"]
    return payload


@router.post("/flows/{flow_id}/complete")
def complete_flow(flow_id: str, req: CompleteFlowRequest):
    """Mark an external flow finished and complete its linked quest, if any."""
    result = get_services().completions.complete_flow_quest(req.user_id, flow_id, req.now)
    if result is None:
        return {"flow_id": flow_id, "recorded": True, "quest_attempted": False}
    if not result.accepted:
        _raise_rejection(result)
    return {"flow_id": flow_id, "recorded": True, "quest_attempted": True, **_attempt_payload(result)}


@router.get("/points")
def get_points(
    user_id: str = Query(..., min_length=1),
    category: QuestCategory = Query(...),
    pillar: Optional[Pillar] = Query(None),
    now: Optional[datetime] = Query(None),
):
    accountant = get_services().accountant
    instance = _active_instance(user_id)
    points = accountant.category_points(instance, category, pillar)
    return {
        **points.model_dump(mode="json"),
        "points_today": accountant.points_today(instance, category, now),
    }


@router.get("/artifacts")
def get_artifacts(user_id: str = Query(..., min_length=1)):
    accountant = get_services().accountant
    instance = _active_instance(user_id)
    progress = [accountant.artifact_progress(instance, category) for category in QuestCategory]
    return {
        "artifacts": [p.model_dump(mode="json") for p in progress if p is not None],
        "completed_stages": accountant.completed_stages(instance),
    }


@router.get("/tabs")
def get_tab_status(
    user_id: str = Query(..., min_length=1),
    category: QuestCategory = Query(...),
):
    instance = _active_instance(user_id)
    return get_services().accountant.tab_completion_status(instance, category).model_dump(mode="json")


@router.get("/leaderboard")
def get_leaderboard(
    user_id: str = Query(..., min_length=1),
    view: Literal["weekly", "alltime"] = Query("weekly"),
    now: Optional[datetime] = Query(None),
):
    services = get_services()
    viewer = _active_instance(user_id)
    board = project_leaderboard(services.store, viewer, view, services.profiles, now)
    return board.model_dump(mode="json")


@router.get("/reconcile")
def reconcile_challenge(user_id: str = Query(..., min_length=1)):
    """Compare stored counters against a fresh fold of the ledger."""
    instance = _active_instance(user_id)
    report = get_services().accountant.reconcile(instance)
    return {
        **report.model_dump(mode="json"),
        "expected_total": report.expected_total,
        "consistent": report.consistent,
    }
