from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ai.coach_author import CoachAuthor, get_coach_author
from config import settings
from db.database import SessionLocal, get_db
from db.models import User
from services.coach_errors import AlreadyTerminal, CoachError
from services.coach_status_service import get_daily_status
from services.goal_service import abandon_goal, regenerate_plan, serialize_goal, serialize_plan, set_goal
from services.milestone_service import list_milestones, record_milestone_progress, serialize_milestone
from services.quest_scheduler import run_scheduled_generation, run_scheduled_weekly_review
from services.quest_service import (
    CompletionResult,
    complete_quest,
    generate_daily_quests,
    regenerate_quests,
    regeneration_status,
    serialize_quest,
    skip_quest,
    update_quest_progress,
)
from services.review_service import get_latest_review, run_weekly_review, serialize_review
from utils.datetime_utils import today_for_tz

router = APIRouter(prefix="/coach", tags=["coach"])


def get_today() -> date:
    return today_for_tz(settings.SCHEDULER_TIMEZONE)


def get_author() -> CoachAuthor:
    return get_coach_author()


def get_session_factory():
    return SessionLocal


def _get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _http_error(exc: CoachError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_payload())


def _noop(exc: AlreadyTerminal) -> dict:
    return {"noop": True, "reason": exc.code, exc.entity: {"id": exc.entity_id, "status": exc.status}}


def _completion_to_dict(result: CompletionResult) -> dict:
    return {
        "quest": serialize_quest(result.quest),
        "completed": result.completed,
        "ignored": result.ignored,
        "xp_awarded": result.xp_awarded,
        "health_bonus_xp": result.health_bonus_xp,
        "stat_bonus_applied": result.stat_bonus_applied,
        "level_up": result.level_up.to_dict() if result.level_up else None,
        "milestones_reached": [serialize_milestone(m) for m in result.milestones_reached],
    }


class UserCreateRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    display_name: Optional[str] = None


class SetGoalRequest(BaseModel):
    goal_text: str = Field(min_length=1, max_length=2000)
    timeline_days: Optional[int] = None


class RegenerateRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CompleteQuestRequest(BaseModel):
    actual_value: Optional[float] = Field(default=None, ge=0)


class QuestProgressRequest(BaseModel):
    value: float = Field(ge=0)


class MilestoneProgressRequest(BaseModel):
    percentage: float = Field(ge=0, le=100)


class BatchRequest(BaseModel):
    as_of: Optional[date] = None


# ---------------------------------------------------------------------------
# Batch triggers
# ---------------------------------------------------------------------------

@router.post("/batch/generation")
async def trigger_generation(
    req: BatchRequest,
    today: date = Depends(get_today),
    author: CoachAuthor = Depends(get_author),
    session_factory=Depends(get_session_factory),
):
    result = await run_scheduled_generation(req.as_of or today, author=author, session_factory=session_factory)
    return result.to_dict()


@router.post("/batch/weekly-review")
async def trigger_weekly_review(
    req: BatchRequest,
    today: date = Depends(get_today),
    session_factory=Depends(get_session_factory),
):
    result = await run_scheduled_weekly_review(req.as_of or today, session_factory=session_factory)
    return result.to_dict()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@router.post("/users")
def create_user(req: UserCreateRequest, db: Session = Depends(get_db)):
    username = req.username.strip()
    if db.query(User).filter(User.username == username).first():
        raise HTTPException(status_code=409, detail="Username already exists")
    user = User(username=username, display_name=(req.display_name or username).strip())
    db.add(user)
    db.commit()
    db.refresh(user)
    return {"id": user.id, "username": user.username, "display_name": user.display_name}


# ---------------------------------------------------------------------------
# Goal and plan
# ---------------------------------------------------------------------------

@router.post("/{user_id}/goal")
async def set_goal_route(
    user_id: int,
    req: SetGoalRequest,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
    author: CoachAuthor = Depends(get_author),
):
    user = _get_user(db, user_id)
    try:
        goal, plan = await set_goal(db, user, req.goal_text, author, today, timeline_days=req.timeline_days)
    except CoachError as exc:
        raise _http_error(exc)
    return {"goal": serialize_goal(goal), "master_plan": serialize_plan(plan)}


@router.post("/{user_id}/goal/abandon")
def abandon_goal_route(user_id: int, db: Session = Depends(get_db), today: date = Depends(get_today)):
    user = _get_user(db, user_id)
    try:
        goal = abandon_goal(db, user, today)
    except CoachError as exc:
        raise _http_error(exc)
    return {"goal": serialize_goal(goal)}


@router.post("/{user_id}/plan/regenerate")
async def regenerate_plan_route(
    user_id: int,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
    author: CoachAuthor = Depends(get_author),
):
    user = _get_user(db, user_id)
    try:
        plan = await regenerate_plan(db, user, author, today)
    except CoachError as exc:
        raise _http_error(exc)
    return {"master_plan": serialize_plan(plan)}


@router.get("/{user_id}/status")
def daily_status(user_id: int, db: Session = Depends(get_db), today: date = Depends(get_today)):
    user = _get_user(db, user_id)
    return get_daily_status(db, user, today)


# ---------------------------------------------------------------------------
# Quests
# ---------------------------------------------------------------------------

@router.post("/{user_id}/quests/generate")
async def generate_quests_route(
    user_id: int,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
    author: CoachAuthor = Depends(get_author),
):
    user = _get_user(db, user_id)
    try:
        quests, created = await generate_daily_quests(db, user, author, today)
    except CoachError as exc:
        raise _http_error(exc)
    return {
        "created": created,
        "quests": [serialize_quest(q) for q in quests],
        **regeneration_status(db, user, today),
    }


@router.post("/{user_id}/quests/regenerate")
async def regenerate_quests_route(
    user_id: int,
    req: RegenerateRequest,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
    author: CoachAuthor = Depends(get_author),
):
    user = _get_user(db, user_id)
    try:
        quests, status = await regenerate_quests(db, user, author, today, reason=req.reason)
    except CoachError as exc:
        raise _http_error(exc)
    return {"quests": [serialize_quest(q) for q in quests], **status}


@router.post("/{user_id}/quests/{quest_id}/complete")
def complete_quest_route(
    user_id: int,
    quest_id: int,
    req: CompleteQuestRequest,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
):
    user = _get_user(db, user_id)
    try:
        result = complete_quest(db, user, quest_id, today, actual_value=req.actual_value)
    except AlreadyTerminal as exc:
        return _noop(exc)
    except CoachError as exc:
        raise _http_error(exc)
    return _completion_to_dict(result)


@router.post("/{user_id}/quests/{quest_id}/progress")
def quest_progress_route(
    user_id: int,
    quest_id: int,
    req: QuestProgressRequest,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
):
    user = _get_user(db, user_id)
    try:
        result = update_quest_progress(db, user, quest_id, req.value, today)
    except AlreadyTerminal as exc:
        return _noop(exc)
    except CoachError as exc:
        raise _http_error(exc)
    return _completion_to_dict(result)


@router.post("/{user_id}/quests/{quest_id}/skip")
def skip_quest_route(
    user_id: int,
    quest_id: int,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
):
    user = _get_user(db, user_id)
    try:
        quest = skip_quest(db, user, quest_id, today)
    except AlreadyTerminal as exc:
        return _noop(exc)
    except CoachError as exc:
        raise _http_error(exc)
    return {"quest": serialize_quest(quest)}


# ---------------------------------------------------------------------------
# Milestones and reviews
# ---------------------------------------------------------------------------

@router.get("/{user_id}/milestones")
def list_milestones_route(user_id: int, goal_id: Optional[int] = None, db: Session = Depends(get_db)):
    user = _get_user(db, user_id)
    return {"milestones": [serialize_milestone(m) for m in list_milestones(db, user, goal_id=goal_id)]}


@router.post("/{user_id}/milestones/{milestone_id}/progress")
def milestone_progress_route(
    user_id: int,
    milestone_id: int,
    req: MilestoneProgressRequest,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
):
    user = _get_user(db, user_id)
    try:
        result = record_milestone_progress(db, user, milestone_id, req.percentage, today)
    except AlreadyTerminal as exc:
        return _noop(exc)
    except CoachError as exc:
        raise _http_error(exc)
    return {
        "milestone": serialize_milestone(result.milestone),
        "completed": result.newly_completed,
        "level_up": result.level_up.to_dict() if result.level_up else None,
    }


@router.get("/{user_id}/reviews/latest")
def latest_review_route(user_id: int, db: Session = Depends(get_db)):
    user = _get_user(db, user_id)
    return {"review": serialize_review(get_latest_review(db, user))}


@router.post("/{user_id}/reviews/run")
def run_review_route(
    user_id: int,
    req: BatchRequest,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
):
    user = _get_user(db, user_id)
    try:
        review, created = run_weekly_review(db, user, req.as_of or today)
    except CoachError as exc:
        raise _http_error(exc)
    return {"created": created, "review": serialize_review(review)}
