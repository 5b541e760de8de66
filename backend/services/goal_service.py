from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from ai.coach_author import CoachAuthor
from ai.drafts import GoalAnalysis, PlanDraft
from config import settings
from db.models import AIDailyQuest, MasterGoal, MasterPlan, MilestoneRecord, User
from services.coach_errors import (
    NotFound,
    StructuralDraftError,
    ValidationRejected,
    commit_or_raise,
)
from services.milestone_service import TERMINAL_MILESTONE_STATUSES
from services.user_context import build_user_context, get_active_goal, plan_phases
from utils.datetime_utils import parse_iso_date

logger = logging.getLogger(__name__)

MIN_ACCEPTED_SCORE = 5
REJECT_AT_OR_BELOW = 2
NON_TERMINAL_QUEST_STATUSES = ("pending", "in_progress")


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _safe_json_loads(raw: str | None, fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback


# ---------------------------------------------------------------------------
# Goal validator
# ---------------------------------------------------------------------------

def is_goal_acceptable(analysis: GoalAnalysis) -> bool:
    """Every score >= 5 and none <= 2. The collaborator's own verdict is ignored."""
    scores = analysis.scores().values()
    return all(s >= MIN_ACCEPTED_SCORE for s in scores) and not any(s <= REJECT_AT_OR_BELOW for s in scores)


def resolve_timeline(timeline_days: int | None) -> int:
    timeline = int(timeline_days or settings.GOAL_DEFAULT_TIMELINE_DAYS)
    lo, hi = settings.GOAL_MIN_TIMELINE_DAYS, settings.GOAL_MAX_TIMELINE_DAYS
    if not lo <= timeline <= hi:
        raise ValidationRejected(
            f"Timeline must be between {lo} and {hi} days",
            suggestions=[f"Choose a timeline between {lo} and {hi} days"],
        )
    return timeline


# ---------------------------------------------------------------------------
# Plan materializer
# ---------------------------------------------------------------------------

def plan_structure_problems(draft: PlanDraft, timeline_days: int) -> list[str]:
    problems: list[str] = []
    phases = draft.phases
    if not phases:
        problems.append("plan has no phases")
    for pos, phase in enumerate(phases):
        if phase.number != pos + 1:
            problems.append(f"phase at position {pos + 1} is numbered {phase.number}")
        if phase.start_day > phase.end_day:
            problems.append(f"phase {phase.number} starts after it ends")
        expected_start = 1 if pos == 0 else phases[pos - 1].end_day + 1
        if phase.start_day != expected_start:
            problems.append(f"phase {phase.number} starts on day {phase.start_day}, expected {expected_start}")
    if phases and phases[-1].end_day != timeline_days:
        problems.append(f"last phase ends on day {phases[-1].end_day}, expected {timeline_days}")

    if not draft.daily_habits:
        problems.append("plan has no daily habits")

    seen: set[int] = set()
    for pos, milestone in enumerate(draft.milestones):
        index = milestone.index if milestone.index is not None else pos
        if index in seen:
            problems.append(f"milestone index {index} is duplicated")
        seen.add(index)
        containing = [p for p in phases if p.start_day <= milestone.target_day <= p.end_day]
        if len(containing) != 1:
            problems.append(
                f"milestone {index} target day {milestone.target_day} falls in {len(containing)} phases"
            )
    return problems


def validate_plan_draft(draft: PlanDraft, timeline_days: int) -> None:
    problems = plan_structure_problems(draft, timeline_days)
    if problems:
        raise StructuralDraftError("Plan draft violates phase/day invariants", problems=problems)


def _milestone_entries(draft: PlanDraft) -> list[dict[str, Any]]:
    out = []
    for pos, milestone in enumerate(draft.milestones):
        entry = milestone.model_dump(mode="json")
        entry["index"] = milestone.index if milestone.index is not None else pos
        out.append(entry)
    return out


def _milestone_record(user: User, goal: MasterGoal, plan: MasterPlan, entry: dict[str, Any]) -> MilestoneRecord:
    start = parse_iso_date(goal.start_date)
    target_day = int(entry["target_day"])
    return MilestoneRecord(
        user_id=user.id,
        goal_id=goal.id,
        plan_id=plan.id,
        milestone_index=int(entry["index"]),
        title=entry.get("title") or f"Milestone {entry['index'] + 1}",
        description=entry.get("description") or None,
        target_day=target_day,
        target_date=(start + timedelta(days=target_day - 1)).isoformat(),
        status="pending",
        completion_percentage=0.0,
        bonus_xp_awarded=0,
    )


def _write_plan_body(plan: MasterPlan, draft: PlanDraft) -> None:
    plan.summary = draft.summary
    plan.phases = _json_dump([p.model_dump(mode="json") for p in draft.phases])
    plan.daily_habits = _json_dump([h.model_dump(mode="json") for h in draft.daily_habits])
    plan.success_metrics = _json_dump([m.model_dump(mode="json") for m in draft.success_metrics])
    plan.milestones = _json_dump(_milestone_entries(draft))


def materialize_plan(db: Session, user: User, goal: MasterGoal, draft: PlanDraft) -> MasterPlan:
    """Persist a validated draft plus one pending milestone record per index. No commit."""
    validate_plan_draft(draft, int(goal.timeline_days))
    plan = MasterPlan(user_id=user.id, goal_id=goal.id, version=1)
    _write_plan_body(plan, draft)
    db.add(plan)
    db.flush()
    for entry in _milestone_entries(draft):
        db.add(_milestone_record(user, goal, plan, entry))
    db.flush()
    return plan


# ---------------------------------------------------------------------------
# Goal lifecycle
# ---------------------------------------------------------------------------

def _skip_open_quests_from(db: Session, user: User, goal: MasterGoal, today: date) -> int:
    rows = (
        db.query(AIDailyQuest)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.goal_id == goal.id,
            AIDailyQuest.scheduled_for >= today.isoformat(),
            AIDailyQuest.status.in_(NON_TERMINAL_QUEST_STATUSES),
        )
        .all()
    )
    for row in rows:
        row.status = "skipped"
    return len(rows)


def _abandon(db: Session, user: User, goal: MasterGoal, today: date) -> None:
    skipped = _skip_open_quests_from(db, user, goal, today)
    goal.status = "abandoned"
    logger.info("Goal %s abandoned for user %s (%d open quests skipped)", goal.id, user.id, skipped)


async def set_goal(
    db: Session,
    user: User,
    goal_text: str,
    author: CoachAuthor,
    today: date,
    timeline_days: int | None = None,
) -> tuple[MasterGoal, MasterPlan]:
    """Validate a goal, draft its plan and persist both. Nothing is written on rejection."""
    text = (goal_text or "").strip()
    if not text:
        raise ValidationRejected("Goal text is required", suggestions=["Describe what you want to achieve"])
    timeline = resolve_timeline(timeline_days)

    analysis = await author.validate_and_draft_goal(text, timeline)
    if not is_goal_acceptable(analysis):
        raise ValidationRejected(
            "Goal did not pass validation",
            scores=analysis.scores(),
            suggestions=analysis.suggestions,
            refined_goal=analysis.refined_goal,
        )
    final_text = (analysis.refined_goal or "").strip() or text

    context = build_user_context(db, user, today)
    draft = await author.generate_plan(final_text, timeline, context)
    validate_plan_draft(draft, timeline)

    previous = get_active_goal(db, user)
    if previous:
        _abandon(db, user, previous, today)
        db.flush()

    goal = MasterGoal(
        user_id=user.id,
        goal_text=final_text,
        timeline_days=timeline,
        start_date=today.isoformat(),
        target_date=(today + timedelta(days=timeline - 1)).isoformat(),
        status="active",
        analysis_json=_json_dump(analysis.scores()),
        analyzed_at=datetime.utcnow(),
    )
    db.add(goal)
    db.flush()
    plan = materialize_plan(db, user, goal, draft)
    commit_or_raise(db, "saving a new goal")
    db.refresh(goal)
    logger.info("Goal %s set for user %s (%d days)", goal.id, user.id, timeline)
    return goal, plan


def abandon_goal(db: Session, user: User, today: date) -> MasterGoal:
    goal = get_active_goal(db, user)
    if not goal:
        raise NotFound("No active goal")
    _abandon(db, user, goal, today)
    commit_or_raise(db, "abandoning a goal")
    return goal


def _reconcile_milestones(db: Session, user: User, goal: MasterGoal, plan: MasterPlan, draft: PlanDraft) -> None:
    """Align milestone records with a regenerated plan body.

    Open records take the new entry's title and dates. Open records whose index the new
    plan no longer has are settled as missed. Completed and missed records are history
    and stay untouched.
    """
    entries = {int(entry["index"]): entry for entry in _milestone_entries(draft)}
    for row in goal.milestones:
        entry = entries.pop(int(row.milestone_index), None)
        if row.status in TERMINAL_MILESTONE_STATUSES:
            continue
        if entry is None:
            row.status = "missed"
            logger.info("Milestone %s dropped by plan regeneration for goal %s", row.id, goal.id)
            continue
        fresh = _milestone_record(user, goal, plan, entry)
        row.plan_id = plan.id
        row.title = fresh.title
        row.description = fresh.description
        row.target_day = fresh.target_day
        row.target_date = fresh.target_date
    for entry in entries.values():
        db.add(_milestone_record(user, goal, plan, entry))


async def regenerate_plan(db: Session, user: User, author: CoachAuthor, today: date) -> MasterPlan:
    """Replace the active goal's plan body and bump its version.

    Open milestone records follow the new plan; new indices get fresh pending records.
    """
    goal = get_active_goal(db, user)
    if not goal or not goal.plan:
        raise NotFound("No active goal with a plan")
    goal_id = goal.id
    context = build_user_context(db, user, today)
    draft = await author.generate_plan(goal.goal_text, int(goal.timeline_days), context)
    validate_plan_draft(draft, int(goal.timeline_days))

    goal = db.query(MasterGoal).filter(MasterGoal.id == goal_id).first()
    if not goal or goal.status != "active":
        raise NotFound("Goal is no longer active")
    plan = goal.plan
    _write_plan_body(plan, draft)
    plan.version = int(plan.version or 1) + 1

    _reconcile_milestones(db, user, goal, plan, draft)
    commit_or_raise(db, "regenerating a plan")
    logger.info("Plan for goal %s regenerated (version %s)", goal.id, plan.version)
    return plan


def close_goal_if_finished(db: Session, user: User, goal: MasterGoal, today: date) -> bool:
    """Mark the goal completed once its final day has passed. The caller owns the transaction."""
    if goal.status != "active":
        return False
    target = parse_iso_date(goal.target_date)
    if target is None or today <= target:
        return False
    goal.status = "completed"
    logger.info("Goal %s completed for user %s", goal.id, user.id)
    return True


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def serialize_goal(goal: MasterGoal | None) -> dict[str, Any] | None:
    if not goal:
        return None
    return {
        "id": goal.id,
        "goal_text": goal.goal_text,
        "timeline_days": goal.timeline_days,
        "start_date": goal.start_date,
        "target_date": goal.target_date,
        "status": goal.status,
        "analysis": _safe_json_loads(goal.analysis_json, {}),
        "analyzed_at": goal.analyzed_at.isoformat() if goal.analyzed_at else None,
    }


def serialize_plan(plan: MasterPlan | None) -> dict[str, Any] | None:
    if not plan:
        return None
    return {
        "id": plan.id,
        "goal_id": plan.goal_id,
        "summary": plan.summary,
        "phases": plan_phases(plan),
        "daily_habits": _safe_json_loads(plan.daily_habits, []),
        "success_metrics": _safe_json_loads(plan.success_metrics, []),
        "milestones": _safe_json_loads(plan.milestones, []),
        "version": plan.version,
    }
