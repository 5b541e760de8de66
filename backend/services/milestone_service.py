from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from config import settings
from db.models import AIDailyQuest, MasterGoal, MilestoneRecord, User
from services.coach_errors import AlreadyTerminal, NotFound, commit_or_raise
from services.reward_service import LevelUpEvent, award_milestone_bonus
from utils.datetime_utils import parse_iso_date

logger = logging.getLogger(__name__)

TERMINAL_MILESTONE_STATUSES = {"completed", "missed"}

# Weighting between quest completion and elapsed time inside a milestone window.
QUEST_WEIGHT = 0.7
TIME_WEIGHT = 0.3


@dataclass
class MilestoneCheckResult:
    milestone: MilestoneRecord
    newly_completed: bool = False
    newly_missed: bool = False
    level_up: LevelUpEvent | None = None


def _safe_json_loads(raw: str | None, fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback


def serialize_milestone(row: MilestoneRecord) -> dict[str, Any]:
    return {
        "id": row.id,
        "goal_id": row.goal_id,
        "plan_id": row.plan_id,
        "milestone_index": row.milestone_index,
        "title": row.title,
        "description": row.description,
        "target_day": row.target_day,
        "target_date": row.target_date,
        "status": row.status,
        "completion_percentage": round(float(row.completion_percentage or 0.0), 1),
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
        "celebration_message": row.celebration_message,
        "reward_unlocked": row.reward_unlocked,
        "bonus_xp_awarded": int(row.bonus_xp_awarded or 0),
    }


def milestone_window(goal: MasterGoal, milestone: MilestoneRecord) -> tuple[date, date]:
    """Day after the previous milestone's target day through this milestone's target day."""
    start = parse_iso_date(goal.start_date)
    previous_days = [
        int(m.target_day)
        for m in goal.milestones
        if m.id != milestone.id and int(m.target_day) < int(milestone.target_day)
    ]
    if previous_days:
        start = start + timedelta(days=max(previous_days))
    end = parse_iso_date(milestone.target_date)
    return start, end


def compute_completion_percentage(db: Session, goal: MasterGoal, milestone: MilestoneRecord, today: date) -> float:
    start, end = milestone_window(goal, milestone)
    quests = (
        db.query(AIDailyQuest)
        .filter(
            AIDailyQuest.user_id == milestone.user_id,
            AIDailyQuest.goal_id == goal.id,
            AIDailyQuest.scheduled_for >= start.isoformat(),
            AIDailyQuest.scheduled_for <= end.isoformat(),
        )
        .all()
    )
    completed = sum(1 for q in quests if q.status == "completed")
    rate = completed / len(quests) if quests else 0.0

    window_days = (end - start).days + 1
    if window_days <= 0 or today < start:
        time_progress = 0.0
    else:
        time_progress = min(1.0, ((min(today, end) - start).days + 1) / window_days)

    return round(min(100.0, 100.0 * (QUEST_WEIGHT * rate + TIME_WEIGHT * time_progress)), 1)


def _plan_milestone(goal: MasterGoal, index: int) -> dict[str, Any]:
    if not goal.plan:
        return {}
    entries = _safe_json_loads(goal.plan.milestones, [])
    if not isinstance(entries, list):
        return {}
    for pos, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        entry_index = entry.get("index")
        if (entry_index if entry_index is not None else pos) == index:
            return entry
    return {}


def _complete(db: Session, user: User, goal: MasterGoal, row: MilestoneRecord, today: date) -> LevelUpEvent | None:
    planned = _plan_milestone(goal, row.milestone_index)
    reward = planned.get("reward") or {}
    xp = reward.get("xp")
    if xp is None:
        xp = settings.MILESTONE_DEFAULT_BONUS_XP

    row.status = "completed"
    row.completion_percentage = 100.0
    row.completed_at = datetime.utcnow()
    row.reward_unlocked = reward.get("unlock") or None
    row.celebration_message = planned.get("celebration_message") or (
        f"Milestone reached: {row.title}. {int(xp)} bonus XP awarded."
    )
    logger.info("Milestone %s completed for user %s", row.id, user.id)
    return award_milestone_bonus(db, user, row, int(xp), today)


def check_milestones(db: Session, user: User, goal: MasterGoal, today: date) -> list[MilestoneCheckResult]:
    """Recompute every open milestone of the goal. The caller owns the transaction."""
    results: list[MilestoneCheckResult] = []
    for row in goal.milestones:
        if row.status in TERMINAL_MILESTONE_STATUSES:
            continue
        result = MilestoneCheckResult(milestone=row)
        previous = float(row.completion_percentage or 0.0)
        pct = max(previous, compute_completion_percentage(db, goal, row, today))
        row.completion_percentage = pct

        if row.status == "pending" and _has_related_completion(db, goal, row):
            row.status = "in_progress"

        if pct >= 100.0:
            result.level_up = _complete(db, user, goal, row, today)
            result.newly_completed = True
        elif today > parse_iso_date(row.target_date):
            row.status = "missed"
            result.newly_missed = True
            logger.info("Milestone %s missed for user %s", row.id, user.id)
        results.append(result)
    db.flush()
    return results


def _has_related_completion(db: Session, goal: MasterGoal, row: MilestoneRecord) -> bool:
    start, end = milestone_window(goal, row)
    return (
        db.query(AIDailyQuest.id)
        .filter(
            AIDailyQuest.goal_id == goal.id,
            AIDailyQuest.status == "completed",
            AIDailyQuest.scheduled_for >= start.isoformat(),
            AIDailyQuest.scheduled_for <= end.isoformat(),
        )
        .first()
        is not None
    )


def _get_milestone(db: Session, user: User, milestone_id: int) -> MilestoneRecord:
    row = (
        db.query(MilestoneRecord)
        .filter(MilestoneRecord.id == milestone_id, MilestoneRecord.user_id == user.id)
        .first()
    )
    if not row:
        raise NotFound(f"Milestone {milestone_id} not found")
    return row


def record_milestone_progress(
    db: Session,
    user: User,
    milestone_id: int,
    percentage: float,
    today: date,
) -> MilestoneCheckResult:
    """Explicit progress update. The stored percentage never goes down."""
    row = _get_milestone(db, user, milestone_id)
    if row.status in TERMINAL_MILESTONE_STATUSES:
        raise AlreadyTerminal(
            f"Milestone {milestone_id} is already {row.status}",
            status=row.status,
            entity="milestone",
            entity_id=row.id,
        )
    goal = db.query(MasterGoal).filter(MasterGoal.id == row.goal_id).first()
    result = MilestoneCheckResult(milestone=row)
    row.completion_percentage = max(float(row.completion_percentage or 0.0), min(100.0, max(0.0, float(percentage))))
    if row.status == "pending":
        row.status = "in_progress"
    if row.completion_percentage >= 100.0:
        result.level_up = _complete(db, user, goal, row, today)
        result.newly_completed = True
    commit_or_raise(db, "recording milestone progress")
    return result


def list_milestones(db: Session, user: User, goal_id: int | None = None) -> list[MilestoneRecord]:
    q = db.query(MilestoneRecord).filter(MilestoneRecord.user_id == user.id)
    if goal_id is not None:
        q = q.filter(MilestoneRecord.goal_id == goal_id)
    return q.order_by(MilestoneRecord.goal_id.asc(), MilestoneRecord.milestone_index.asc()).all()


def next_milestone(goal: MasterGoal | None) -> MilestoneRecord | None:
    if not goal:
        return None
    open_rows = [m for m in goal.milestones if m.status not in TERMINAL_MILESTONE_STATUSES]
    if not open_rows:
        return None
    return min(open_rows, key=lambda m: (int(m.target_day), int(m.milestone_index)))
