from __future__ import annotations

import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any

from sqlalchemy.orm import Session

from db.models import (
    AIDailyQuest,
    LevelState,
    MasterGoal,
    MasterPlan,
    Streak,
    User,
    UserStats,
    WeeklyReview,
)
from utils.datetime_utils import parse_iso_date

STAT_NAMES = ("strength", "agility", "intelligence", "vitality")
DEFAULT_STAT_VALUE = 10


@dataclass
class UserContext:
    """Snapshot handed to the authoring collaborator. Built fresh for every call."""

    user_id: int
    as_of: str
    level: int = 1
    total_xp: int = 0
    current_streak: int = 0
    best_streak: int = 0
    completed_quests_today: int = 0
    total_quests_completed: int = 0
    recent_quest_types: list[str] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)
    master_goal: dict[str, Any] | None = None
    current_phase: dict[str, Any] | None = None
    daily_habits: list[dict[str, Any]] = field(default_factory=list)
    recent_performance: dict[str, Any] | None = None
    difficulty_adjustment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _safe_json_loads(raw: str | None, fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback


def get_active_goal(db: Session, user: User) -> MasterGoal | None:
    return (
        db.query(MasterGoal)
        .filter(MasterGoal.user_id == user.id, MasterGoal.status == "active")
        .order_by(MasterGoal.id.desc())
        .first()
    )


def plan_phases(plan: MasterPlan | None) -> list[dict[str, Any]]:
    if not plan:
        return []
    phases = _safe_json_loads(plan.phases, [])
    return phases if isinstance(phases, list) else []


def days_elapsed(goal: MasterGoal, today: date) -> int:
    start = parse_iso_date(goal.start_date) or today
    return max(0, (today - start).days)


def phase_for_day(phases: list[dict[str, Any]], day_number: int) -> dict[str, Any] | None:
    """Phase whose [start_day, end_day] contains day_number; past the end, the last phase."""
    if not phases:
        return None
    for phase in phases:
        if int(phase.get("start_day", 0)) <= day_number <= int(phase.get("end_day", 0)):
            return phase
    ordered = sorted(phases, key=lambda p: int(p.get("end_day", 0)))
    if day_number > int(ordered[-1].get("end_day", 0)):
        return ordered[-1]
    return ordered[0]


def current_phase_for(goal: MasterGoal | None, plan: MasterPlan | None, today: date) -> dict[str, Any] | None:
    if not goal or not plan:
        return None
    return phase_for_day(plan_phases(plan), days_elapsed(goal, today) + 1)


def goal_progress(goal: MasterGoal, today: date) -> dict[str, Any]:
    elapsed = days_elapsed(goal, today)
    timeline = max(int(goal.timeline_days or 1), 1)
    return {
        "days_elapsed": elapsed,
        "days_remaining": max(0, timeline - elapsed),
        "percentage": round(min(100.0, elapsed / timeline * 100.0), 1),
    }


def latest_difficulty_adjustment(db: Session, user: User) -> str | None:
    row = (
        db.query(WeeklyReview)
        .filter(WeeklyReview.user_id == user.id)
        .order_by(WeeklyReview.week_start.desc())
        .first()
    )
    return row.difficulty_adjustment if row else None


def _recent_performance(db: Session, user: User, today: date) -> dict[str, Any] | None:
    window_start = (today - timedelta(days=7)).isoformat()
    rows = (
        db.query(AIDailyQuest)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.scheduled_for >= window_start,
            AIDailyQuest.scheduled_for < today.isoformat(),
        )
        .all()
    )
    if not rows:
        return None
    completed = [q for q in rows if q.status == "completed"]
    difficulty = Counter(q.difficulty for q in rows).most_common(1)[0][0]
    preferred = [name for name, _ in Counter(q.quest_type for q in completed).most_common(3)]
    return {
        "last_week_completion_rate": round(len(completed) / len(rows) * 100.0, 1),
        "average_difficulty": difficulty,
        "preferred_quest_types": preferred,
    }


def _recent_quest_types(db: Session, user: User, today: date, limit: int = 10) -> list[str]:
    window_start = (today - timedelta(days=7)).isoformat()
    rows = (
        db.query(AIDailyQuest.quest_type)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.scheduled_for >= window_start,
            AIDailyQuest.scheduled_for <= today.isoformat(),
        )
        .order_by(AIDailyQuest.scheduled_for.desc(), AIDailyQuest.id.desc())
        .all()
    )
    out: list[str] = []
    for (quest_type,) in rows:
        if quest_type and quest_type not in out:
            out.append(quest_type)
        if len(out) >= limit:
            break
    return out


def build_user_context(db: Session, user: User, today: date) -> UserContext:
    """Read-only: never writes, so it is safe to call right before awaiting the collaborator."""
    level = db.query(LevelState).filter(LevelState.user_id == user.id).first()
    stats = db.query(UserStats).filter(UserStats.user_id == user.id).first()
    streak = db.query(Streak).filter(Streak.user_id == user.id).first()

    completed_today = (
        db.query(AIDailyQuest)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.scheduled_for == today.isoformat(),
            AIDailyQuest.status == "completed",
        )
        .count()
    )

    ctx = UserContext(
        user_id=user.id,
        as_of=today.isoformat(),
        level=int(level.level) if level else 1,
        total_xp=int(level.total_xp) if level else 0,
        current_streak=int(streak.current_streak) if streak else 0,
        best_streak=int(streak.best_streak) if streak else 0,
        completed_quests_today=completed_today,
        total_quests_completed=int(stats.total_quests_completed) if stats else 0,
        recent_quest_types=_recent_quest_types(db, user, today),
        stats={name: int(getattr(stats, name)) if stats else DEFAULT_STAT_VALUE for name in STAT_NAMES},
        recent_performance=_recent_performance(db, user, today),
        difficulty_adjustment=latest_difficulty_adjustment(db, user),
    )

    goal = get_active_goal(db, user)
    if goal:
        plan = goal.plan
        phase = current_phase_for(goal, plan, today)
        progress = goal_progress(goal, today)
        ctx.master_goal = {
            "goal_id": goal.id,
            "goal_text": goal.goal_text,
            "timeline_days": goal.timeline_days,
            "days_elapsed": progress["days_elapsed"],
            "days_remaining": progress["days_remaining"],
            "progress_percentage": progress["percentage"],
            "current_phase": int(phase["number"]) if phase else None,
        }
        ctx.current_phase = phase
        if plan:
            habits = _safe_json_loads(plan.daily_habits, [])
            ctx.daily_habits = habits if isinstance(habits, list) else []
    return ctx
