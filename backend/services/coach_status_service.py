from __future__ import annotations

from datetime import date
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from db.models import AIDailyQuest, Streak, User, UserStats, XpLedgerEntry
from services.goal_service import serialize_goal, serialize_plan
from services.milestone_service import next_milestone, serialize_milestone
from services.quest_service import quests_for_day, regeneration_status, serialize_quest
from services.review_service import get_latest_review, is_weekly_review_due, serialize_review
from services.reward_service import level_summary
from services.user_context import STAT_NAMES, DEFAULT_STAT_VALUE, current_phase_for, get_active_goal, goal_progress


def _overall_progress(db: Session, user: User, goal, today: date) -> dict[str, Any]:
    if not goal:
        return {"percentage": 0.0, "days_elapsed": 0, "days_remaining": 0, "quests_completed": 0, "xp_earned": 0}
    progress = goal_progress(goal, today)
    quests_completed = (
        db.query(AIDailyQuest)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.goal_id == goal.id,
            AIDailyQuest.status == "completed",
        )
        .count()
    )
    xp_earned = (
        db.query(func.coalesce(func.sum(XpLedgerEntry.amount), 0))
        .filter(XpLedgerEntry.user_id == user.id, XpLedgerEntry.awarded_on >= goal.start_date)
        .scalar()
    )
    progress.update({"quests_completed": quests_completed, "xp_earned": int(xp_earned or 0)})
    return progress


def get_daily_status(db: Session, user: User, today: date) -> dict[str, Any]:
    """Read-only snapshot of everything the dashboard shows for ``today``."""
    goal = get_active_goal(db, user)
    plan = goal.plan if goal else None
    milestone = next_milestone(goal)
    stats = db.query(UserStats).filter(UserStats.user_id == user.id).first()
    streak = db.query(Streak).filter(Streak.user_id == user.id).first()

    return {
        "has_active_goal": goal is not None,
        "goal": serialize_goal(goal),
        "master_plan": serialize_plan(plan),
        "todays_quests": [serialize_quest(q) for q in quests_for_day(db, user, today)],
        "regeneration": regeneration_status(db, user, today),
        "current_phase": current_phase_for(goal, plan, today),
        "next_milestone": serialize_milestone(milestone) if milestone else None,
        "weekly_review_due": is_weekly_review_due(db, user, today),
        "last_weekly_review": serialize_review(get_latest_review(db, user)),
        "overall_progress": _overall_progress(db, user, goal, today),
        "level": level_summary(db, user),
        "stats": {name: int(getattr(stats, name)) if stats else DEFAULT_STAT_VALUE for name in STAT_NAMES},
        "streak": {
            "current": int(streak.current_streak) if streak else 0,
            "best": int(streak.best_streak) if streak else 0,
        },
    }
