from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from db.models import AIDailyQuest, WeeklyReview, User, XpLedgerEntry
from services.coach_errors import commit_or_raise
from services.user_context import get_active_goal
from utils.datetime_utils import sunday_based_weekday

logger = logging.getLogger(__name__)

# (minimum completion rate, verdict), checked top down.
VERDICT_THRESHOLDS: list[tuple[float, str]] = [
    (0.9, "excellent"),
    (0.7, "good"),
    (0.5, "adequate"),
    (0.3, "needs_improvement"),
]
LOWEST_VERDICT = "disappointing"
STRUGGLING_VERDICTS = {"needs_improvement", "disappointing"}

COMMENTARY = {
    "excellent": "Exceptional week. {pct}% quest completion shows real dedication.",
    "good": "Solid week. {completed} quests completed. Keep this trajectory.",
    "adequate": "Basic progress maintained at {pct}% completion. There is more in you.",
    "needs_improvement": "Completion fell to {pct}%. Something is getting in the way.",
    "disappointing": "Only {pct}% of quests were completed this week. Time to reset the approach.",
}

RECOMMENDATIONS = {
    "excellent": [
        "Increase difficulty to keep growing",
        "Consider adding an extra challenge quest",
    ],
    "good": [
        "Maintain current momentum",
        "Identify and strengthen weak areas",
        "Focus on consistency over intensity",
    ],
    "adequate": [
        "Review and simplify your daily routine",
        "Start with easier quests to build momentum",
        "Set specific times for quest completion",
    ],
    "needs_improvement": [
        "Reduce quest count to focus on completion",
        "Identify obstacles preventing completion",
        "Start with one quest and build up",
    ],
    "disappointing": [
        "Reassess your current goal and timeline",
        "Focus on just one habit this week",
        "Remove friction from your environment",
    ],
}


@dataclass
class WeeklyStats:
    week_start: date
    week_end: date
    total_quests: int = 0
    completed_quests: int = 0
    failed_quests: int = 0
    skipped_quests: int = 0
    completion_rate: float = 0.0
    xp_earned: int = 0
    streak_maintained: bool = True
    stats_gained: dict[str, int] = field(default_factory=dict)


def verdict_for(completion_rate: float) -> str:
    for minimum, verdict in VERDICT_THRESHOLDS:
        if completion_rate >= minimum:
            return verdict
    return LOWEST_VERDICT


def difficulty_adjustment_for(verdict: str, streak_maintained: bool, previous_verdict: str | None) -> str:
    if verdict == "excellent" and streak_maintained:
        return "increase"
    if verdict in STRUGGLING_VERDICTS and previous_verdict in STRUGGLING_VERDICTS:
        return "decrease"
    return "maintain"


def review_window(as_of: date) -> tuple[date, date]:
    """Seven full days ending the day before ``as_of``."""
    week_end = as_of - timedelta(days=1)
    return week_end - timedelta(days=6), week_end


def aggregate_week(db: Session, user: User, week_start: date, week_end: date) -> WeeklyStats:
    start, end = week_start.isoformat(), week_end.isoformat()
    stats = WeeklyStats(week_start=week_start, week_end=week_end)

    statuses = (
        db.query(AIDailyQuest.status)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.scheduled_for >= start,
            AIDailyQuest.scheduled_for <= end,
        )
        .all()
    )
    stats.total_quests = len(statuses)
    stats.completed_quests = sum(1 for (s,) in statuses if s == "completed")
    stats.failed_quests = sum(1 for (s,) in statuses if s == "failed")
    stats.skipped_quests = sum(1 for (s,) in statuses if s == "skipped")
    stats.completion_rate = (stats.completed_quests / stats.total_quests) if stats.total_quests else 0.0
    stats.streak_maintained = stats.failed_quests == 0

    ledger_filter = (
        XpLedgerEntry.user_id == user.id,
        XpLedgerEntry.awarded_on >= start,
        XpLedgerEntry.awarded_on <= end,
    )
    stats.xp_earned = int(db.query(func.coalesce(func.sum(XpLedgerEntry.amount), 0)).filter(*ledger_filter).scalar() or 0)
    rows = (
        db.query(XpLedgerEntry.stat_name, func.sum(XpLedgerEntry.stat_delta))
        .filter(*ledger_filter, XpLedgerEntry.stat_name.isnot(None))
        .group_by(XpLedgerEntry.stat_name)
        .all()
    )
    stats.stats_gained = {name: int(total or 0) for name, total in rows if name}
    return stats


def _existing_review(db: Session, user: User, week_start: date) -> WeeklyReview | None:
    return (
        db.query(WeeklyReview)
        .filter(WeeklyReview.user_id == user.id, WeeklyReview.week_start == week_start.isoformat())
        .first()
    )


def run_weekly_review(db: Session, user: User, as_of: date) -> tuple[WeeklyReview, bool]:
    """Create the review for the week ending yesterday, or return the one already stored."""
    week_start, week_end = review_window(as_of)
    existing = _existing_review(db, user, week_start)
    if existing:
        return existing, False

    stats = aggregate_week(db, user, week_start, week_end)
    verdict = verdict_for(stats.completion_rate)
    previous = (
        db.query(WeeklyReview)
        .filter(WeeklyReview.user_id == user.id, WeeklyReview.week_start < week_start.isoformat())
        .order_by(WeeklyReview.week_start.desc())
        .first()
    )
    adjustment = difficulty_adjustment_for(verdict, stats.streak_maintained, previous.verdict if previous else None)
    pct = f"{stats.completion_rate * 100:.1f}"
    goal = get_active_goal(db, user)

    row = WeeklyReview(
        user_id=user.id,
        goal_id=goal.id if goal else None,
        week_start=week_start.isoformat(),
        week_end=week_end.isoformat(),
        verdict=verdict,
        completion_rate=round(stats.completion_rate, 4),
        total_quests=stats.total_quests,
        completed_quests=stats.completed_quests,
        failed_quests=stats.failed_quests,
        skipped_quests=stats.skipped_quests,
        xp_earned=stats.xp_earned,
        streak_maintained=stats.streak_maintained,
        stats_gained=json.dumps(stats.stats_gained, ensure_ascii=True),
        difficulty_adjustment=adjustment,
        system_commentary=COMMENTARY[verdict].format(pct=pct, completed=stats.completed_quests),
        recommendations=json.dumps(RECOMMENDATIONS[verdict], ensure_ascii=True),
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        winner = _existing_review(db, user, week_start)
        if winner:
            return winner, False
        raise
    commit_or_raise(db, "saving a weekly review")
    logger.info("Weekly review %s for user %s: %s (%s)", week_start.isoformat(), user.id, verdict, adjustment)
    return row, True


def get_latest_review(db: Session, user: User) -> WeeklyReview | None:
    return (
        db.query(WeeklyReview)
        .filter(WeeklyReview.user_id == user.id)
        .order_by(WeeklyReview.week_start.desc())
        .first()
    )


def is_weekly_review_due(db: Session, user: User, today: date) -> bool:
    if sunday_based_weekday(today) != int(settings.WEEKLY_REVIEW_DAY):
        return False
    week_start, _ = review_window(today)
    return _existing_review(db, user, week_start) is None


def serialize_review(row: WeeklyReview | None) -> dict[str, Any] | None:
    if not row:
        return None
    try:
        recommendations = json.loads(row.recommendations or "[]")
    except json.JSONDecodeError:
        recommendations = []
    try:
        stats_gained = json.loads(row.stats_gained or "{}")
    except json.JSONDecodeError:
        stats_gained = {}
    return {
        "id": row.id,
        "goal_id": row.goal_id,
        "week_start": row.week_start,
        "week_end": row.week_end,
        "verdict": row.verdict,
        "completion_rate": row.completion_rate,
        "total_quests": row.total_quests,
        "completed_quests": row.completed_quests,
        "failed_quests": row.failed_quests,
        "skipped_quests": row.skipped_quests,
        "xp_earned": row.xp_earned,
        "streak_maintained": bool(row.streak_maintained),
        "stats_gained": stats_gained,
        "difficulty_adjustment": row.difficulty_adjustment,
        "system_commentary": row.system_commentary,
        "recommendations": recommendations,
    }
