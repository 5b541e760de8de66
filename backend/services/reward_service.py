from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from db.models import (
    AIDailyQuest,
    HealthDailyMetrics,
    LevelState,
    MilestoneRecord,
    Streak,
    User,
    UserStats,
    XpLedgerEntry,
)
from services.user_context import DEFAULT_STAT_VALUE, STAT_NAMES

logger = logging.getLogger(__name__)

# Stat points granted per completed quest with a stat bonus, by difficulty.
STAT_INCREMENT_BY_DIFFICULTY = {
    "easy": 1,
    "medium": 1,
    "hard": 2,
    "extreme": 3,
}

MAX_LEVEL = 100


@dataclass
class LevelUpEvent:
    previous_level: int
    new_level: int
    stat_deltas: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_level": self.previous_level,
            "new_level": self.new_level,
            "stat_deltas": dict(self.stat_deltas),
        }


@dataclass
class RewardOutcome:
    xp_awarded: int = 0
    base_xp: int = 0
    health_bonus_xp: int = 0
    stat_name: str | None = None
    stat_delta: int = 0
    level_up: LevelUpEvent | None = None


def xp_to_next_level(level: int) -> int:
    """XP needed to go from ``level`` to ``level + 1``."""
    return 250 * level * level + 750 * level


def level_threshold(level: int) -> int:
    """Cumulative XP at which ``level`` is reached (level 1 starts at 0)."""
    return sum(xp_to_next_level(lvl) for lvl in range(1, max(level, 1)))


def level_for_xp(total_xp: int) -> int:
    level = 1
    remaining = max(int(total_xp), 0)
    while level < MAX_LEVEL and remaining >= xp_to_next_level(level):
        remaining -= xp_to_next_level(level)
        level += 1
    return level


def health_bonus_for(
    steps: int = 0,
    workout_count: int = 0,
    sleep_minutes: int = 0,
    active_calories: float = 0.0,
) -> int:
    """Telemetry bonus: each category capped on its own, then summed."""
    step_bonus = min(10, max(int(steps), 0) // 1000)
    workout_bonus = min(25, max(int(workout_count), 0) * 5)
    sleep_hours = max(int(sleep_minutes), 0) / 60.0
    if 7.0 <= sleep_hours <= 9.0:
        sleep_bonus = 10
    elif sleep_hours >= 6.0:
        sleep_bonus = 5
    else:
        sleep_bonus = 0
    calorie_bonus = min(10, int(max(float(active_calories), 0.0) // 100))
    return step_bonus + workout_bonus + sleep_bonus + calorie_bonus


def _workouts(row: HealthDailyMetrics) -> list[dict[str, Any]]:
    try:
        parsed = json.loads(row.workouts_json or "[]")
    except json.JSONDecodeError:
        return []
    return parsed if isinstance(parsed, list) else []


def health_bonus_for_metrics(row: HealthDailyMetrics | None) -> int:
    if row is None:
        return 0
    return health_bonus_for(
        steps=row.steps or 0,
        workout_count=len(_workouts(row)),
        sleep_minutes=row.sleep_minutes or 0,
        active_calories=row.active_calories or 0.0,
    )


def ensure_progress_rows(db: Session, user: User) -> tuple[LevelState, UserStats, Streak]:
    level = db.query(LevelState).filter(LevelState.user_id == user.id).first()
    if not level:
        level = LevelState(user_id=user.id, level=1, total_xp=0, level_boundary_ledger_id=0)
        db.add(level)
    stats = db.query(UserStats).filter(UserStats.user_id == user.id).first()
    if not stats:
        stats = UserStats(user_id=user.id, total_quests_completed=0)
        for name in STAT_NAMES:
            setattr(stats, name, DEFAULT_STAT_VALUE)
        db.add(stats)
    streak = db.query(Streak).filter(Streak.user_id == user.id).first()
    if not streak:
        streak = Streak(user_id=user.id, current_streak=0, best_streak=0)
        db.add(streak)
    db.flush()
    return level, stats, streak


def _stat_deltas_since(db: Session, user: User, after_ledger_id: int) -> dict[str, int]:
    rows = (
        db.query(XpLedgerEntry.stat_name, func.sum(XpLedgerEntry.stat_delta))
        .filter(
            XpLedgerEntry.user_id == user.id,
            XpLedgerEntry.id > after_ledger_id,
            XpLedgerEntry.stat_name.isnot(None),
        )
        .group_by(XpLedgerEntry.stat_name)
        .all()
    )
    return {name: int(total or 0) for name, total in rows if name and int(total or 0)}


def _apply_xp(db: Session, user: User, amount: int) -> LevelUpEvent | None:
    """Add XP to the level state; ledger rows for this award must already be flushed."""
    level_state, _, _ = ensure_progress_rows(db, user)
    previous_level = int(level_state.level or 1)
    level_state.total_xp = int(level_state.total_xp or 0) + max(int(amount), 0)
    new_level = level_for_xp(level_state.total_xp)
    if new_level <= previous_level:
        return None

    boundary = int(level_state.level_boundary_ledger_id or 0)
    deltas = _stat_deltas_since(db, user, boundary)
    latest_id = (
        db.query(func.max(XpLedgerEntry.id)).filter(XpLedgerEntry.user_id == user.id).scalar()
    ) or boundary
    level_state.level = new_level
    level_state.level_boundary_ledger_id = int(latest_id)
    logger.info("User %s leveled up %s -> %s", user.id, previous_level, new_level)
    return LevelUpEvent(previous_level=previous_level, new_level=new_level, stat_deltas=deltas)


def _health_bonus_topup(db: Session, user: User, day: str) -> tuple[int, HealthDailyMetrics | None]:
    row = (
        db.query(HealthDailyMetrics)
        .filter(HealthDailyMetrics.user_id == user.id, HealthDailyMetrics.metric_date == day)
        .first()
    )
    if row is None:
        return 0, None
    topup = max(0, health_bonus_for_metrics(row) - int(row.bonus_xp_awarded or 0))
    return topup, row


def award_quest_completion(db: Session, user: User, quest: AIDailyQuest) -> RewardOutcome:
    """Record XP, stat and level effects for a quest that just became completed.

    The caller owns the transaction.
    """
    _, stats, _ = ensure_progress_rows(db, user)
    base_xp = max(int(quest.xp_reward or 0), 0)
    stat_name = quest.stat_bonus if quest.stat_bonus in STAT_NAMES else None
    stat_delta = STAT_INCREMENT_BY_DIFFICULTY.get(quest.difficulty, 1) if stat_name else 0

    db.add(XpLedgerEntry(
        user_id=user.id,
        source="quest",
        amount=base_xp,
        quest_id=quest.id,
        stat_name=stat_name,
        stat_delta=stat_delta,
        awarded_on=quest.scheduled_for,
        reason=f"Completed quest: {quest.title}",
    ))

    bonus, metrics_row = _health_bonus_topup(db, user, quest.scheduled_for)
    if bonus and metrics_row is not None:
        metrics_row.bonus_xp_awarded = int(metrics_row.bonus_xp_awarded or 0) + bonus
        db.add(XpLedgerEntry(
            user_id=user.id,
            source="health_bonus",
            amount=bonus,
            quest_id=quest.id,
            awarded_on=quest.scheduled_for,
            reason="Health telemetry bonus",
        ))

    if stat_name:
        setattr(stats, stat_name, int(getattr(stats, stat_name) or 0) + stat_delta)
    stats.total_quests_completed = int(stats.total_quests_completed or 0) + 1

    total = base_xp + bonus
    quest.xp_awarded = total
    db.flush()
    level_up = _apply_xp(db, user, total)
    return RewardOutcome(
        xp_awarded=total,
        base_xp=base_xp,
        health_bonus_xp=bonus,
        stat_name=stat_name,
        stat_delta=stat_delta,
        level_up=level_up,
    )


def award_milestone_bonus(
    db: Session,
    user: User,
    milestone: MilestoneRecord,
    amount: int,
    awarded_on: date,
) -> LevelUpEvent | None:
    amount = max(int(amount), 0)
    milestone.bonus_xp_awarded = amount
    db.add(XpLedgerEntry(
        user_id=user.id,
        source="milestone",
        amount=amount,
        milestone_id=milestone.id,
        awarded_on=awarded_on.isoformat(),
        reason=f"Milestone reached: {milestone.title}",
    ))
    db.flush()
    return _apply_xp(db, user, amount)


def level_summary(db: Session, user: User) -> dict[str, Any]:
    row = db.query(LevelState).filter(LevelState.user_id == user.id).first()
    level = int(row.level) if row else 1
    total_xp = int(row.total_xp) if row else 0
    floor_xp = level_threshold(level)
    return {
        "level": level,
        "total_xp": total_xp,
        "xp_into_level": total_xp - floor_xp,
        "xp_for_next_level": xp_to_next_level(level),
    }
