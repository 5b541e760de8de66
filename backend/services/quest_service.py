from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ai.coach_author import CoachAuthor
from ai.drafts import QuestDraft
from config import settings
from db.models import AIDailyQuest, MasterGoal, MilestoneRecord, QuestRegenerationLog, User
from services.coach_errors import AlreadyTerminal, CapacityExceeded, NotFound, commit_or_raise
from services.milestone_service import check_milestones
from services.reward_service import LevelUpEvent, award_quest_completion, ensure_progress_rows
from services.user_context import build_user_context, current_phase_for, get_active_goal
from utils.datetime_utils import date_range, parse_iso_date

logger = logging.getLogger(__name__)

TERMINAL_QUEST_STATUSES = {"completed", "failed", "skipped"}
NON_TERMINAL_QUEST_STATUSES = ("pending", "in_progress")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"in_progress", "failed", "skipped"},
    "in_progress": {"completed", "failed", "skipped"},
    "completed": set(),
    "failed": set(),
    "skipped": set(),
}


@dataclass
class CompletionResult:
    quest: AIDailyQuest
    xp_awarded: int = 0
    health_bonus_xp: int = 0
    stat_bonus_applied: str | None = None
    level_up: LevelUpEvent | None = None
    milestones_reached: list[MilestoneRecord] = field(default_factory=list)
    completed: bool = False
    ignored: bool = False


@dataclass
class SweepResult:
    failed_quests: int = 0
    evaluated_days: list[str] = field(default_factory=list)
    current_streak: int = 0
    best_streak: int = 0


def _transition(quest: AIDailyQuest, new_status: str) -> None:
    current = quest.status or "pending"
    if current in TERMINAL_QUEST_STATUSES:
        raise AlreadyTerminal(
            f"Quest {quest.id} is already {current}",
            status=current,
            entity="quest",
            entity_id=quest.id,
        )
    if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Quest cannot move from {current} to {new_status}")
    quest.status = new_status


def _clamp_value(quest: AIDailyQuest, value: float) -> float:
    ceiling = float(quest.target_value) * float(settings.QUEST_VALUE_CLAMP_MULTIPLE)
    return max(0.0, min(float(value), ceiling))


def serialize_quest(quest: AIDailyQuest) -> dict[str, Any]:
    return {
        "id": quest.id,
        "goal_id": quest.goal_id,
        "title": quest.title,
        "description": quest.description,
        "quest_type": quest.quest_type,
        "difficulty": quest.difficulty,
        "target_value": quest.target_value,
        "current_value": quest.current_value,
        "metric_key": quest.metric_key,
        "xp_reward": quest.xp_reward,
        "xp_awarded": quest.xp_awarded,
        "stat_bonus": quest.stat_bonus,
        "scheduled_for": quest.scheduled_for,
        "status": quest.status,
        "progress_source": quest.progress_source,
        "completed_at": quest.completed_at.isoformat() if quest.completed_at else None,
        "regeneration_count": quest.regeneration_count,
        "phase_number": quest.phase_number,
        "ai_reasoning": quest.ai_reasoning,
    }


def quests_for_day(db: Session, user: User, day: date) -> list[AIDailyQuest]:
    return (
        db.query(AIDailyQuest)
        .filter(AIDailyQuest.user_id == user.id, AIDailyQuest.scheduled_for == day.isoformat())
        .order_by(AIDailyQuest.id.asc())
        .all()
    )


def _get_quest(db: Session, user: User, quest_id: int) -> AIDailyQuest:
    quest = (
        db.query(AIDailyQuest)
        .filter(AIDailyQuest.id == quest_id, AIDailyQuest.user_id == user.id)
        .first()
    )
    if not quest:
        raise NotFound(f"Quest {quest_id} not found")
    return quest


# ---------------------------------------------------------------------------
# Generation / regeneration
# ---------------------------------------------------------------------------

def _phase_number(goal: MasterGoal | None, today: date) -> int | None:
    phase = current_phase_for(goal, goal.plan if goal else None, today)
    return int(phase["number"]) if phase else None


def _persist_drafts(
    db: Session,
    user: User,
    drafts: list[QuestDraft],
    day: date,
    regeneration_count: int,
) -> list[AIDailyQuest]:
    goal = get_active_goal(db, user)
    phase_number = _phase_number(goal, day)
    rows = []
    for draft in drafts:
        row = AIDailyQuest(
            user_id=user.id,
            goal_id=goal.id if goal else None,
            title=draft.title,
            description=draft.description,
            quest_type=draft.quest_type,
            difficulty=draft.difficulty,
            target_value=float(draft.target_value),
            current_value=0.0,
            metric_key=draft.metric_key,
            xp_reward=int(draft.xp_reward),
            xp_awarded=0,
            stat_bonus=draft.stat_bonus,
            scheduled_for=day.isoformat(),
            status="pending",
            progress_source="none",
            regeneration_count=regeneration_count,
            phase_number=phase_number,
            ai_reasoning=draft.ai_reasoning,
        )
        db.add(row)
        rows.append(row)
    db.flush()
    return rows


async def generate_daily_quests(
    db: Session,
    user: User,
    author: CoachAuthor,
    today: date,
) -> tuple[list[AIDailyQuest], bool]:
    """Create today's quest set once. Returns (quests, created)."""
    existing = quests_for_day(db, user, today)
    if existing:
        return existing, False

    context = build_user_context(db, user, today)
    drafts = await author.generate_quests(context)

    # Another request may have produced the set while the collaborator was working.
    existing = quests_for_day(db, user, today)
    if existing:
        return existing, False

    ensure_progress_rows(db, user)
    rows = _persist_drafts(db, user, drafts, today, regeneration_count=0)
    commit_or_raise(db, "saving generated quests")
    logger.info("Generated %d quests for user %s on %s", len(rows), user.id, today.isoformat())
    return rows, True


def regeneration_status(db: Session, user: User, day: date) -> dict[str, Any]:
    cap = int(settings.MAX_QUEST_REGENERATIONS_PER_DAY)
    used = (
        db.query(QuestRegenerationLog.count)
        .filter(
            QuestRegenerationLog.user_id == user.id,
            QuestRegenerationLog.regeneration_date == day.isoformat(),
        )
        .scalar()
    ) or 0
    remaining = max(0, cap - int(used))
    return {
        "can_regenerate": remaining > 0,
        "regenerations_used": int(used),
        "regenerations_remaining": remaining,
    }


def _ensure_regeneration_log(db: Session, user: User, day: date) -> None:
    exists = (
        db.query(QuestRegenerationLog.id)
        .filter(
            QuestRegenerationLog.user_id == user.id,
            QuestRegenerationLog.regeneration_date == day.isoformat(),
        )
        .first()
    )
    if exists:
        return
    db.add(QuestRegenerationLog(user_id=user.id, regeneration_date=day.isoformat(), count=0))
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request created the row first.
        db.rollback()


async def regenerate_quests(
    db: Session,
    user: User,
    author: CoachAuthor,
    today: date,
    reason: str | None = None,
) -> tuple[list[AIDailyQuest], dict[str, Any]]:
    """Swap today's open quests for a fresh batch, bounded by the daily cap.

    The cap is consumed by one conditional UPDATE inside the same transaction that
    deletes the old open quests and inserts the new ones, so concurrent requests
    cannot both pass it.
    """
    cap = int(settings.MAX_QUEST_REGENERATIONS_PER_DAY)
    if not regeneration_status(db, user, today)["can_regenerate"]:
        raise CapacityExceeded(f"Daily regeneration limit reached ({cap}). Try again tomorrow.")

    _ensure_regeneration_log(db, user, today)
    context = build_user_context(db, user, today)
    drafts = await author.generate_quests(context, reason=reason or "User requested different quests")

    day = today.isoformat()
    result = db.execute(
        update(QuestRegenerationLog)
        .where(
            QuestRegenerationLog.user_id == user.id,
            QuestRegenerationLog.regeneration_date == day,
            QuestRegenerationLog.count < cap,
        )
        .values(count=QuestRegenerationLog.count + 1, updated_at=datetime.utcnow())
    )
    if result.rowcount != 1:
        db.rollback()
        raise CapacityExceeded(f"Daily regeneration limit reached ({cap}). Try again tomorrow.")

    new_count = (
        db.query(QuestRegenerationLog.count)
        .filter(QuestRegenerationLog.user_id == user.id, QuestRegenerationLog.regeneration_date == day)
        .scalar()
    )
    (
        db.query(AIDailyQuest)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.scheduled_for == day,
            AIDailyQuest.status.in_(NON_TERMINAL_QUEST_STATUSES),
        )
        .delete(synchronize_session="fetch")
    )
    ensure_progress_rows(db, user)
    _persist_drafts(db, user, drafts, today, regeneration_count=int(new_count or 0))
    commit_or_raise(db, "regenerating quests")
    logger.info("Regenerated quests for user %s on %s (%s/%s)", user.id, day, new_count, cap)
    return quests_for_day(db, user, today), regeneration_status(db, user, today)


# ---------------------------------------------------------------------------
# Progress / completion
# ---------------------------------------------------------------------------

def _finish(db: Session, user: User, quest: AIDailyQuest, value: float, today: date) -> CompletionResult:
    """Move a quest to completed and apply rewards and milestone effects. No commit."""
    if quest.status == "pending":
        _transition(quest, "in_progress")
    _transition(quest, "completed")
    quest.current_value = value
    quest.completed_at = datetime.utcnow()
    db.flush()

    reward = award_quest_completion(db, user, quest)
    result = CompletionResult(
        quest=quest,
        xp_awarded=reward.xp_awarded,
        health_bonus_xp=reward.health_bonus_xp,
        stat_bonus_applied=reward.stat_name,
        level_up=reward.level_up,
        completed=True,
    )
    if quest.goal_id:
        goal = db.query(MasterGoal).filter(MasterGoal.id == quest.goal_id).first()
        if goal and goal.status == "active":
            for check in check_milestones(db, user, goal, today):
                if check.newly_completed:
                    result.milestones_reached.append(check.milestone)
                    if check.level_up and not result.level_up:
                        result.level_up = check.level_up
                    elif check.level_up and result.level_up:
                        result.level_up = LevelUpEvent(
                            previous_level=result.level_up.previous_level,
                            new_level=check.level_up.new_level,
                            stat_deltas=_merge_deltas(result.level_up.stat_deltas, check.level_up.stat_deltas),
                        )
    logger.info("Quest %s completed by user %s (+%d XP)", quest.id, user.id, result.xp_awarded)
    return result


def _merge_deltas(a: dict[str, int], b: dict[str, int]) -> dict[str, int]:
    merged = dict(a)
    for key, value in b.items():
        merged[key] = merged.get(key, 0) + value
    return merged


def _record_partial(quest: AIDailyQuest, value: float, source: str) -> None:
    quest.current_value = value
    quest.progress_source = source
    if quest.status == "pending" and value > 0:
        _transition(quest, "in_progress")


def _open_quest_for(db: Session, user: User, quest_id: int, today: date) -> AIDailyQuest:
    """Load a quest that can still take manual updates.

    A quest left open on a day that has already ended is failed on the spot, so it
    cannot earn rewards before the expiry sweep gets to it.
    """
    quest = _get_quest(db, user, quest_id)
    if quest.status in TERMINAL_QUEST_STATUSES:
        raise AlreadyTerminal(
            f"Quest {quest.id} is already {quest.status}",
            status=quest.status,
            entity="quest",
            entity_id=quest.id,
        )
    scheduled = parse_iso_date(quest.scheduled_for)
    if scheduled is not None and scheduled < today:
        _transition(quest, "failed")
        commit_or_raise(db, "failing an elapsed quest")
        logger.info("Quest %s of %s failed on late update by user %s", quest.id, scheduled, user.id)
        raise AlreadyTerminal(
            f"Quest {quest.id} was scheduled for {scheduled}, which has ended",
            status="failed",
            entity="quest",
            entity_id=quest.id,
        )
    return quest


def complete_quest(
    db: Session,
    user: User,
    quest_id: int,
    today: date,
    actual_value: float | None = None,
) -> CompletionResult:
    """Complete a quest. A value below target is recorded as progress only."""
    quest = _open_quest_for(db, user, quest_id, today)
    target = float(quest.target_value)
    value = _clamp_value(quest, target if actual_value is None else actual_value)

    if value < target:
        if quest.progress_source == "telemetry":
            return CompletionResult(quest=quest, ignored=True)
        _record_partial(quest, value, "manual")
        commit_or_raise(db, "recording quest progress")
        return CompletionResult(quest=quest)

    if quest.progress_source != "telemetry":
        quest.progress_source = "manual"
    result = _finish(db, user, quest, value, today)
    commit_or_raise(db, "completing a quest")
    return result


def update_quest_progress(
    db: Session,
    user: User,
    quest_id: int,
    value: float,
    today: date,
) -> CompletionResult:
    """Manual progress entry. Ignored once telemetry has reported for the quest."""
    quest = _open_quest_for(db, user, quest_id, today)
    if quest.progress_source == "telemetry":
        logger.info("Manual progress for telemetry-sourced quest %s ignored", quest.id)
        return CompletionResult(quest=quest, ignored=True)

    value = _clamp_value(quest, value)
    if value >= float(quest.target_value):
        quest.progress_source = "manual"
        result = _finish(db, user, quest, value, today)
    else:
        _record_partial(quest, value, "manual")
        result = CompletionResult(quest=quest)
    commit_or_raise(db, "recording quest progress")
    return result


def apply_telemetry_progress(
    db: Session,
    user: User,
    quest: AIDailyQuest,
    value: float,
    today: date,
) -> CompletionResult:
    """Telemetry overrides any manual value for the day. The caller owns the transaction."""
    value = _clamp_value(quest, value)
    if value >= float(quest.target_value):
        quest.progress_source = "telemetry"
        return _finish(db, user, quest, value, today)
    _record_partial(quest, value, "telemetry")
    return CompletionResult(quest=quest)


def skip_quest(db: Session, user: User, quest_id: int, today: date) -> AIDailyQuest:
    quest = _open_quest_for(db, user, quest_id, today)
    _transition(quest, "skipped")
    commit_or_raise(db, "skipping a quest")
    logger.info("Quest %s skipped by user %s", quest.id, user.id)
    return quest


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

def expire_overdue_quests(db: Session, user: User, today: date) -> SweepResult:
    """Fail open quests of elapsed days, then fold each newly elapsed day into the streak.

    A day extends the streak only when every quest scheduled for it was completed.
    Days without quests leave the streak untouched. Each day is evaluated once.
    """
    _, _, streak = ensure_progress_rows(db, user)
    result = SweepResult()

    overdue = (
        db.query(AIDailyQuest)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.scheduled_for < today.isoformat(),
            AIDailyQuest.status.in_(NON_TERMINAL_QUEST_STATUSES),
        )
        .all()
    )
    for quest in overdue:
        _transition(quest, "failed")
    result.failed_quests = len(overdue)
    db.flush()

    yesterday = today - timedelta(days=1)
    last = parse_iso_date(streak.last_evaluated_date)
    if last is not None:
        first_day = last + timedelta(days=1)
    else:
        earliest = (
            db.query(AIDailyQuest.scheduled_for)
            .filter(AIDailyQuest.user_id == user.id)
            .order_by(AIDailyQuest.scheduled_for.asc())
            .first()
        )
        first_day = parse_iso_date(earliest[0]) if earliest else None

    if first_day is not None and first_day <= yesterday:
        statuses: dict[str, list[str]] = {}
        rows = (
            db.query(AIDailyQuest.scheduled_for, AIDailyQuest.status)
            .filter(
                AIDailyQuest.user_id == user.id,
                AIDailyQuest.scheduled_for >= first_day.isoformat(),
                AIDailyQuest.scheduled_for <= yesterday.isoformat(),
            )
            .all()
        )
        for day_key, status in rows:
            statuses.setdefault(day_key, []).append(status)

        for day in date_range(first_day, yesterday):
            day_statuses = statuses.get(day.isoformat())
            if not day_statuses:
                continue
            if all(s == "completed" for s in day_statuses):
                streak.current_streak = int(streak.current_streak or 0) + 1
                streak.best_streak = max(int(streak.best_streak or 0), streak.current_streak)
            else:
                streak.current_streak = 0
            result.evaluated_days.append(day.isoformat())
        streak.last_evaluated_date = yesterday.isoformat()

    result.current_streak = int(streak.current_streak or 0)
    result.best_streak = int(streak.best_streak or 0)
    commit_or_raise(db, "expiring overdue quests")
    if result.failed_quests:
        logger.info("Expired %d quests for user %s", result.failed_quests, user.id)
    return result
