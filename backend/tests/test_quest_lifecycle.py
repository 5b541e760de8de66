"""Tests for quest generation, regeneration, completion and the expiry sweep."""
from __future__ import annotations

import asyncio
import sys
from datetime import date, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.coach_author import FallbackCoachAuthor  # noqa: E402
from config import settings  # noqa: E402
from db.database import Base  # noqa: E402
from db.models import AIDailyQuest, QuestRegenerationLog, Streak, User, UserStats  # noqa: E402
from services.coach_errors import AlreadyTerminal, CapacityExceeded, NotFound  # noqa: E402
from services.goal_service import set_goal  # noqa: E402
from services.quest_service import (  # noqa: E402
    ALLOWED_TRANSITIONS,
    TERMINAL_QUEST_STATUSES,
    apply_telemetry_progress,
    complete_quest,
    expire_overdue_quests,
    generate_daily_quests,
    quests_for_day,
    regenerate_quests,
    regeneration_status,
    skip_quest,
    update_quest_progress,
)

START = date(2026, 3, 1)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username="quest_tester") -> User:
    user = User(username=username, display_name="Quest Tester")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


class _CountingAuthor(FallbackCoachAuthor):
    def __init__(self):
        self.quest_calls = 0
        self.reasons: list[str | None] = []

    async def generate_quests(self, context, reason=None):
        self.quest_calls += 1
        self.reasons.append(reason)
        return await super().generate_quests(context, reason)


def _user_with_goal(db, author=None, timeline_days=90):
    user = _new_user(db)
    asyncio.run(set_goal(db, user, "Run a half marathon in under two hours", author or FallbackCoachAuthor(), START, timeline_days))
    return user


def _quest(db, user, day, **overrides) -> AIDailyQuest:
    values = dict(
        user_id=user.id,
        title="Walk",
        quest_type="cardio",
        difficulty="medium",
        target_value=10000,
        metric_key="steps",
        xp_reward=50,
        stat_bonus="agility",
        scheduled_for=day.isoformat(),
    )
    values.update(overrides)
    quest = AIDailyQuest(**values)
    db.add(quest)
    db.commit()
    db.refresh(quest)
    return quest


# ─── Generation ───


def test_generation_is_idempotent_per_user_day():
    db = _new_db()
    author = _CountingAuthor()
    user = _user_with_goal(db, author)

    first, created = asyncio.run(generate_daily_quests(db, user, author, START))
    second, created_again = asyncio.run(generate_daily_quests(db, user, author, START))

    assert created is True
    assert created_again is False
    assert author.quest_calls == 1
    assert [q.id for q in first] == [q.id for q in second]
    assert all(q.status == "pending" and q.regeneration_count == 0 for q in first)


def test_generated_quests_are_tagged_with_the_current_phase():
    db = _new_db()
    author = FallbackCoachAuthor()
    user = _user_with_goal(db, author)

    day_one, _ = asyncio.run(generate_daily_quests(db, user, author, START))
    day_forty, _ = asyncio.run(generate_daily_quests(db, user, author, START + timedelta(days=39)))

    assert {q.phase_number for q in day_one} == {1}
    assert {q.phase_number for q in day_forty} == {2}


# ─── Regeneration ───


def test_regeneration_is_capped_and_leaves_the_set_unchanged_when_refused():
    db = _new_db()
    author = _CountingAuthor()
    user = _user_with_goal(db, author)
    quests, _ = asyncio.run(generate_daily_quests(db, user, author, START))
    kept = complete_quest(db, user, quests[0].id, START).quest
    cap = int(settings.MAX_QUEST_REGENERATIONS_PER_DAY)

    for attempt in range(1, cap + 1):
        batch, status = asyncio.run(regenerate_quests(db, user, author, START, reason="Too easy"))
        assert status["regenerations_used"] == attempt
        assert status["regenerations_remaining"] == cap - attempt
        assert kept.id in {q.id for q in batch}
        fresh = [q for q in batch if q.id != kept.id]
        assert fresh and all(q.regeneration_count == attempt for q in fresh)

    before = sorted(q.id for q in quests_for_day(db, user, START))
    calls_before = author.quest_calls

    with pytest.raises(CapacityExceeded):
        asyncio.run(regenerate_quests(db, user, author, START))

    assert sorted(q.id for q in quests_for_day(db, user, START)) == before
    assert author.quest_calls == calls_before
    assert regeneration_status(db, user, START)["can_regenerate"] is False
    assert author.reasons[1] == "Too easy"


class _RacingAuthor(FallbackCoachAuthor):
    """Uses up the remaining regenerations while the draft is being written."""

    def __init__(self, db, user_id):
        self.db = db
        self.user_id = user_id

    async def generate_quests(self, context, reason=None):
        if reason:
            (
                self.db.query(QuestRegenerationLog)
                .filter(QuestRegenerationLog.user_id == self.user_id)
                .update({"count": settings.MAX_QUEST_REGENERATIONS_PER_DAY})
            )
            self.db.commit()
        return await super().generate_quests(context, reason)


def test_regeneration_cap_is_enforced_at_write_time():
    db = _new_db()
    user = _user_with_goal(db)
    author = _RacingAuthor(db, user.id)
    asyncio.run(generate_daily_quests(db, user, author, START))
    before = sorted(q.id for q in quests_for_day(db, user, START))

    with pytest.raises(CapacityExceeded):
        asyncio.run(regenerate_quests(db, user, author, START))

    assert sorted(q.id for q in quests_for_day(db, user, START)) == before


# ─── Transitions and completion ───


def test_transition_table_is_one_way():
    assert ALLOWED_TRANSITIONS["pending"] == {"in_progress", "failed", "skipped"}
    assert ALLOWED_TRANSITIONS["in_progress"] == {"completed", "failed", "skipped"}
    for status in TERMINAL_QUEST_STATUSES:
        assert ALLOWED_TRANSITIONS[status] == set()


def test_terminal_quests_reject_further_operations():
    db = _new_db()
    user = _new_user(db)
    quest = _quest(db, user, START)

    skip_quest(db, user, quest.id, START)

    with pytest.raises(AlreadyTerminal) as exc_info:
        complete_quest(db, user, quest.id, START)
    assert exc_info.value.status == "skipped"
    with pytest.raises(AlreadyTerminal):
        skip_quest(db, user, quest.id, START)
    with pytest.raises(AlreadyTerminal):
        update_quest_progress(db, user, quest.id, 500, START)


def test_unknown_quest_is_not_found():
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(NotFound):
        complete_quest(db, user, 999, START)


def test_quests_of_an_ended_day_fail_instead_of_completing():
    db = _new_db()
    user = _new_user(db)
    later = START + timedelta(days=3)
    completed_late = _quest(db, user, START)
    progressed_late = _quest(db, user, START)
    skipped_late = _quest(db, user, START)

    with pytest.raises(AlreadyTerminal) as exc_info:
        complete_quest(db, user, completed_late.id, later)
    assert exc_info.value.status == "failed"
    with pytest.raises(AlreadyTerminal):
        update_quest_progress(db, user, progressed_late.id, 10000, later)
    with pytest.raises(AlreadyTerminal):
        skip_quest(db, user, skipped_late.id, later)

    for quest in (completed_late, progressed_late, skipped_late):
        db.refresh(quest)
        assert quest.status == "failed"
        assert quest.xp_awarded == 0
    stats = db.query(UserStats).filter(UserStats.user_id == user.id).first()
    assert stats is None or stats.total_quests_completed == 0

    sweep = expire_overdue_quests(db, user, later)
    assert sweep.failed_quests == 0
    assert sweep.current_streak == 0


def test_completion_below_target_is_progress_only():
    db = _new_db()
    user = _new_user(db)
    quest = _quest(db, user, START)

    result = complete_quest(db, user, quest.id, START, actual_value=4000)

    assert result.completed is False
    assert quest.status == "in_progress"
    assert quest.current_value == 4000
    assert quest.xp_awarded == 0
    assert quest.completed_at is None


def test_completion_without_value_means_fully_done():
    db = _new_db()
    user = _new_user(db)
    quest = _quest(db, user, START, difficulty="hard", xp_reward=80)

    result = complete_quest(db, user, quest.id, START)

    assert result.completed is True
    assert quest.status == "completed"
    assert quest.current_value == quest.target_value
    assert quest.completed_at is not None
    assert result.xp_awarded == 80
    assert result.stat_bonus_applied == "agility"
    stats = db.query(UserStats).filter(UserStats.user_id == user.id).one()
    assert stats.agility == 12
    assert stats.total_quests_completed == 1


def test_manual_progress_reaching_target_completes():
    db = _new_db()
    user = _new_user(db)
    quest = _quest(db, user, START)

    update_quest_progress(db, user, quest.id, 6000, START)
    result = update_quest_progress(db, user, quest.id, 10500, START)

    assert result.completed is True
    assert quest.status == "completed"
    assert quest.progress_source == "manual"


def test_telemetry_wins_over_manual_partial_updates():
    db = _new_db()
    user = _new_user(db)
    quest = _quest(db, user, START)

    update_quest_progress(db, user, quest.id, 2000, START)
    apply_telemetry_progress(db, user, quest, 7000, START)
    db.commit()

    ignored = update_quest_progress(db, user, quest.id, 9000, START)
    also_ignored = complete_quest(db, user, quest.id, START, actual_value=9500)

    assert ignored.ignored is True
    assert also_ignored.ignored is True
    assert quest.current_value == 7000
    assert quest.progress_source == "telemetry"

    done = complete_quest(db, user, quest.id, START)
    assert done.completed is True
    assert quest.status == "completed"


# ─── Expiry sweep ───


def test_sweep_fails_overdue_quests_and_breaks_the_streak():
    db = _new_db()
    user = _new_user(db)
    day1, day2, day3 = START, START + timedelta(days=1), START + timedelta(days=2)
    for _ in range(2):
        quest = _quest(db, user, day1)
        complete_quest(db, user, quest.id, day1)
    done = _quest(db, user, day2)
    complete_quest(db, user, done.id, day2)
    open_quest = _quest(db, user, day2)
    today_quest = _quest(db, user, day3)

    result = expire_overdue_quests(db, user, day3)

    db.refresh(open_quest)
    db.refresh(today_quest)
    assert result.failed_quests == 1
    assert open_quest.status == "failed"
    assert open_quest.xp_awarded == 0
    assert today_quest.status == "pending"
    assert result.evaluated_days == [day1.isoformat(), day2.isoformat()]
    assert result.current_streak == 0
    assert result.best_streak == 1

    again = expire_overdue_quests(db, user, day3)
    assert again.failed_quests == 0
    assert again.evaluated_days == []


def test_days_without_quests_do_not_touch_the_streak():
    db = _new_db()
    user = _new_user(db)
    day1, day3 = START, START + timedelta(days=2)
    for day in (day1, day3):
        quest = _quest(db, user, day)
        complete_quest(db, user, quest.id, day)

    result = expire_overdue_quests(db, user, START + timedelta(days=3))

    assert result.current_streak == 2
    streak = db.query(Streak).filter(Streak.user_id == user.id).one()
    assert streak.last_evaluated_date == day3.isoformat()


def test_skipped_quest_keeps_the_day_from_extending_the_streak():
    db = _new_db()
    user = _new_user(db)
    done = _quest(db, user, START)
    complete_quest(db, user, done.id, START)
    skipped = _quest(db, user, START)
    skip_quest(db, user, skipped.id, START)

    result = expire_overdue_quests(db, user, START + timedelta(days=1))

    assert result.current_streak == 0
