"""Tests for XP, levels, the telemetry bonus and milestone tracking."""
from __future__ import annotations

import asyncio
import json
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
from db.models import (  # noqa: E402
    AIDailyQuest,
    HealthDailyMetrics,
    LevelState,
    MilestoneRecord,
    User,
    XpLedgerEntry,
)
from services.coach_errors import AlreadyTerminal  # noqa: E402
from services.goal_service import set_goal  # noqa: E402
from services.milestone_service import (  # noqa: E402
    check_milestones,
    milestone_window,
    next_milestone,
    record_milestone_progress,
)
from services.quest_service import complete_quest  # noqa: E402
from services.reward_service import (  # noqa: E402
    health_bonus_for,
    level_for_xp,
    level_summary,
    level_threshold,
    xp_to_next_level,
)

START = date(2026, 3, 1)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username="reward_tester") -> User:
    user = User(username=username, display_name="Reward Tester")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _quest(db, user, day, **overrides) -> AIDailyQuest:
    values = dict(
        user_id=user.id,
        title="Strength circuit",
        quest_type="training",
        difficulty="medium",
        target_value=20,
        metric_key="reps",
        xp_reward=50,
        stat_bonus="strength",
        scheduled_for=day.isoformat(),
    )
    values.update(overrides)
    quest = AIDailyQuest(**values)
    db.add(quest)
    db.commit()
    db.refresh(quest)
    return quest


def _goal(db, user, timeline_days=90):
    goal, _ = asyncio.run(
        set_goal(db, user, "Run a half marathon in under two hours", FallbackCoachAuthor(), START, timeline_days)
    )
    return goal


# ─── Levels ───


def test_level_curve():
    assert xp_to_next_level(1) == 1000
    assert xp_to_next_level(2) == 2500
    assert level_threshold(1) == 0
    assert level_threshold(3) == 3500
    assert level_for_xp(0) == 1
    assert level_for_xp(999) == 1
    assert level_for_xp(1000) == 2
    assert level_for_xp(3499) == 2
    assert level_for_xp(3500) == 3
    assert level_for_xp(10 ** 12) == 100


def test_level_up_reports_stat_deltas_since_previous_boundary():
    db = _new_db()
    user = _new_user(db)
    first = _quest(db, user, START, xp_reward=600, difficulty="hard")
    second = _quest(db, user, START, xp_reward=600, difficulty="hard")
    third = _quest(db, user, START, xp_reward=100, difficulty="extreme", stat_bonus="vitality")

    assert complete_quest(db, user, first.id, START).level_up is None
    result = complete_quest(db, user, second.id, START)

    assert result.level_up is not None
    assert result.level_up.previous_level == 1
    assert result.level_up.new_level == 2
    assert result.level_up.stat_deltas == {"strength": 4}

    assert complete_quest(db, user, third.id, START).level_up is None
    state = db.query(LevelState).filter(LevelState.user_id == user.id).one()
    assert state.total_xp == 1300
    summary = level_summary(db, user)
    assert summary["level"] == 2
    assert summary["xp_into_level"] == 300
    assert summary["xp_for_next_level"] == 2500


# ─── Telemetry bonus ───


def test_health_bonus_reference_day():
    assert health_bonus_for(steps=12000, workout_count=2, sleep_minutes=480, active_calories=650) == 36


def test_health_bonus_categories_are_capped_independently():
    assert health_bonus_for(steps=50000, workout_count=10, sleep_minutes=390, active_calories=5000) == 10 + 25 + 5 + 10
    assert health_bonus_for(steps=999, workout_count=0, sleep_minutes=300, active_calories=99) == 0
    assert health_bonus_for(sleep_minutes=600) == 5
    assert health_bonus_for() == 0


def test_health_bonus_is_awarded_once_per_day():
    db = _new_db()
    user = _new_user(db)
    db.add(HealthDailyMetrics(
        user_id=user.id,
        metric_date=START.isoformat(),
        steps=12000,
        active_calories=650,
        sleep_minutes=480,
        workouts_json=json.dumps([
            {"name": "Run", "duration_minutes": 30, "calories": 300},
            {"name": "Lift", "duration_minutes": 20, "calories": 150},
        ]),
        bonus_xp_awarded=0,
    ))
    db.commit()
    first = _quest(db, user, START, xp_reward=50)
    second = _quest(db, user, START, xp_reward=40)
    other_day = _quest(db, user, START + timedelta(days=1), xp_reward=30)

    a = complete_quest(db, user, first.id, START)
    b = complete_quest(db, user, second.id, START)
    c = complete_quest(db, user, other_day.id, START + timedelta(days=1))

    assert (a.xp_awarded, a.health_bonus_xp) == (86, 36)
    assert (b.xp_awarded, b.health_bonus_xp) == (40, 0)
    assert (c.xp_awarded, c.health_bonus_xp) == (30, 0)
    bonus_rows = db.query(XpLedgerEntry).filter(XpLedgerEntry.source == "health_bonus").all()
    assert [r.amount for r in bonus_rows] == [36]


# ─── Milestones ───


def test_milestone_window_starts_after_previous_target_day():
    db = _new_db()
    user = _new_user(db)
    goal = _goal(db, user)
    first, second, _ = goal.milestones

    assert milestone_window(goal, first) == (START, START + timedelta(days=29))
    assert milestone_window(goal, second) == (START + timedelta(days=30), START + timedelta(days=59))
    assert next_milestone(goal).id == first.id


def test_milestone_percentage_never_decreases():
    db = _new_db()
    user = _new_user(db)
    goal = _goal(db, user)
    done = _quest(db, user, START, goal_id=goal.id)
    _quest(db, user, START, goal_id=goal.id)
    complete_quest(db, user, done.id, START)

    milestone = goal.milestones[0]
    db.refresh(milestone)
    assert milestone.status == "in_progress"
    assert milestone.completion_percentage == pytest.approx(36.0)

    # More open quests lower the raw completion rate.
    _quest(db, user, START, goal_id=goal.id)
    _quest(db, user, START, goal_id=goal.id)
    check_milestones(db, user, goal, START)
    db.commit()
    assert milestone.completion_percentage == pytest.approx(36.0)

    record_milestone_progress(db, user, milestone.id, 10.0, START)
    assert milestone.completion_percentage == pytest.approx(36.0)

    record_milestone_progress(db, user, milestone.id, 55.5, START)
    assert milestone.completion_percentage == pytest.approx(55.5)


def test_milestone_completion_awards_bonus_exactly_once():
    db = _new_db()
    user = _new_user(db)
    goal = _goal(db, user)
    milestone = goal.milestones[0]

    result = record_milestone_progress(db, user, milestone.id, 100.0, START)

    assert result.newly_completed is True
    assert milestone.status == "completed"
    assert milestone.bonus_xp_awarded == settings.MILESTONE_DEFAULT_BONUS_XP
    assert milestone.celebration_message
    with pytest.raises(AlreadyTerminal):
        record_milestone_progress(db, user, milestone.id, 100.0, START)
    check_milestones(db, user, goal, START + timedelta(days=40))
    rows = db.query(XpLedgerEntry).filter(XpLedgerEntry.source == "milestone").all()
    assert len(rows) == 1
    assert next_milestone(goal).milestone_index == 1


def test_milestone_is_missed_after_its_target_date_without_penalty():
    db = _new_db()
    user = _new_user(db)
    goal = _goal(db, user)

    results = check_milestones(db, user, goal, START + timedelta(days=30))
    db.commit()

    first = db.query(MilestoneRecord).filter(MilestoneRecord.goal_id == goal.id, MilestoneRecord.milestone_index == 0).one()
    second = db.query(MilestoneRecord).filter(MilestoneRecord.goal_id == goal.id, MilestoneRecord.milestone_index == 1).one()
    assert first.status == "missed"
    assert first.bonus_xp_awarded == 0
    assert second.status == "pending"
    assert [r.newly_missed for r in results] == [True, False, False]
    assert db.query(XpLedgerEntry).count() == 0
