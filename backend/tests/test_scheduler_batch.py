"""Batch runs over the whole population and the wall-clock scheduler."""
from __future__ import annotations

import asyncio
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.coach_author import FallbackCoachAuthor  # noqa: E402
from config import Settings  # noqa: E402
from db.database import Base  # noqa: E402
from db.models import AIDailyQuest, MasterGoal, Streak, User, WeeklyReview  # noqa: E402
from services.coach_errors import StructuralDraftError  # noqa: E402
from services.goal_service import set_goal  # noqa: E402
from services.quest_scheduler import (  # noqa: E402
    QuestScheduler,
    SchedulerConfig,
    run_scheduled_generation,
    run_scheduled_weekly_review,
)
from services.quest_service import complete_quest, generate_daily_quests  # noqa: E402

# Sunday
START = date(2026, 3, 1)


def _session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'batch.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _seed_users(factory, names, with_goal=True) -> dict[str, int]:
    ids = {}
    db = factory()
    try:
        for name in names:
            user = User(username=name, display_name=name.title())
            db.add(user)
            db.commit()
            db.refresh(user)
            if with_goal:
                asyncio.run(set_goal(db, user, f"Walk ten thousand steps daily, {name}", FallbackCoachAuthor(), START, 30))
            ids[name] = user.id
    finally:
        db.close()
    return ids


class _PerUserAuthor(FallbackCoachAuthor):
    """Counts quest calls per user and returns a broken draft for one of them."""

    def __init__(self, broken_user_id: int | None = None):
        self.broken_user_id = broken_user_id
        self.calls: dict[int, int] = {}

    async def generate_quests(self, context, reason=None):
        self.calls[context.user_id] = self.calls.get(context.user_id, 0) + 1
        if context.user_id == self.broken_user_id:
            raise StructuralDraftError("Quest draft is malformed", problems=["quests[0].targetValue: missing"])
        return await super().generate_quests(context, reason)


def _quest_count(factory, user_id, day) -> int:
    db = factory()
    try:
        return (
            db.query(AIDailyQuest)
            .filter(AIDailyQuest.user_id == user_id, AIDailyQuest.scheduled_for == day.isoformat())
            .count()
        )
    finally:
        db.close()


def test_one_broken_user_does_not_stop_the_batch(tmp_path):
    factory = _session_factory(tmp_path)
    ids = _seed_users(factory, ["alice", "bob", "carol"])
    author = _PerUserAuthor(broken_user_id=ids["bob"])

    result = asyncio.run(run_scheduled_generation(START, author=author, session_factory=factory, max_workers=2))

    assert result.processed_users == 2
    assert [e.user_id for e in result.errors] == [ids["bob"]]
    assert result.errors[0].error_type == "StructuralDraftError"
    assert result.success is False
    assert _quest_count(factory, ids["alice"], START) > 0
    assert _quest_count(factory, ids["carol"], START) > 0
    assert _quest_count(factory, ids["bob"], START) == 0
    payload = result.to_dict()
    assert payload["errors"][0]["user_id"] == ids["bob"]


def test_repeated_generation_run_makes_no_new_author_calls(tmp_path):
    factory = _session_factory(tmp_path)
    ids = _seed_users(factory, ["alice", "carol"])
    author = _PerUserAuthor()

    first = asyncio.run(run_scheduled_generation(START, author=author, session_factory=factory))
    counts = {uid: _quest_count(factory, uid, START) for uid in ids.values()}
    second = asyncio.run(run_scheduled_generation(START, author=author, session_factory=factory))

    assert first.processed_users == second.processed_users == 2
    assert second.success is True
    assert author.calls == {ids["alice"]: 1, ids["carol"]: 1}
    assert {uid: _quest_count(factory, uid, START) for uid in ids.values()} == counts


def test_users_without_active_goal_are_not_processed(tmp_path):
    factory = _session_factory(tmp_path)
    _seed_users(factory, ["dave"], with_goal=False)

    result = asyncio.run(run_scheduled_generation(START, author=_PerUserAuthor(), session_factory=factory))

    assert result.processed_users == 0
    assert result.errors == []


def test_daily_unit_expires_yesterday_before_generating_today(tmp_path):
    factory = _session_factory(tmp_path)
    ids = _seed_users(factory, ["alice"])
    author = FallbackCoachAuthor()
    db = factory()
    try:
        user = db.get(User, ids["alice"])
        quests, _ = asyncio.run(generate_daily_quests(db, user, author, START))
        complete_quest(db, user, quests[0].id, START)
    finally:
        db.close()

    next_day = START + timedelta(days=1)
    result = asyncio.run(run_scheduled_generation(next_day, author=author, session_factory=factory))

    db = factory()
    try:
        statuses = [
            q.status
            for q in db.query(AIDailyQuest).filter(
                AIDailyQuest.user_id == ids["alice"], AIDailyQuest.scheduled_for == START.isoformat()
            )
        ]
        streak = db.query(Streak).filter(Streak.user_id == ids["alice"]).one()
        assert result.processed_users == 1
        assert statuses.count("completed") == 1
        assert set(statuses) == {"completed", "failed"}
        assert streak.current_streak == 0
        assert streak.last_evaluated_date == START.isoformat()
    finally:
        db.close()
    assert _quest_count(factory, ids["alice"], next_day) > 0


def test_goal_past_its_final_day_is_closed_and_gets_no_new_quests(tmp_path):
    factory = _session_factory(tmp_path)
    ids = _seed_users(factory, ["alice"])
    after_end = START + timedelta(days=30)

    result = asyncio.run(run_scheduled_generation(after_end, author=_PerUserAuthor(), session_factory=factory))

    db = factory()
    try:
        goal = db.query(MasterGoal).filter(MasterGoal.user_id == ids["alice"]).one()
        assert goal.status == "completed"
    finally:
        db.close()
    assert result.processed_users == 1
    assert _quest_count(factory, ids["alice"], after_end) == 0


def test_weekly_review_batch_is_idempotent(tmp_path):
    factory = _session_factory(tmp_path)
    ids = _seed_users(factory, ["alice", "carol"])
    asyncio.run(run_scheduled_generation(START, author=FallbackCoachAuthor(), session_factory=factory))
    as_of = START + timedelta(days=7)

    first = asyncio.run(run_scheduled_weekly_review(as_of, session_factory=factory))
    second = asyncio.run(run_scheduled_weekly_review(as_of, session_factory=factory))

    db = factory()
    try:
        assert db.query(WeeklyReview).count() == 2
        assert {r.user_id for r in db.query(WeeklyReview)} == set(ids.values())
    finally:
        db.close()
    assert first.processed_users == second.processed_users == 2


# ─── Scheduler ───


def test_scheduler_config_validation():
    with pytest.raises(RuntimeError):
        SchedulerConfig.from_settings(Settings(QUEST_GENERATION_TIME="25:00"))
    with pytest.raises(RuntimeError):
        SchedulerConfig.from_settings(Settings(WEEKLY_REVIEW_DAY=7))
    config = SchedulerConfig.from_settings(Settings(QUEST_GENERATION_TIME="06:30", WEEKLY_REVIEW_DAY=0))
    assert config.generation_time.hour == 6
    assert config.generation_time.minute == 30


def test_scheduler_tick_fires_each_job_once_per_day(tmp_path):
    factory = _session_factory(tmp_path)
    scheduler = QuestScheduler(
        SchedulerConfig(quest_generation_time="06:00", weekly_review_day=0, timezone="UTC"),
        author_factory=FallbackCoachAuthor,
        session_factory=factory,
        max_workers=2,
        poll_seconds=1,
    )
    sunday = datetime(2026, 3, 8, tzinfo=timezone.utc)

    assert asyncio.run(scheduler.tick(sunday.replace(hour=5, minute=59))) == {}
    ran = asyncio.run(scheduler.tick(sunday.replace(hour=6, minute=0)))
    assert set(ran) == {"generation", "weekly_review"}
    assert asyncio.run(scheduler.tick(sunday.replace(hour=9))) == {}

    monday = sunday + timedelta(days=1, hours=7)
    assert set(asyncio.run(scheduler.tick(monday))) == {"generation"}


def test_scheduler_uses_the_configured_timezone(tmp_path):
    factory = _session_factory(tmp_path)
    scheduler = QuestScheduler(
        SchedulerConfig(quest_generation_time="06:00", weekly_review_day=0, timezone="America/New_York"),
        author_factory=FallbackCoachAuthor,
        session_factory=factory,
    )
    # 09:00 UTC is 05:00 EDT.
    assert asyncio.run(scheduler.tick(datetime(2026, 3, 8, 9, 0, tzinfo=timezone.utc))) == {}
    ran = asyncio.run(scheduler.tick(datetime(2026, 3, 8, 11, 0, tzinfo=timezone.utc)))
    assert set(ran) == {"generation", "weekly_review"}
