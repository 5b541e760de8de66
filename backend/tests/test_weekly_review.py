from __future__ import annotations

import json
import sys
from datetime import date, timedelta
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import AIDailyQuest, User, WeeklyReview, XpLedgerEntry  # noqa: E402
from services.review_service import (  # noqa: E402
    difficulty_adjustment_for,
    is_weekly_review_due,
    review_window,
    run_weekly_review,
    serialize_review,
    verdict_for,
)

# Sunday
AS_OF = date(2026, 3, 8)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username="review_tester") -> User:
    user = User(username=username, display_name="Review Tester")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _seed_week(db, user, week_start: date, statuses: list[str]) -> None:
    for i, status in enumerate(statuses):
        db.add(AIDailyQuest(
            user_id=user.id,
            title=f"Quest {i}",
            quest_type="general",
            target_value=1,
            metric_key="completion",
            xp_reward=50,
            scheduled_for=(week_start + timedelta(days=i % 7)).isoformat(),
            status=status,
        ))
    db.commit()


def test_verdict_thresholds():
    assert verdict_for(1.0) == "excellent"
    assert verdict_for(0.9) == "excellent"
    assert verdict_for(0.89) == "good"
    assert verdict_for(0.7) == "good"
    assert verdict_for(0.5) == "adequate"
    assert verdict_for(0.3) == "needs_improvement"
    assert verdict_for(0.29) == "disappointing"
    assert verdict_for(0.0) == "disappointing"


def test_difficulty_adjustment_rules():
    assert difficulty_adjustment_for("excellent", True, None) == "increase"
    assert difficulty_adjustment_for("excellent", False, None) == "maintain"
    assert difficulty_adjustment_for("disappointing", False, None) == "maintain"
    assert difficulty_adjustment_for("disappointing", False, "needs_improvement") == "decrease"
    assert difficulty_adjustment_for("needs_improvement", True, "good") == "maintain"


def test_review_window_is_the_seven_days_before_as_of():
    assert review_window(AS_OF) == (date(2026, 3, 1), date(2026, 3, 7))


def test_nine_of_ten_completed_is_excellent():
    db = _new_db()
    user = _new_user(db)
    week_start, week_end = review_window(AS_OF)
    _seed_week(db, user, week_start, ["completed"] * 9 + ["skipped"])
    db.add(XpLedgerEntry(
        user_id=user.id,
        source="quest",
        amount=120,
        stat_name="agility",
        stat_delta=2,
        awarded_on=week_end.isoformat(),
    ))
    db.commit()

    review, created = run_weekly_review(db, user, AS_OF)

    assert created is True
    assert review.total_quests == 10
    assert review.completed_quests == 9
    assert review.skipped_quests == 1
    assert review.completion_rate == 0.9
    assert review.verdict == "excellent"
    assert review.streak_maintained is True
    assert review.difficulty_adjustment == "increase"
    assert review.xp_earned == 120
    assert json.loads(review.stats_gained) == {"agility": 2}
    payload = serialize_review(review)
    assert payload["recommendations"]
    assert "90.0%" in payload["system_commentary"]


def test_review_is_idempotent_per_week():
    db = _new_db()
    user = _new_user(db)
    week_start, _ = review_window(AS_OF)
    _seed_week(db, user, week_start, ["completed", "failed"])

    first, created = run_weekly_review(db, user, AS_OF)
    _seed_week(db, user, week_start, ["completed"] * 5)
    second, created_again = run_weekly_review(db, user, AS_OF)

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert second.total_quests == 2
    assert db.query(WeeklyReview).count() == 1


def test_two_struggling_weeks_decrease_difficulty():
    db = _new_db()
    user = _new_user(db)
    first_start, _ = review_window(AS_OF)
    _seed_week(db, user, first_start, ["completed"] * 2 + ["failed"] * 8)
    first, _ = run_weekly_review(db, user, AS_OF)

    next_as_of = AS_OF + timedelta(days=7)
    second_start, _ = review_window(next_as_of)
    _seed_week(db, user, second_start, ["completed"] * 3 + ["failed"] * 7)
    second, _ = run_weekly_review(db, user, next_as_of)

    assert first.verdict == "disappointing"
    assert first.difficulty_adjustment == "maintain"
    assert first.streak_maintained is False
    assert second.verdict == "needs_improvement"
    assert second.difficulty_adjustment == "decrease"


def test_empty_week_has_zero_completion_rate():
    db = _new_db()
    user = _new_user(db)

    review, _ = run_weekly_review(db, user, AS_OF)

    assert review.total_quests == 0
    assert review.completion_rate == 0.0
    assert review.verdict == "disappointing"


def test_review_is_due_on_review_day_until_it_exists():
    db = _new_db()
    user = _new_user(db)

    assert is_weekly_review_due(db, user, AS_OF) is True
    assert is_weekly_review_due(db, user, AS_OF + timedelta(days=1)) is False

    run_weekly_review(db, user, AS_OF)

    assert is_weekly_review_due(db, user, AS_OF) is False
