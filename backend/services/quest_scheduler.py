"""Population-wide batch runs and the wall-clock loop that triggers them.

Every user is processed in its own session under a bounded semaphore. One user's
failure is logged and collected; it never aborts the batch.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from sqlalchemy import distinct
from sqlalchemy.orm import Session

from ai.coach_author import CoachAuthor, get_coach_author
from config import Settings, settings
from db.database import SessionLocal
from db.models import AIDailyQuest, MasterGoal, User
from services.goal_service import close_goal_if_finished
from services.milestone_service import check_milestones
from services.quest_service import expire_overdue_quests, generate_daily_quests
from services.review_service import run_weekly_review
from services.coach_errors import CoachError, commit_or_raise
from services.user_context import get_active_goal
from utils.datetime_utils import sunday_based_weekday

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class SchedulerConfig:
    quest_generation_time: str = "00:00"
    weekly_review_day: int = 0  # 0 = Sunday ... 6 = Saturday
    timezone: str = "UTC"

    @classmethod
    def from_settings(cls, source: Settings) -> "SchedulerConfig":
        source.validate_scheduler_configuration()
        return cls(
            quest_generation_time=source.QUEST_GENERATION_TIME,
            weekly_review_day=int(source.WEEKLY_REVIEW_DAY),
            timezone=source.SCHEDULER_TIMEZONE,
        )

    @property
    def generation_time(self) -> time:
        hour, minute = (int(part) for part in self.quest_generation_time.split(":"))
        return time(hour=hour, minute=minute)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass
class BatchError:
    user_id: int
    error_type: str
    message: str


@dataclass
class BatchResult:
    processed_users: int = 0
    errors: list[BatchError] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "processed_users": self.processed_users,
            "errors": [
                {"user_id": e.user_id, "error_type": e.error_type, "message": e.message}
                for e in self.errors
            ],
            "timestamp": self.timestamp.isoformat(),
        }


async def _run_batch(
    user_ids: list[int],
    work: Callable[[Session, User], Awaitable[None]],
    session_factory: SessionFactory,
    max_workers: int,
    label: str,
) -> BatchResult:
    result = BatchResult()
    semaphore = asyncio.Semaphore(max(int(max_workers), 1))

    async def _one(user_id: int) -> None:
        async with semaphore:
            db = session_factory()
            try:
                user = db.get(User, user_id)
                if user is None:
                    raise CoachError(f"User {user_id} disappeared")
                await work(db, user)
                result.processed_users += 1
            except Exception as exc:  # one user's failure must not stop the batch
                db.rollback()
                message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
                logger.warning("%s failed for user %s: %s: %s", label, user_id, type(exc).__name__, message)
                result.errors.append(BatchError(user_id=user_id, error_type=type(exc).__name__, message=message))
            finally:
                db.close()

    await asyncio.gather(*(_one(uid) for uid in user_ids))
    result.errors.sort(key=lambda e: e.user_id)
    logger.info("%s finished: %d processed, %d errors", label, result.processed_users, len(result.errors))
    return result


def _users_with_active_goals(session_factory: SessionFactory) -> list[int]:
    db = session_factory()
    try:
        rows = db.query(distinct(MasterGoal.user_id)).filter(MasterGoal.status == "active").all()
        return sorted(int(uid) for (uid,) in rows)
    finally:
        db.close()


def _users_with_quest_history(session_factory: SessionFactory) -> list[int]:
    db = session_factory()
    try:
        rows = db.query(distinct(AIDailyQuest.user_id)).all()
        return sorted(int(uid) for (uid,) in rows)
    finally:
        db.close()


async def process_user_day(db: Session, user: User, author: CoachAuthor, as_of: date) -> None:
    """One user's daily unit: expire yesterday, settle milestones and the goal, then generate."""
    expire_overdue_quests(db, user, as_of)

    goal = get_active_goal(db, user)
    if goal:
        check_milestones(db, user, goal, as_of)
        close_goal_if_finished(db, user, goal, as_of)
        commit_or_raise(db, "settling milestones")

    if get_active_goal(db, user):
        await generate_daily_quests(db, user, author, as_of)


async def run_scheduled_generation(
    as_of: date,
    author: CoachAuthor | None = None,
    session_factory: SessionFactory = SessionLocal,
    max_workers: int | None = None,
) -> BatchResult:
    author = author or get_coach_author()

    async def _work(db: Session, user: User) -> None:
        await process_user_day(db, user, author, as_of)

    return await _run_batch(
        _users_with_active_goals(session_factory),
        _work,
        session_factory,
        max_workers or settings.BATCH_MAX_WORKERS,
        "Quest generation",
    )


async def run_scheduled_weekly_review(
    as_of: date,
    session_factory: SessionFactory = SessionLocal,
    max_workers: int | None = None,
) -> BatchResult:
    async def _work(db: Session, user: User) -> None:
        run_weekly_review(db, user, as_of)

    return await _run_batch(
        _users_with_quest_history(session_factory),
        _work,
        session_factory,
        max_workers or settings.BATCH_MAX_WORKERS,
        "Weekly review",
    )


class QuestScheduler:
    """Polls wall-clock time in the configured timezone and fires each job once per day."""

    def __init__(
        self,
        config: SchedulerConfig,
        author_factory: Callable[[], CoachAuthor] = get_coach_author,
        session_factory: SessionFactory = SessionLocal,
        max_workers: int | None = None,
        poll_seconds: float | None = None,
    ):
        self.config = config
        self.author_factory = author_factory
        self.session_factory = session_factory
        self.max_workers = max_workers or settings.BATCH_MAX_WORKERS
        self.poll_seconds = poll_seconds or settings.SCHEDULER_POLL_SECONDS
        self.last_generation_day: date | None = None
        self.last_review_day: date | None = None
        self._task: asyncio.Task | None = None

    def local_now(self) -> datetime:
        return datetime.now(self.config.tzinfo)

    async def tick(self, now: datetime | None = None) -> dict[str, BatchResult]:
        """Run whatever is due at ``now``; returns the batch results that ran."""
        now = (now or self.local_now()).astimezone(self.config.tzinfo)
        today = now.date()
        ran: dict[str, BatchResult] = {}
        if now.time() < self.config.generation_time:
            return ran

        if self.last_generation_day != today:
            ran["generation"] = await run_scheduled_generation(
                today,
                author=self.author_factory(),
                session_factory=self.session_factory,
                max_workers=self.max_workers,
            )
            self.last_generation_day = today

        if sunday_based_weekday(today) == self.config.weekly_review_day and self.last_review_day != today:
            ran["weekly_review"] = await run_scheduled_weekly_review(
                today,
                session_factory=self.session_factory,
                max_workers=self.max_workers,
            )
            self.last_review_day = today
        return ran

    async def run_forever(self) -> None:
        logger.info(
            "Quest scheduler running (generation %s, review day %s, tz %s)",
            self.config.quest_generation_time,
            self.config.weekly_review_day,
            self.config.timezone,
        )
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Quest scheduler tick failed")
            await asyncio.sleep(self.poll_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
