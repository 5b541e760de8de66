from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, ForeignKey, Index,
    DateTime, text,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    display_name = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    level_state = relationship("LevelState", back_populates="user", uselist=False, cascade="all, delete-orphan")
    stats = relationship("UserStats", back_populates="user", uselist=False, cascade="all, delete-orphan")
    streak = relationship("Streak", back_populates="user", uselist=False, cascade="all, delete-orphan")
    goals = relationship("MasterGoal", back_populates="user", cascade="all, delete-orphan")
    quests = relationship("AIDailyQuest", back_populates="user", cascade="all, delete-orphan")


class LevelState(Base):
    __tablename__ = "level_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    level = Column(Integer, nullable=False, default=1)
    total_xp = Column(Integer, nullable=False, default=0)
    level_boundary_ledger_id = Column(Integer, nullable=False, default=0)  # last ledger id counted at previous level-up
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="level_state")


class UserStats(Base):
    __tablename__ = "user_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    strength = Column(Integer, nullable=False, default=10)
    agility = Column(Integer, nullable=False, default=10)
    intelligence = Column(Integer, nullable=False, default=10)
    vitality = Column(Integer, nullable=False, default=10)
    total_quests_completed = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="stats")


class Streak(Base):
    __tablename__ = "streaks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    current_streak = Column(Integer, nullable=False, default=0)
    best_streak = Column(Integer, nullable=False, default=0)
    last_evaluated_date = Column(Text)  # YYYY-MM-DD, last day folded into the streak
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="streak")


class MasterGoal(Base):
    __tablename__ = "master_goals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    goal_text = Column(Text, nullable=False)
    timeline_days = Column(Integer, nullable=False)
    start_date = Column(Text, nullable=False)  # YYYY-MM-DD
    target_date = Column(Text, nullable=False)  # YYYY-MM-DD
    status = Column(Text, nullable=False, default="active")  # active | completed | abandoned
    analysis_json = Column(Text)  # JSON object with the five sub-scores
    analyzed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="goals")
    plan = relationship("MasterPlan", back_populates="goal", uselist=False, cascade="all, delete-orphan")
    milestones = relationship(
        "MilestoneRecord",
        back_populates="goal",
        cascade="all, delete-orphan",
        order_by="MilestoneRecord.milestone_index",
    )


class MasterPlan(Base):
    __tablename__ = "master_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    goal_id = Column(Integer, ForeignKey("master_goals.id"), nullable=False, unique=True)
    summary = Column(Text)
    phases = Column(Text, nullable=False)  # JSON array
    daily_habits = Column(Text, nullable=False)  # JSON array
    success_metrics = Column(Text)  # JSON array
    milestones = Column(Text, nullable=False)  # JSON array
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    goal = relationship("MasterGoal", back_populates="plan")


class AIDailyQuest(Base):
    __tablename__ = "ai_daily_quests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    goal_id = Column(Integer, ForeignKey("master_goals.id"), nullable=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    quest_type = Column(Text, nullable=False, default="general")
    difficulty = Column(Text, nullable=False, default="medium")  # easy | medium | hard | extreme
    target_value = Column(Float, nullable=False)
    current_value = Column(Float, nullable=False, default=0.0)
    metric_key = Column(Text, nullable=False)
    xp_reward = Column(Integer, nullable=False, default=50)
    xp_awarded = Column(Integer, nullable=False, default=0)
    stat_bonus = Column(Text)  # strength | agility | intelligence | vitality
    scheduled_for = Column(Text, nullable=False)  # YYYY-MM-DD
    status = Column(Text, nullable=False, default="pending")  # pending | in_progress | completed | failed | skipped
    progress_source = Column(Text, nullable=False, default="none")  # none | manual | telemetry
    completed_at = Column(DateTime)
    regeneration_count = Column(Integer, nullable=False, default=0)
    phase_number = Column(Integer)
    ai_reasoning = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="quests")


class QuestRegenerationLog(Base):
    __tablename__ = "quest_regeneration_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    regeneration_date = Column(Text, nullable=False)  # YYYY-MM-DD
    count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MilestoneRecord(Base):
    __tablename__ = "milestone_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    goal_id = Column(Integer, ForeignKey("master_goals.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("master_plans.id"), nullable=True)
    milestone_index = Column(Integer, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    target_day = Column(Integer, nullable=False)
    target_date = Column(Text, nullable=False)  # YYYY-MM-DD
    status = Column(Text, nullable=False, default="pending")  # pending | in_progress | completed | missed
    completion_percentage = Column(Float, nullable=False, default=0.0)
    completed_at = Column(DateTime)
    celebration_message = Column(Text)
    reward_unlocked = Column(Text)
    bonus_xp_awarded = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    goal = relationship("MasterGoal", back_populates="milestones")


class WeeklyReview(Base):
    __tablename__ = "weekly_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    goal_id = Column(Integer, ForeignKey("master_goals.id"), nullable=True)
    week_start = Column(Text, nullable=False)  # YYYY-MM-DD
    week_end = Column(Text, nullable=False)  # YYYY-MM-DD
    verdict = Column(Text, nullable=False)  # excellent | good | adequate | needs_improvement | disappointing
    completion_rate = Column(Float, nullable=False, default=0.0)
    total_quests = Column(Integer, nullable=False, default=0)
    completed_quests = Column(Integer, nullable=False, default=0)
    failed_quests = Column(Integer, nullable=False, default=0)
    skipped_quests = Column(Integer, nullable=False, default=0)
    xp_earned = Column(Integer, nullable=False, default=0)
    streak_maintained = Column(Boolean, nullable=False, default=False)
    stats_gained = Column(Text)  # JSON object
    difficulty_adjustment = Column(Text)  # increase | decrease | maintain
    system_commentary = Column(Text)
    recommendations = Column(Text)  # JSON array
    created_at = Column(DateTime, default=datetime.utcnow)


class XpLedgerEntry(Base):
    __tablename__ = "xp_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    source = Column(Text, nullable=False)  # quest | health_bonus | milestone
    amount = Column(Integer, nullable=False, default=0)
    quest_id = Column(Integer, ForeignKey("ai_daily_quests.id"), nullable=True)
    milestone_id = Column(Integer, ForeignKey("milestone_records.id"), nullable=True)
    stat_name = Column(Text)
    stat_delta = Column(Integer, nullable=False, default=0)
    awarded_on = Column(Text, nullable=False)  # YYYY-MM-DD
    reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class HealthDailyMetrics(Base):
    __tablename__ = "health_daily_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    metric_date = Column(Text, nullable=False)  # YYYY-MM-DD
    provider = Column(Text)
    steps = Column(Integer, nullable=False, default=0)
    active_calories = Column(Float, nullable=False, default=0.0)
    distance_meters = Column(Float, nullable=False, default=0.0)
    floors_climbed = Column(Integer, nullable=False, default=0)
    sleep_minutes = Column(Integer, nullable=False, default=0)
    sleep_score = Column(Float, nullable=False, default=0.0)
    workouts_json = Column(Text)  # JSON array of {name, duration_minutes, calories}
    bonus_xp_awarded = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Indexes
Index(
    "idx_master_goals_one_active",
    MasterGoal.user_id,
    unique=True,
    sqlite_where=text("status = 'active'"),
    postgresql_where=text("status = 'active'"),
)
Index("idx_master_goals_user_status", MasterGoal.user_id, MasterGoal.status)
Index("idx_ai_daily_quests_user_day", AIDailyQuest.user_id, AIDailyQuest.scheduled_for, AIDailyQuest.status)
Index("idx_ai_daily_quests_goal", AIDailyQuest.goal_id, AIDailyQuest.scheduled_for)
Index(
    "idx_quest_regeneration_user_day",
    QuestRegenerationLog.user_id,
    QuestRegenerationLog.regeneration_date,
    unique=True,
)
Index(
    "idx_milestone_records_goal_index",
    MilestoneRecord.goal_id,
    MilestoneRecord.milestone_index,
    unique=True,
)
Index("idx_milestone_records_user_status", MilestoneRecord.user_id, MilestoneRecord.status)
Index("idx_weekly_reviews_user_week", WeeklyReview.user_id, WeeklyReview.week_start, unique=True)
Index("idx_xp_ledger_user_date", XpLedgerEntry.user_id, XpLedgerEntry.awarded_on)
Index("idx_health_daily_metrics_user_date", HealthDailyMetrics.user_id, HealthDailyMetrics.metric_date, unique=True)
