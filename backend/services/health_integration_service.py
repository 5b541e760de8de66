from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models import AIDailyQuest, HealthDailyMetrics, User
from services.coach_errors import NotFound, commit_or_raise
from services.quest_service import CompletionResult, apply_telemetry_progress
from utils.datetime_utils import parse_iso_date

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Terra-style webhook payload
# ---------------------------------------------------------------------------

class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TerraUser(_Lenient):
    user_id: str | None = None
    provider: str | None = None
    reference_id: str | None = None


class TerraMetadata(_Lenient):
    start_time: str | None = None
    end_time: str | None = None


class TerraDaily(_Lenient):
    steps: float | None = None
    calories_active: float | None = None
    distance_meters: float | None = None
    floors_climbed: float | None = None


class TerraActivity(_Lenient):
    name: str | None = None
    duration_seconds: float | None = None
    calories: float | None = None
    distance_meters: float | None = None
    heart_rate_avg: float | None = None


class TerraSleep(_Lenient):
    duration_seconds: float | None = None
    sleep_score: float | None = None
    deep_sleep_seconds: float | None = None
    rem_sleep_seconds: float | None = None


class TerraHealthData(_Lenient):
    metadata: TerraMetadata | None = None
    daily: TerraDaily | None = None
    activity: TerraActivity | None = None
    sleep: TerraSleep | None = None


class TerraWebhookPayload(_Lenient):
    user: TerraUser
    type: str | None = None
    data: list[TerraHealthData] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalized record
# ---------------------------------------------------------------------------

class Workout(BaseModel):
    name: str = "Unknown Workout"
    duration_minutes: int = Field(default=0, ge=0)
    calories: float = Field(default=0.0, ge=0)


class ProcessedHealthData(BaseModel):
    user_id: int
    metric_date: date = Field(validation_alias=AliasChoices("metric_date", "date"))
    provider: str | None = None
    steps: int = Field(default=0, ge=0)
    active_calories: float = Field(default=0.0, ge=0)
    distance_meters: float = Field(default=0.0, ge=0)
    floors_climbed: int = Field(default=0, ge=0)
    sleep_minutes: int = Field(default=0, ge=0)
    sleep_score: float = Field(default=0.0, ge=0)
    workouts: list[Workout] = Field(default_factory=list)


def normalize_health_payload(raw: dict[str, Any], today: date) -> ProcessedHealthData | None:
    """Fold a webhook payload into one per-day record.

    Daily blocks are summed, each activity becomes a workout, and the last sleep block
    wins. Returns None when the payload does not say which user it belongs to.
    """
    try:
        payload = TerraWebhookPayload.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Malformed health payload: {exc.error_count()} problem(s)") from exc

    reference = (payload.user.reference_id or "").strip()
    if not reference.isdigit():
        logger.warning("Health webhook without a usable reference_id ignored")
        return None

    metric_day = today
    steps = calories = distance = floors = 0.0
    sleep_minutes = 0
    sleep_score = 0.0
    workouts: list[Workout] = []
    for block in payload.data:
        if block.metadata and block.metadata.start_time:
            metric_day = parse_iso_date(block.metadata.start_time) or metric_day
        if block.daily:
            steps += block.daily.steps or 0
            calories += block.daily.calories_active or 0
            distance += block.daily.distance_meters or 0
            floors += block.daily.floors_climbed or 0
        if block.activity:
            workouts.append(Workout(
                name=block.activity.name or "Unknown Workout",
                duration_minutes=round((block.activity.duration_seconds or 0) / 60),
                calories=block.activity.calories or 0,
            ))
        if block.sleep:
            sleep_minutes = round((block.sleep.duration_seconds or 0) / 60)
            sleep_score = block.sleep.sleep_score or 0

    return ProcessedHealthData(
        user_id=int(reference),
        metric_date=metric_day,
        provider=payload.user.provider,
        steps=int(steps),
        active_calories=calories,
        distance_meters=distance,
        floors_climbed=int(floors),
        sleep_minutes=sleep_minutes,
        sleep_score=sleep_score,
        workouts=workouts,
    )


def progress_channels(data: ProcessedHealthData) -> dict[str, float]:
    """Map the normalized record onto the quest metric keys it can drive."""
    workout_minutes = sum(w.duration_minutes for w in data.workouts)
    sleep_hours = data.sleep_minutes / 60.0
    distance_km = data.distance_meters / 1000.0
    return {
        "steps": float(data.steps),
        "walking": float(data.steps),
        "distance_km": distance_km,
        "running": distance_km,
        "calories": float(data.active_calories),
        "burn_calories": float(data.active_calories),
        "floors": float(data.floors_climbed),
        "stairs": float(data.floors_climbed),
        "sleep_hours": sleep_hours,
        "sleep": sleep_hours,
        "workout_minutes": float(workout_minutes),
        "exercise": float(workout_minutes),
        "gym": float(len(data.workouts)),
    }


@dataclass
class IngestResult:
    user_id: int
    metric_date: str
    updated_quests: list[AIDailyQuest] = field(default_factory=list)
    completions: list[CompletionResult] = field(default_factory=list)


def _write_metrics(row: HealthDailyMetrics, data: ProcessedHealthData) -> None:
    row.provider = data.provider
    row.steps = data.steps
    row.active_calories = data.active_calories
    row.distance_meters = data.distance_meters
    row.floors_climbed = data.floors_climbed
    row.sleep_minutes = data.sleep_minutes
    row.sleep_score = data.sleep_score
    row.workouts_json = json.dumps([w.model_dump() for w in data.workouts], ensure_ascii=True)


def _upsert_metrics(db: Session, data: ProcessedHealthData) -> HealthDailyMetrics:
    day = data.metric_date.isoformat()

    def _existing() -> HealthDailyMetrics | None:
        return (
            db.query(HealthDailyMetrics)
            .filter(HealthDailyMetrics.user_id == data.user_id, HealthDailyMetrics.metric_date == day)
            .first()
        )

    row = _existing()
    if row is None:
        row = HealthDailyMetrics(user_id=data.user_id, metric_date=day, bonus_xp_awarded=0)
        _write_metrics(row, data)
        db.add(row)
        try:
            db.flush()
            return row
        except IntegrityError:
            db.rollback()
            row = _existing()
            if row is None:
                raise
    _write_metrics(row, data)
    db.flush()
    return row


def ingest_health_data(db: Session, data: ProcessedHealthData, today: date) -> IngestResult:
    """Store the day's telemetry and push it into that day's open quests.

    Telemetry is authoritative for its day: it replaces any manual value on a matching
    quest. Users without matching quests are handled silently. Telemetry that arrives
    after its day has ended only updates the stored metrics. Open quests
    of that day are no longer moved; the expiry sweep fails them.
    """
    user = db.query(User).filter(User.id == data.user_id).first()
    if not user:
        raise NotFound(f"User {data.user_id} not found")

    _upsert_metrics(db, data)
    result = IngestResult(user_id=user.id, metric_date=data.metric_date.isoformat())
    channels = progress_channels(data)

    quests = [] if data.metric_date < today else (
        db.query(AIDailyQuest)
        .filter(
            AIDailyQuest.user_id == user.id,
            AIDailyQuest.scheduled_for == data.metric_date.isoformat(),
            AIDailyQuest.status.in_(("pending", "in_progress")),
        )
        .order_by(AIDailyQuest.id.asc())
        .all()
    )
    for quest in quests:
        key = (quest.metric_key or "").strip().lower()
        if key not in channels:
            continue
        outcome = apply_telemetry_progress(db, user, quest, channels[key], today)
        result.updated_quests.append(quest)
        if outcome.completed:
            result.completions.append(outcome)

    commit_or_raise(db, "ingesting health data")
    logger.info(
        "Health data for user %s on %s applied to %d quest(s)",
        user.id,
        result.metric_date,
        len(result.updated_quests),
    )
    return result
