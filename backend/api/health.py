from datetime import date
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from api.coach import get_today
from db.database import get_db
from services.coach_errors import CoachError
from services.health_integration_service import (
    IngestResult,
    ProcessedHealthData,
    ingest_health_data,
    normalize_health_payload,
)
from services.quest_service import serialize_quest

router = APIRouter(prefix="/health-data", tags=["health-data"])


def _ingest_to_dict(result: IngestResult) -> dict:
    return {
        "status": "processed",
        "user_id": result.user_id,
        "metric_date": result.metric_date,
        "updated_quests": [serialize_quest(q) for q in result.updated_quests],
        "completed_quest_ids": [c.quest.id for c in result.completions],
        "xp_awarded": sum(c.xp_awarded for c in result.completions),
        "level_ups": [c.level_up.to_dict() for c in result.completions if c.level_up],
    }


def _ingest(db: Session, data: ProcessedHealthData, today: date) -> dict:
    try:
        result = ingest_health_data(db, data, today)
    except CoachError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_payload())
    return _ingest_to_dict(result)


@router.post("/webhook")
def health_webhook(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
):
    try:
        data = normalize_health_payload(payload, today)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if data is None:
        return {"status": "ignored", "reason": "unknown user reference"}
    return _ingest(db, data, today)


@router.post("/daily")
def ingest_daily(
    data: ProcessedHealthData,
    db: Session = Depends(get_db),
    today: date = Depends(get_today),
):
    return _ingest(db, data, today)
