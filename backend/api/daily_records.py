from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import User
from services.daily_record_service import get_goal_streak, summarize_month, upsert_daily_record
from services.errors import EngineValidationError, TemporarilyUnavailableError
from utils.datetime_utils import today_for_tz

router = APIRouter(prefix="/daily-records", tags=["daily-records"])


class DailyRecordUpsert(BaseModel):
    record_date: date
    goal_satisfied: Optional[bool] = None
    calories_goal: Optional[float] = None
    calories_actual: Optional[float] = None
    protein_goal: Optional[float] = None
    protein_actual: Optional[float] = None
    water_ml: Optional[float] = None


@router.put("")
def put_daily_record(
    payload: DailyRecordUpsert,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create or replace the record for one calendar date."""
    metrics = payload.model_dump(exclude={"record_date", "goal_satisfied"})
    try:
        row = upsert_daily_record(
            db,
            user.id,
            payload.record_date,
            goal_satisfied=payload.goal_satisfied,
            raw_metrics=metrics,
        )
    except EngineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TemporarilyUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {
        "status": "ok",
        "date": row.record_date,
        "goal_satisfied": bool(row.goal_satisfied),
    }


@router.get("/streak")
def get_streak(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Goal streak: consecutive days on which the daily goal was met."""
    today = today_for_tz(user.timezone)
    return {"today": today.isoformat(), "goal_streak": get_goal_streak(db, user.id, today).as_dict()}


@router.get("/monthly")
def get_monthly_stats(
    year: int,
    month: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return summarize_month(db, user.id, year, month, today_for_tz(user.timezone))
    except EngineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
