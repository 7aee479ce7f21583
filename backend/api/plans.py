from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import MealPlan, User
from services.adherence_service import daily_timeline, plan_analytics, record_check_in, weekly_summary
from services.completion_service import evaluate_phase, event_payload, observe_plan, plan_cycle_state
from services.cycle_clock import progress_pct
from services.errors import EngineValidationError, TemporarilyUnavailableError
from services.plan_service import create_plan, get_user_plan
from utils.datetime_utils import start_of_week, today_for_tz


router = APIRouter(prefix="/plans", tags=["plans"])


class PlanItemIn(BaseModel):
    day_offset: int
    slot: str
    name: str
    calories: float = 0.0
    protein_g: float = 0.0
    carbs_g: float = 0.0
    fat_g: float = 0.0


class PlanCreate(BaseModel):
    name: str = "Menu Plan"
    start_instant: str
    cycle_length_days: int = 7
    items: list[PlanItemIn] = Field(default_factory=list)


class CheckInCreate(BaseModel):
    item_id: int
    day_offset: int
    verification_score: float
    notes: Optional[str] = None


def _load_plan(db: Session, user: User, plan_id: int) -> MealPlan:
    try:
        return get_user_plan(db, user, plan_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("", status_code=201)
def create_meal_plan(
    payload: PlanCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        plan = create_plan(
            db,
            user,
            name=payload.name,
            start_instant=payload.start_instant,
            cycle_length_days=payload.cycle_length_days,
            items=[item.model_dump() for item in payload.items],
        )
    except EngineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    db.commit()
    return {
        "status": "ok",
        "plan_id": plan.id,
        "cycle_length_days": plan.cycle_length_days,
        "total_items": len(plan.items),
    }


@router.get("/{plan_id}/cycle")
def plan_cycle(
    plan_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    plan = _load_plan(db, user, plan_id)
    try:
        state = plan_cycle_state(plan)
    except EngineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "plan_id": plan.id,
        "phase": evaluate_phase(state, bool(plan.completed)),
        "progress_pct": progress_pct(state, plan.cycle_length_days),
        **state.as_dict(),
    }


@router.post("/{plan_id}/evaluate")
def evaluate_plan(
    plan_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    plan = _load_plan(db, user, plan_id)
    try:
        outcome = observe_plan(db, plan)
    except EngineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TemporarilyUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {
        "plan_id": plan.id,
        "phase": outcome.phase,
        "fired": outcome.fired,
        "cycle": outcome.cycle.as_dict(),
        "completion_event": event_payload(outcome.event),
    }


@router.post("/{plan_id}/check-ins", status_code=201)
def check_in_item(
    plan_id: int,
    payload: CheckInCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    plan = _load_plan(db, user, plan_id)
    try:
        row, verification = record_check_in(
            db,
            plan,
            item_id=payload.item_id,
            day_offset=payload.day_offset,
            verification_score=payload.verification_score,
            notes=payload.notes,
        )
    except EngineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    db.commit()
    return {
        "status": "ok",
        "check_in_id": row.id,
        "item_name": row.item_name,
        "checked_in_at": row.checked_in_at.isoformat(),
        "verification": verification,
    }


@router.get("/{plan_id}/analytics")
def get_plan_analytics(
    plan_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    plan = _load_plan(db, user, plan_id)
    return {"plan_id": plan.id, **plan_analytics(plan.items, plan.check_ins, tz_name=user.timezone)}


@router.get("/{plan_id}/timeline")
def get_daily_timeline(
    plan_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    plan = _load_plan(db, user, plan_id)
    try:
        return daily_timeline(plan, tz_name=user.timezone)
    except EngineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/{plan_id}/summary/weekly")
def get_weekly_summary(
    plan_id: int,
    week_start: Optional[date] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    plan = _load_plan(db, user, plan_id)
    start = week_start or start_of_week(today_for_tz(user.timezone))
    summary = weekly_summary(plan.check_ins, start, tz_name=user.timezone)
    return {"plan_id": plan.id, **summary.as_dict()}
