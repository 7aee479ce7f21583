from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from config import settings
from db.models import MealPlan, PlanCompletionEvent, PlanItem
from services.cycle_clock import CycleState, compute_cycle_state
from services.errors import TemporarilyUnavailableError
from utils.datetime_utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

PHASE_NOT_STARTED = "not_started"
PHASE_IN_PROGRESS = "in_progress"
PHASE_COMPLETED = "completed"


@dataclass
class CompletionOutcome:
    phase: str
    cycle: CycleState
    event: PlanCompletionEvent | None
    fired: bool


def evaluate_phase(state: CycleState, completed_flag: bool) -> str:
    # The stored flag wins over the clock so a completed plan never drifts back.
    if completed_flag:
        return PHASE_COMPLETED
    if not state.started:
        return PHASE_NOT_STARTED
    if state.exceeded:
        return PHASE_COMPLETED
    return PHASE_IN_PROGRESS


def _aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _plan_tz_name(plan: MealPlan) -> str | None:
    return getattr(getattr(plan, "user", None), "timezone", None) or None


def plan_cycle_state(
    plan: MealPlan,
    now: datetime | None = None,
    cutoff_hour: int | None = None,
    tz_name: str | None = None,
) -> CycleState:
    return compute_cycle_state(
        _aware_utc(plan.start_instant) if plan.start_instant else None,
        plan.cycle_length_days,
        cutoff_hour=cutoff_hour,
        now=_aware_utc(now or utcnow()),
        tz_name=tz_name or _plan_tz_name(plan),
    )


def build_completion_summary(plan: MealPlan, items: Iterable[PlanItem] | None = None) -> dict[str, Any]:
    rows = list(plan.items if items is None else items)
    total_calories = sum(float(row.calories or 0.0) for row in rows)
    cycle_length = max(int(plan.cycle_length_days or 1), 1)
    return {
        "plan_name": plan.name,
        "cycle_length_days": cycle_length,
        "total_items": len(rows),
        "total_calories": round(total_calories, 1),
        "average_calories_per_day": round(total_calories / cycle_length, 1),
    }


def _existing_event(db: Session, plan_id: int) -> PlanCompletionEvent | None:
    return db.query(PlanCompletionEvent).filter(PlanCompletionEvent.plan_id == plan_id).first()


def observe_plan(
    db: Session,
    plan: MealPlan,
    now: datetime | None = None,
    cutoff_hour: int | None = None,
    tz_name: str | None = None,
) -> CompletionOutcome:
    """
    Evaluate a plan and, on the first observation past its cycle, mark it completed.

    The flag flip and the event insert share one transaction, and the flip is a
    conditional update on ``completed = false`` so only one observer can win it.
    Later observations return the stored event with ``fired=False``.
    """
    current = _aware_utc(now or utcnow())
    state = plan_cycle_state(plan, current, cutoff_hour=cutoff_hour, tz_name=tz_name)

    if plan.completed:
        if state.exceeded:
            logger.info("Plan %s already completed; completion event not re-fired", plan.id)
        return CompletionOutcome(PHASE_COMPLETED, state, _existing_event(db, plan.id), False)

    phase = evaluate_phase(state, False)
    if phase != PHASE_COMPLETED:
        return CompletionOutcome(phase, state, None, False)

    plan_id = plan.id
    fired_at = as_naive_utc(current)
    summary = build_completion_summary(plan)
    attempts = int(settings.ATOMIC_RETRY_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            result = db.execute(
                update(MealPlan)
                .where(MealPlan.id == plan_id, MealPlan.completed.is_(False))
                .values(completed=True, completed_at=fired_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                db.refresh(plan)
                logger.info("Plan %s was completed by another writer; skipping duplicate event", plan.id)
                return CompletionOutcome(PHASE_COMPLETED, state, _existing_event(db, plan.id), False)
            event = PlanCompletionEvent(
                plan_id=plan_id,
                fired_at=fired_at,
                summary_json=json.dumps(summary, ensure_ascii=True),
            )
            db.add(event)
            db.commit()
        except IntegrityError:
            db.rollback()
            db.refresh(plan)
            logger.info("Completion event for plan %s already recorded; skipping", plan.id)
            return CompletionOutcome(PHASE_COMPLETED, state, _existing_event(db, plan.id), False)
        except OperationalError as exc:
            db.rollback()
            logger.warning(f"Plan completion attempt {attempt}/{attempts} hit contention: {exc}")
            continue

        db.refresh(plan)
        logger.info(
            "Plan %s completed after %s days (%s items)",
            plan.id,
            state.elapsed_days,
            summary["total_items"],
        )
        return CompletionOutcome(PHASE_COMPLETED, state, event, True)

    raise TemporarilyUnavailableError("plan completion", attempts)


def event_payload(event: PlanCompletionEvent | None) -> dict[str, Any] | None:
    if event is None:
        return None
    try:
        summary = json.loads(event.summary_json) if event.summary_json else {}
    except json.JSONDecodeError:
        summary = {}
    return {
        "plan_id": event.plan_id,
        "fired_at": event.fired_at.isoformat() if event.fired_at else None,
        "summary": summary,
    }
