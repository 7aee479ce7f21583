from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from db.models import MealPlan, PlanItem, User
from services.errors import PlanValidationError
from utils.datetime_utils import as_naive_utc, get_zone, parse_instant

logger = logging.getLogger(__name__)


def create_plan(
    db: Session,
    user: User,
    *,
    name: str,
    start_instant: datetime | str | None,
    cycle_length_days: int,
    items: list[dict[str, Any]],
) -> MealPlan:
    """Persist a plan and its manifest. A repeating menu is a new plan each cycle."""
    if isinstance(cycle_length_days, bool) or not isinstance(cycle_length_days, int) or cycle_length_days < 1:
        raise PlanValidationError("cycle_length_days must be an integer of at least 1")
    if start_instant is None:
        raise PlanValidationError("start_instant is required")
    try:
        start = parse_instant(start_instant)
    except ValueError as exc:
        raise PlanValidationError(f"start_instant is not a valid date/time: {exc}") from exc
    # A wall-clock start is the user's local time
    if start.tzinfo is None:
        start = start.replace(tzinfo=get_zone(user.timezone))

    plan = MealPlan(
        user_id=user.id,
        name=(name or "").strip() or "Menu Plan",
        start_instant=as_naive_utc(start),
        cycle_length_days=cycle_length_days,
        completed=False,
    )
    seen: set[tuple[int, str]] = set()
    for raw in items or []:
        day_offset = raw.get("day_offset")
        slot = str(raw.get("slot") or "").strip().lower()
        if not isinstance(day_offset, int) or not 0 <= day_offset < cycle_length_days:
            raise PlanValidationError(f"Item day_offset {day_offset!r} is outside the plan cycle")
        if not slot:
            raise PlanValidationError("Item slot is required")
        if (day_offset, slot) in seen:
            raise PlanValidationError(f"Duplicate item for day {day_offset} slot {slot}")
        seen.add((day_offset, slot))
        plan.items.append(
            PlanItem(
                day_offset=day_offset,
                slot=slot,
                name=str(raw.get("name") or slot).strip(),
                calories=float(raw.get("calories") or 0.0),
                protein_g=float(raw.get("protein_g") or 0.0),
                carbs_g=float(raw.get("carbs_g") or 0.0),
                fat_g=float(raw.get("fat_g") or 0.0),
            )
        )
    db.add(plan)
    db.flush()
    logger.info("Created plan %s for user %s (%s days, %s items)", plan.id, user.id, cycle_length_days, len(plan.items))
    return plan


def get_user_plan(db: Session, user: User, plan_id: int) -> MealPlan:
    plan = db.query(MealPlan).filter(MealPlan.id == plan_id, MealPlan.user_id == user.id).first()
    if not plan:
        raise LookupError("Plan not found")
    return plan
