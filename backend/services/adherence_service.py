from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy.orm import Session

from config import settings
from db.models import CheckIn, MealPlan, PlanItem
from services.completion_service import plan_cycle_state
from services.cycle_clock import items_for_day
from services.errors import CheckInValidationError
from utils.datetime_utils import as_naive_utc, to_tz, utcnow


NUTRITION_FIELDS = ("calories", "protein_g", "carbs_g", "fat_g")
MEDIUM_CONFIDENCE_SCORE = 40
WEEK_DAYS = 7


@dataclass
class WeeklySummary:
    week_start: date
    week_end: date
    total_check_ins: int
    totals: dict[str, float] = field(default_factory=dict)
    averages: dict[str, float] = field(default_factory=dict)
    checkin_streak: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "week_start": self.week_start.isoformat(),
            "week_end": self.week_end.isoformat(),
            "total_check_ins": self.total_check_ins,
            "totals": dict(self.totals),
            "averages": dict(self.averages),
            "checkin_streak": self.checkin_streak,
        }


def checkin_day(check_in: Any, tz_name: str | None = None) -> date:
    """Calendar date of a check-in in the user's zone; stored timestamps are naive UTC."""
    stamp: datetime = check_in.checked_in_at
    if stamp.tzinfo is None and tz_name:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return to_tz(stamp, tz_name).date()


def completion_percentage(completed_count: int, total_count: int) -> float:
    if total_count <= 0:
        return 0.0
    return round(completed_count / total_count * 100.0, 1)


def popular_items(check_ins: Iterable[Any], limit: int | None = None) -> list[dict[str, Any]]:
    top_n = settings.POPULAR_ITEMS_LIMIT if limit is None else int(limit)
    counts = Counter(str(ci.item_name) for ci in check_ins)
    ranked = sorted(counts.items(), key=lambda pair: (-pair[1], pair[0]))
    return [{"name": name, "count": count} for name, count in ranked[:top_n]]


def checkin_streak(days: Iterable[date]) -> int:
    """Length of the run of consecutive check-in dates that ends at the latest date."""
    ordered = sorted(set(days))
    if not ordered:
        return 0
    newest_first = ordered[::-1]
    streak = 1
    for later, earlier in zip(newest_first, newest_first[1:]):
        if (later - earlier).days != 1:
            break
        streak += 1
    return streak


def weekly_summary(check_ins: Iterable[Any], week_start: date, tz_name: str | None = None) -> WeeklySummary:
    week_end = week_start + timedelta(days=WEEK_DAYS)
    in_window = [ci for ci in check_ins if week_start <= checkin_day(ci, tz_name) < week_end]
    totals = {name: round(sum(float(getattr(ci, name) or 0.0) for ci in in_window), 1) for name in NUTRITION_FIELDS}
    return WeeklySummary(
        week_start=week_start,
        week_end=week_end,
        total_check_ins=len(in_window),
        totals=totals,
        averages={name: round(value / WEEK_DAYS, 1) for name, value in totals.items()},
        checkin_streak=checkin_streak(checkin_day(ci, tz_name) for ci in in_window),
    )


def plan_analytics(items: Iterable[PlanItem], check_ins: Iterable[Any], tz_name: str | None = None) -> dict[str, Any]:
    manifest_ids = {int(item.id) for item in items}
    rows = list(check_ins)
    completed_ids = {int(ci.item_id) for ci in rows if int(ci.item_id) in manifest_ids}
    active_days = {checkin_day(ci, tz_name) for ci in rows}
    return {
        "total_items": len(manifest_ids),
        "completed_items": len(completed_ids),
        "completion_percentage": completion_percentage(len(completed_ids), len(manifest_ids)),
        "popular_items": popular_items(rows),
        "avg_daily_check_ins": round(len(rows) / len(active_days), 1) if active_days else 0.0,
        "total_check_ins": len(rows),
    }


def daily_timeline(
    plan: MealPlan,
    now: datetime | None = None,
    cutoff_hour: int | None = None,
    tz_name: str | None = None,
) -> dict[str, Any]:
    state = plan_cycle_state(plan, now, cutoff_hour=cutoff_hour, tz_name=tz_name)
    day_items = [] if state.exceeded else items_for_day(plan.items, state.day_index)
    done = {
        (int(ci.item_id), int(ci.day_offset))
        for ci in plan.check_ins
    }
    timeline = [
        {
            "item_id": item.id,
            "slot": item.slot,
            "name": item.name,
            "calories": float(item.calories or 0.0),
            "completed": (int(item.id), state.day_index) in done,
        }
        for item in day_items
    ]
    completed = sum(1 for row in timeline if row["completed"])
    return {
        "plan_id": plan.id,
        "day_index": state.day_index,
        "started": state.started,
        "plan_finished": state.exceeded,
        "timeline": timeline,
        "total_items": len(timeline),
        "completed_items": completed,
        "completion_percentage": completion_percentage(completed, len(timeline)),
    }


def verification_result(score: int) -> dict[str, Any]:
    if score >= int(settings.VERIFICATION_MATCH_SCORE):
        confidence = "high"
    elif score >= MEDIUM_CONFIDENCE_SCORE:
        confidence = "medium"
    else:
        confidence = "low"
    return {
        "score": score,
        "confidence": confidence,
        "match": score >= int(settings.VERIFICATION_MATCH_SCORE),
    }


def _validated_score(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CheckInValidationError("verification_score must be a number")
    if not 0 <= value <= 100:
        raise CheckInValidationError("verification_score must be between 0 and 100")
    return int(round(value))


def record_check_in(
    db: Session,
    plan: MealPlan,
    *,
    item_id: int,
    day_offset: int,
    verification_score: int | float,
    notes: str | None = None,
    now: datetime | None = None,
) -> tuple[CheckIn, dict[str, Any]]:
    """Append a check-in; the score comes from the caller's photo verification."""
    score = _validated_score(verification_score)
    if isinstance(day_offset, bool) or not isinstance(day_offset, int):
        raise CheckInValidationError("day_offset must be an integer")
    if not 0 <= day_offset < int(plan.cycle_length_days):
        raise CheckInValidationError("day_offset is outside the plan cycle")
    item = next((row for row in plan.items if int(row.id) == int(item_id)), None)
    if item is None:
        raise CheckInValidationError("Item does not belong to this plan")

    row = CheckIn(
        plan=plan,
        item_id=item.id,
        user_id=plan.user_id,
        day_offset=day_offset,
        checked_in_at=as_naive_utc(now or utcnow()),
        verification_score=score,
        notes=(notes or "").strip() or None,
        item_name=item.name,
        calories=float(item.calories or 0.0),
        protein_g=float(item.protein_g or 0.0),
        carbs_g=float(item.carbs_g or 0.0),
        fat_g=float(item.fat_g or 0.0),
    )
    db.add(row)
    db.flush()
    return row, verification_result(score)
