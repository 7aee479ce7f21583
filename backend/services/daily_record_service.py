from __future__ import annotations

import logging
from datetime import date
from typing import Any

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import settings
from db.models import DailyRecord
from services.errors import EngineValidationError, TemporarilyUnavailableError
from services.streak_service import StreakState, compute_goal_streak
from utils.datetime_utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

METRIC_FIELDS = ("calories_goal", "calories_actual", "protein_goal", "protein_actual", "water_ml")
WEEK_CHUNK = 7


def _to_float(value) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise EngineValidationError(f"Metric value is not numeric: {value!r}")


def derive_goal_satisfied(raw_metrics: dict[str, Any] | None) -> bool:
    metrics = raw_metrics or {}
    goal = _to_float(metrics.get("calories_goal"))
    actual = _to_float(metrics.get("calories_actual"))
    if not goal or goal <= 0 or actual is None:
        return False
    return actual >= goal * float(settings.GOAL_SATISFIED_RATIO)


def upsert_daily_record(
    db: Session,
    user_id: int,
    record_date: date,
    goal_satisfied: bool | None = None,
    raw_metrics: dict[str, Any] | None = None,
) -> DailyRecord:
    """Insert or replace the single record for (user, date) in one statement."""
    metrics = {key: _to_float((raw_metrics or {}).get(key)) for key in METRIC_FIELDS}
    satisfied = derive_goal_satisfied(metrics) if goal_satisfied is None else bool(goal_satisfied)
    day_key = record_date.isoformat()
    now = as_naive_utc(utcnow())

    stmt = sqlite_insert(DailyRecord).values(
        user_id=user_id,
        record_date=day_key,
        goal_satisfied=satisfied,
        updated_at=now,
        **metrics,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[DailyRecord.user_id, DailyRecord.record_date],
        set_={"goal_satisfied": satisfied, "updated_at": now, **metrics},
    )

    attempts = int(settings.ATOMIC_RETRY_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            db.execute(stmt)
            db.commit()
            break
        except OperationalError as exc:
            db.rollback()
            logger.warning(f"Daily record upsert attempt {attempt}/{attempts} hit contention: {exc}")
    else:
        raise TemporarilyUnavailableError("daily record upsert", attempts)

    row = (
        db.query(DailyRecord)
        .filter(DailyRecord.user_id == user_id, DailyRecord.record_date == day_key)
        .populate_existing()
        .one()
    )
    return row


def list_daily_records(db: Session, user_id: int, start: date | None = None, end: date | None = None) -> list[DailyRecord]:
    query = db.query(DailyRecord).filter(DailyRecord.user_id == user_id)
    if start:
        query = query.filter(DailyRecord.record_date >= start.isoformat())
    if end:
        query = query.filter(DailyRecord.record_date <= end.isoformat())
    return query.order_by(DailyRecord.record_date.asc()).all()


def get_goal_streak(db: Session, user_id: int, today: date, grace_days: int | None = None) -> StreakState:
    return compute_goal_streak(list_daily_records(db, user_id, end=today), today=today, grace_days=grace_days)


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    if not 1 <= int(month) <= 12:
        raise EngineValidationError("month must be between 1 and 12")
    start = date(year, month, 1)
    nxt = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, date.fromordinal(nxt.toordinal() - 1)


def _progress(rows: list[DailyRecord]) -> float:
    if not rows:
        return 0.0
    return sum(1 for row in rows if row.goal_satisfied) / len(rows) * 100.0


def _avg(rows: list[DailyRecord], field: str) -> float:
    if not rows:
        return 0.0
    return round(sum(float(getattr(row, field) or 0.0) for row in rows) / len(rows), 1)


def day_progress(row: DailyRecord) -> float:
    """Calorie progress for one day, capped at 100; flag-only records count as 0 or 100."""
    goal = float(row.calories_goal or 0.0)
    if goal > 0 and row.calories_actual is not None:
        return min(float(row.calories_actual) / goal * 100.0, 100.0)
    return 100.0 if row.goal_satisfied else 0.0


def analyze_weeks(rows: list[DailyRecord]) -> dict[str, Any]:
    """
    Split records into consecutive groups of seven, in date order, and pick the
    group with the highest and the lowest average progress. Ties keep the earlier week.
    """
    ordered = sorted(rows, key=lambda row: row.record_date)
    weeks: list[dict[str, Any]] = []
    for i in range(0, len(ordered), WEEK_CHUNK):
        chunk = ordered[i:i + WEEK_CHUNK]
        weeks.append(
            {
                "week_start": chunk[0].record_date,
                "week_end": chunk[-1].record_date,
                "average_progress": round(sum(day_progress(row) for row in chunk) / len(chunk), 1),
                "total_days": len(chunk),
                "goal_days": sum(1 for row in chunk if row.goal_satisfied),
            }
        )
    if not weeks:
        return {"best_week": None, "challenging_week": None}
    best = weeks[0]
    worst = weeks[0]
    for week in weeks[1:]:
        if week["average_progress"] > best["average_progress"]:
            best = week
        if week["average_progress"] < worst["average_progress"]:
            worst = week
    return {"best_week": best, "challenging_week": worst}


def summarize_month(db: Session, user_id: int, year: int, month: int, today: date) -> dict[str, Any]:
    start, end = _month_bounds(year, month)
    rows = [row for row in list_daily_records(db, user_id, start, end) if row.record_date <= today.isoformat()]
    prev_start, prev_end = _month_bounds(year - 1, 12) if month == 1 else _month_bounds(year, month - 1)
    prev_rows = list_daily_records(db, user_id, prev_start, prev_end)

    progress = _progress(rows)
    goal_streak = get_goal_streak(db, user_id, today)
    weeks = analyze_weeks(rows)
    return {
        "year": year,
        "month": month,
        "total_days": len(rows),
        "goal_days": sum(1 for row in rows if row.goal_satisfied),
        "monthly_progress_pct": round(progress),
        "improvement_pct": round(progress - _progress(prev_rows)),
        "average_calories": _avg(rows, "calories_actual"),
        "average_protein": _avg(rows, "protein_actual"),
        "average_water_ml": _avg(rows, "water_ml"),
        "best_week": weeks["best_week"],
        "challenging_week": weeks["challenging_week"],
        "goal_streak": goal_streak.as_dict(),
    }
