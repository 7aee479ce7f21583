from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import Any, Iterable

from config import settings
from services.errors import PlanValidationError
from utils.datetime_utils import parse_instant, to_tz, utcnow


SLOT_ORDER: dict[str, int] = {
    "breakfast": 0,
    "morning_snack": 1,
    "lunch": 2,
    "afternoon_snack": 3,
    "snack": 3,
    "dinner": 4,
    "evening_snack": 5,
}


@dataclass(frozen=True)
class CycleState:
    day_index: int
    exceeded: bool
    started: bool
    elapsed_days: int
    effective_start: date
    end_date: date

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["effective_start"] = self.effective_start.isoformat()
        payload["end_date"] = self.end_date.isoformat()
        return payload


def effective_start_date(start_instant: datetime, cutoff_hour: int) -> date:
    """Plans started at or after the cutoff hour begin at the next midnight."""
    if start_instant.hour >= cutoff_hour:
        return start_instant.date() + timedelta(days=1)
    return start_instant.date()


@lru_cache(maxsize=2048)
def _cycle_state(start_local: datetime, cycle_length_days: int, cutoff_hour: int, now_local: datetime) -> CycleState:
    effective = effective_start_date(start_local, cutoff_hour)
    end_date = effective + timedelta(days=cycle_length_days - 1)
    elapsed = (now_local.date() - effective).days
    if elapsed < 0:
        return CycleState(
            day_index=0,
            exceeded=False,
            started=False,
            elapsed_days=0,
            effective_start=effective,
            end_date=end_date,
        )
    exceeded = elapsed >= cycle_length_days
    return CycleState(
        day_index=cycle_length_days - 1 if exceeded else elapsed,
        exceeded=exceeded,
        started=True,
        elapsed_days=elapsed,
        effective_start=effective,
        end_date=end_date,
    )


def _validated_length(cycle_length_days) -> int:
    if isinstance(cycle_length_days, bool) or not isinstance(cycle_length_days, int):
        raise PlanValidationError("cycle_length_days must be an integer")
    if cycle_length_days < 1:
        raise PlanValidationError("cycle_length_days must be at least 1")
    return cycle_length_days


def _validated_cutoff(cutoff_hour) -> int:
    if isinstance(cutoff_hour, bool) or not isinstance(cutoff_hour, int):
        raise PlanValidationError("cutoff_hour must be an integer")
    if not 0 <= cutoff_hour <= 24:
        raise PlanValidationError("cutoff_hour must be between 0 and 24")
    return cutoff_hour


def compute_cycle_state(
    start_instant: datetime | str | None,
    cycle_length_days: int,
    cutoff_hour: int | None = None,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> CycleState:
    """
    Position of a plan inside its single, terminating cycle.

    Calendar days are counted in ``tz_name`` when given; otherwise an aware ``now``
    is read in the start instant's own zone. The day index is linear and never
    wraps: once ``elapsed_days`` reaches the cycle length the plan is exceeded.
    """
    length = _validated_length(cycle_length_days)
    cutoff = _validated_cutoff(settings.PLAN_CUTOFF_HOUR if cutoff_hour is None else cutoff_hour)
    if start_instant is None:
        raise PlanValidationError("start_instant is required")
    try:
        start = parse_instant(start_instant)
    except ValueError as exc:
        raise PlanValidationError(f"start_instant is not a valid date/time: {exc}") from exc

    current = utcnow() if now is None else now
    if (start.tzinfo is None) != (current.tzinfo is None):
        raise PlanValidationError("start_instant and now must both be timezone-aware or both naive")

    start_local = to_tz(start, tz_name)
    now_local = to_tz(current, tz_name)
    if not tz_name and start_local.tzinfo is not None:
        now_local = now_local.astimezone(start_local.tzinfo)

    # Day boundaries only depend on the calendar date, so minute precision is enough for the cache key.
    return _cycle_state(start_local, length, cutoff, now_local.replace(second=0, microsecond=0))


def progress_pct(state: CycleState, cycle_length_days: int) -> float:
    if not state.started:
        return 0.0
    if state.exceeded:
        return 100.0
    return round(min((state.day_index + 1) / max(cycle_length_days, 1) * 100.0, 100.0), 1)


def items_for_day(items: Iterable[Any], day_index: int) -> list[Any]:
    rows = [item for item in items if int(getattr(item, "day_offset", -1)) == int(day_index)]
    return sorted(
        rows,
        key=lambda item: (SLOT_ORDER.get(str(getattr(item, "slot", "")).lower(), 99), str(getattr(item, "slot", ""))),
    )
