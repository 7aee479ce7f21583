from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable, Mapping

from config import settings


@dataclass(frozen=True)
class DayOutcome:
    day: date
    goal_satisfied: bool


@dataclass(frozen=True)
class StreakState:
    current: int
    best: int
    last_date: date | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "best": self.best,
            "last_date": self.last_date.isoformat() if self.last_date else None,
        }


def _field(record: Any, *names: str) -> Any:
    for name in names:
        if isinstance(record, Mapping):
            if name in record:
                return record[name]
        elif hasattr(record, name):
            return getattr(record, name)
    raise ValueError(f"Record is missing one of {names}")


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value if type(value) is date else value.date()
    return date.fromisoformat(str(value)[:10])


def normalize_outcomes(records: Iterable[Any], today: date | None = None) -> list[DayOutcome]:
    """Sort ascending and keep one outcome per date; the later record in input order wins."""
    by_day: dict[date, bool] = {}
    for record in records:
        day = _as_date(_field(record, "day", "date", "record_date"))
        if today is not None and day > today:
            continue
        by_day[day] = bool(_field(record, "goal_satisfied"))
    return [DayOutcome(day=d, goal_satisfied=by_day[d]) for d in sorted(by_day)]


def best_run(outcomes: list[DayOutcome]) -> int:
    best = 0
    running = 0
    previous: date | None = None
    for outcome in outcomes:
        if previous is not None and (outcome.day - previous).days != 1:
            running = 0
        running = running + 1 if outcome.goal_satisfied else 0
        best = max(best, running)
        previous = outcome.day
    return best


def trailing_run(outcomes: list[DayOutcome]) -> int:
    run = 0
    following: date | None = None
    for outcome in reversed(outcomes):
        if not outcome.goal_satisfied:
            break
        if following is not None and (following - outcome.day).days != 1:
            break
        run += 1
        following = outcome.day
    return run


def compute_goal_streak(
    records: Iterable[Any],
    today: date,
    grace_days: int | None = None,
) -> StreakState:
    """
    Goal streak over daily records.

    ``best`` is the longest run of consecutive satisfied dates anywhere in history.
    ``current`` is the run ending at the most recent record, and only counts while
    that record is no older than ``today - grace_days``; a stale run reports 0.
    """
    grace = settings.STREAK_GRACE_DAYS if grace_days is None else int(grace_days)
    if grace < 0:
        raise ValueError("grace_days must not be negative")
    outcomes = normalize_outcomes(records, today=today)
    if not outcomes:
        return StreakState(current=0, best=0, last_date=None)

    last_day = outcomes[-1].day
    is_live = last_day >= today - timedelta(days=grace)
    return StreakState(
        current=trailing_run(outcomes) if is_live else 0,
        best=best_run(outcomes),
        last_date=last_day,
    )
