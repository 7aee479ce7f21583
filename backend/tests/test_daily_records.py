from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import DailyRecord, User  # noqa: E402
from services.daily_record_service import (  # noqa: E402
    analyze_weeks,
    day_progress,
    derive_goal_satisfied,
    get_goal_streak,
    list_daily_records,
    summarize_month,
    upsert_daily_record,
)
from services.errors import EngineValidationError, TemporarilyUnavailableError  # noqa: E402


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db) -> User:
    user = User(username="records_user", display_name="Records Tester", subscription_tier="free", timezone="UTC")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def test_upsert_keeps_one_record_per_date():
    db = _new_db()
    user = _new_user(db)
    day = date(2026, 4, 3)

    upsert_daily_record(db, user.id, day, raw_metrics={"calories_goal": 2000, "calories_actual": 1200})
    row = upsert_daily_record(db, user.id, day, raw_metrics={"calories_goal": 2000, "calories_actual": 1950})

    assert db.query(DailyRecord).filter(DailyRecord.user_id == user.id).count() == 1
    assert row.record_date == "2026-04-03"
    assert row.calories_actual == 1950.0
    assert row.goal_satisfied is True


def test_explicit_flag_overrides_derived_goal():
    db = _new_db()
    user = _new_user(db)
    row = upsert_daily_record(
        db,
        user.id,
        date(2026, 4, 3),
        goal_satisfied=True,
        raw_metrics={"calories_goal": 2000, "calories_actual": 100},
    )
    assert row.goal_satisfied is True


@pytest.mark.parametrize(
    ("metrics", "expected"),
    [
        ({"calories_goal": 2000, "calories_actual": 1800}, True),
        ({"calories_goal": 2000, "calories_actual": 1799}, False),
        ({"calories_goal": 0, "calories_actual": 1500}, False),
        ({"calories_goal": 2000}, False),
        ({}, False),
    ],
)
def test_goal_derivation_uses_ninety_percent_of_target(metrics, expected):
    assert derive_goal_satisfied(metrics) is expected


def test_non_numeric_metric_is_rejected():
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(EngineValidationError):
        upsert_daily_record(db, user.id, date(2026, 4, 3), raw_metrics={"calories_actual": "lots"})


def test_streak_reads_stored_records():
    db = _new_db()
    user = _new_user(db)
    for day, ok in ((1, True), (2, True), (3, False), (4, True), (5, True), (6, True)):
        upsert_daily_record(db, user.id, date(2026, 4, day), goal_satisfied=ok)

    state = get_goal_streak(db, user.id, date(2026, 4, 6))
    assert (state.current, state.best) == (3, 3)

    later = get_goal_streak(db, user.id, date(2026, 4, 12))
    assert (later.current, later.best) == (0, 3)


def test_monthly_summary_compares_with_previous_month():
    db = _new_db()
    user = _new_user(db)
    upsert_daily_record(db, user.id, date(2026, 3, 10), goal_satisfied=True)
    upsert_daily_record(db, user.id, date(2026, 3, 11), goal_satisfied=False)
    for day, actual in ((1, 1000), (2, 1200), (3, 1900), (4, 1950), (5, 2000)):
        upsert_daily_record(
            db,
            user.id,
            date(2026, 4, day),
            raw_metrics={"calories_goal": 2000, "calories_actual": actual, "water_ml": 2000},
        )
    upsert_daily_record(db, user.id, date(2026, 4, 20), goal_satisfied=True)

    summary = summarize_month(db, user.id, 2026, 4, today=date(2026, 4, 5))

    assert summary["total_days"] == 5
    assert summary["goal_days"] == 3
    assert summary["monthly_progress_pct"] == 60
    assert summary["improvement_pct"] == 10
    assert summary["average_calories"] == 1610.0
    assert summary["average_water_ml"] == 2000.0
    assert summary["goal_streak"]["current"] == 3


def test_invalid_month_is_rejected():
    db = _new_db()
    user = _new_user(db)
    with pytest.raises(EngineValidationError):
        summarize_month(db, user.id, 2026, 13, today=date(2026, 4, 5))


def test_persistent_lock_surfaces_temporarily_unavailable(monkeypatch):
    db = _new_db()
    user = _new_user(db)
    calls = {"n": 0}

    def locked(*args, **kwargs):
        calls["n"] += 1
        raise OperationalError("INSERT INTO daily_records", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "execute", locked)
    with pytest.raises(TemporarilyUnavailableError):
        upsert_daily_record(db, user.id, date(2026, 4, 3), goal_satisfied=True)
    assert calls["n"] == 3
    monkeypatch.undo()
    assert db.query(DailyRecord).count() == 0


def _week_of(db, user_id: int, first_day: int, actuals: list[float]) -> None:
    for offset, actual in enumerate(actuals):
        upsert_daily_record(
            db,
            user_id,
            date(2026, 4, first_day + offset),
            raw_metrics={"calories_goal": 2000, "calories_actual": actual},
        )


def test_monthly_summary_reports_best_and_challenging_weeks():
    db = _new_db()
    user = _new_user(db)
    _week_of(db, user.id, 1, [1000] * 7)
    _week_of(db, user.id, 8, [2000, 2400, 1900, 1800, 2000, 2000, 2000])
    _week_of(db, user.id, 15, [1500, 1500])

    summary = summarize_month(db, user.id, 2026, 4, today=date(2026, 4, 30))

    best = summary["best_week"]
    assert (best["week_start"], best["week_end"]) == ("2026-04-08", "2026-04-14")
    assert best["average_progress"] == 97.9
    assert best["goal_days"] == 7
    worst = summary["challenging_week"]
    assert (worst["week_start"], worst["week_end"]) == ("2026-04-01", "2026-04-07")
    assert worst["average_progress"] == 50.0
    assert worst["goal_days"] == 0


def test_weekly_analysis_without_records():
    db = _new_db()
    user = _new_user(db)
    summary = summarize_month(db, user.id, 2026, 4, today=date(2026, 4, 30))
    assert summary["best_week"] is None
    assert summary["challenging_week"] is None


def test_flag_only_records_count_as_full_or_empty_days():
    db = _new_db()
    user = _new_user(db)
    upsert_daily_record(db, user.id, date(2026, 4, 1), goal_satisfied=True)
    upsert_daily_record(db, user.id, date(2026, 4, 2), goal_satisfied=False)
    rows = list_daily_records(db, user.id)
    assert [day_progress(row) for row in rows] == [100.0, 0.0]
    assert analyze_weeks(rows)["best_week"]["average_progress"] == 50.0
