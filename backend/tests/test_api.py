from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auth.utils import create_token  # noqa: E402
from db.database import Base, get_db  # noqa: E402
from db.models import User  # noqa: E402
from main import app  # noqa: E402
from utils.datetime_utils import start_of_week, today_utc  # noqa: E402


PLAN_PAYLOAD = {
    "name": "January Reset",
    "start_instant": "2026-01-05T08:00:00Z",
    "cycle_length_days": 3,
    "items": [
        {"day_offset": 0, "slot": "breakfast", "name": "Oats", "calories": 350},
        {"day_offset": 0, "slot": "dinner", "name": "Salmon Bowl", "calories": 650},
        {"day_offset": 1, "slot": "lunch", "name": "Lentil Soup", "calories": 480},
    ],
}


def _client_for(tz_name: str):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    db = factory()
    user = User(username="api_user", display_name="API Tester", subscription_tier="free", timezone=tz_name)
    db.add(user)
    db.commit()
    token = create_token(user.id, token_version=0)
    db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        test_client.headers.update({"Authorization": f"Bearer {token}"})
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def client():
    yield from _client_for("UTC")


@pytest.fixture()
def new_york_client():
    yield from _client_for("America/New_York")


@pytest.fixture()
def unknown_zone_client():
    yield from _client_for("Mars/Olympus")


def test_wall_clock_start_uses_user_timezone(new_york_client):
    payload = {**PLAN_PAYLOAD, "start_instant": "2026-03-02T15:00:00", "cycle_length_days": 7}
    plan_id = new_york_client.post("/api/plans", json=payload).json()["plan_id"]

    cycle = new_york_client.get(f"/api/plans/{plan_id}/cycle").json()
    assert cycle["effective_start"] == "2026-03-03"
    assert cycle["end_date"] == "2026-03-09"


def test_unknown_user_timezone_does_not_fail_requests(unknown_zone_client):
    plan_id = unknown_zone_client.post("/api/plans", json=PLAN_PAYLOAD).json()["plan_id"]
    for path in ("cycle", "timeline", "analytics", "summary/weekly"):
        assert unknown_zone_client.get(f"/api/plans/{plan_id}/{path}").status_code == 200
    assert unknown_zone_client.post(f"/api/plans/{plan_id}/evaluate").status_code == 200
    assert unknown_zone_client.get("/api/daily-records/streak").status_code == 200


def test_requests_without_token_are_rejected(client):
    response = client.get("/api/usage", headers={"Authorization": ""})
    assert response.status_code == 401


def test_invalid_token_is_rejected(client):
    response = client.get("/api/usage", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_plan_lifecycle(client):
    created = client.post("/api/plans", json=PLAN_PAYLOAD)
    assert created.status_code == 201
    plan_id = created.json()["plan_id"]
    assert created.json()["total_items"] == 3

    cycle = client.get(f"/api/plans/{plan_id}/cycle").json()
    assert cycle["phase"] == "completed"
    assert cycle["exceeded"] is True
    assert cycle["day_index"] == 2
    assert cycle["progress_pct"] == 100.0

    first = client.post(f"/api/plans/{plan_id}/evaluate").json()
    second = client.post(f"/api/plans/{plan_id}/evaluate").json()
    assert first["fired"] is True
    assert first["completion_event"]["summary"]["total_calories"] == 1480.0
    assert second["fired"] is False
    assert second["completion_event"]["fired_at"] == first["completion_event"]["fired_at"]

    timeline = client.get(f"/api/plans/{plan_id}/timeline").json()
    assert timeline["plan_finished"] is True
    assert timeline["timeline"] == []


def test_check_in_analytics_and_weekly_summary(client):
    plan_id = client.post("/api/plans", json=PLAN_PAYLOAD).json()["plan_id"]
    analytics = client.get(f"/api/plans/{plan_id}/analytics").json()
    assert analytics["completed_items"] == 0

    checked = client.post(
        f"/api/plans/{plan_id}/check-ins",
        json={"item_id": 1, "day_offset": 0, "verification_score": 55, "notes": "photo"},
    )
    assert checked.status_code == 201
    assert checked.json()["item_name"] == "Oats"
    assert checked.json()["verification"]["confidence"] == "medium"

    analytics = client.get(f"/api/plans/{plan_id}/analytics").json()
    assert analytics["completed_items"] == 1
    assert analytics["completion_percentage"] == 33.3
    assert analytics["popular_items"] == [{"name": "Oats", "count": 1}]

    week_start = start_of_week(today_utc()).isoformat()
    weekly = client.get(f"/api/plans/{plan_id}/summary/weekly", params={"week_start": week_start}).json()
    assert weekly["total_check_ins"] == 1
    assert weekly["totals"]["calories"] == 350.0
    assert weekly["checkin_streak"] == 1

    bad = client.post(
        f"/api/plans/{plan_id}/check-ins",
        json={"item_id": 1, "day_offset": 7, "verification_score": 55},
    )
    assert bad.status_code == 400


def test_invalid_plan_is_rejected(client):
    response = client.post("/api/plans", json={**PLAN_PAYLOAD, "cycle_length_days": 0})
    assert response.status_code == 400
    response = client.post("/api/plans", json={**PLAN_PAYLOAD, "start_instant": "soon"})
    assert response.status_code == 400


def test_unknown_plan_is_404(client):
    assert client.get("/api/plans/999/cycle").status_code == 404


def test_daily_record_and_streak(client):
    today = today_utc().isoformat()
    saved = client.put(
        "/api/daily-records",
        json={"record_date": today, "calories_goal": 2000, "calories_actual": 1900},
    )
    assert saved.status_code == 200
    assert saved.json()["goal_satisfied"] is True

    streak = client.get("/api/daily-records/streak").json()
    assert streak["goal_streak"]["current"] == 1
    assert streak["goal_streak"]["best"] == 1

    assert client.get("/api/daily-records/monthly", params={"year": 2026, "month": 13}).status_code == 400


def test_usage_consume_and_stats(client):
    scan = client.post("/api/usage/consume", json={"resource_type": "meal_scans"})
    assert scan.status_code == 200
    assert scan.json()["allowed"] is True
    assert scan.json()["remaining"] == 4

    chat = client.post("/api/usage/consume", json={"resource_type": "ai_chat_tokens", "amount": 10})
    assert chat.status_code == 200
    assert chat.json()["allowed"] is False
    assert chat.json()["message"].endswith("Please upgrade to Gold or Platinum.")

    assert client.post("/api/usage/consume", json={"resource_type": "meal_scans", "amount": -1}).status_code == 400
    assert client.post("/api/usage/consume", json={"resource_type": "video", "amount": 1}).status_code == 400

    stats = client.get("/api/usage").json()
    assert stats["plan_name"] == "Free Plan"
    assert stats["resources"]["meal_scans"]["current"] == 1
    assert stats["resources"]["ai_chat_tokens"]["available"] is False
