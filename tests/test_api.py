import pytest
from fastapi.testclient import TestClient

from pointsledger.core.security import create_access_token
from pointsledger.main import app
from pointsledger.services.gamification_service import get_gamification_service


def auth(user_id, role="user"):
    return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}


@pytest.fixture
def client(service):
    app.dependency_overrides[get_gamification_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def award(client, user_id, action_type, **extra):
    body = {"user_id": user_id, "action_type": action_type, **extra}
    return client.post("/points/award", json=body, headers=auth("lms", role="service"))


def test_root_and_health(client):
    assert client.get("/").status_code == 200
    assert client.get("/health").json()["status"] == "healthy"


def test_balance_requires_token(client):
    assert client.get("/points/balance").status_code == 401
    bad = client.get("/points/balance", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401


def test_users_cannot_award_themselves(client):
    response = client.post(
        "/points/award",
        json={"user_id": "alice", "action_type": "WORKSHOP_CHECKIN", "reference_id": "ws-1"},
        headers=auth("alice"),
    )
    assert response.status_code == 403


def test_award_and_duplicate(client):
    first = award(client, "alice", "WORKSHOP_CHECKIN", reference_id="ws-1")
    assert first.status_code == 200
    assert first.json()["awarded"] is True
    assert first.json()["new_balance"] == 50

    again = award(client, "alice", "WORKSHOP_CHECKIN", reference_id="ws-1")
    assert again.status_code == 200
    assert again.json()["awarded"] is False
    assert again.json()["reason"] == "duplicate"


def test_award_triggers_badge_evaluation(client):
    award(client, "alice", "WORKSHOP_CHECKIN", reference_id="ws-1")
    badges = client.get("/gamification/badges/me", headers=auth("alice")).json()
    assert [b["badge"]["code"] for b in badges] == ["FIRST_CHECKIN"]

    balance = client.get("/points/balance", headers=auth("alice")).json()
    assert balance["total_points"] == 60


def test_unknown_action_is_a_bad_request(client):
    response = award(client, "alice", "TELEPORT")
    assert response.status_code == 400
    assert "TELEPORT" in response.json()["detail"]


def test_spend(client):
    award(client, "alice", "WORKSHOP_SUBMISSION", reference_id="p-1")

    ok = client.post("/points/spend", json={"points": 50, "idempotency_key": "o-1"}, headers=auth("alice"))
    assert ok.status_code == 200
    assert ok.json()["success"] is True

    too_much = client.post("/points/spend", json={"points": 10_000}, headers=auth("alice"))
    assert too_much.status_code == 409
    assert too_much.json()["detail"]["error"] == "insufficient_balance"

    invalid = client.post("/points/spend", json={"points": 0}, headers=auth("alice"))
    assert invalid.status_code == 422


def test_transactions_and_today(client):
    award(client, "alice", "COMMENT", reference_id="c-1")
    award(client, "alice", "COMMENT", reference_id="c-2")

    history = client.get("/points/transactions", params={"limit": 1}, headers=auth("alice")).json()
    assert len(history) == 1

    today = client.get("/points/today", headers=auth("alice")).json()
    assert today["earned_today"] == 10
    assert today["remaining_today"] == 290


def test_rules_listing(client):
    rules = client.get("/points/rules").json()["rules"]
    assert {"action_type": "WORKSHOP_CHECKIN", "points": 50}.items() <= next(
        r for r in rules if r["action_type"] == "WORKSHOP_CHECKIN"
    ).items()


def test_streak_endpoints(client):
    result = client.post("/gamification/streak", headers=auth("alice"))
    assert result.status_code == 200
    assert result.json()["current_streak"] == 1
    assert result.json()["points_earned"] == 5

    streak = client.get("/gamification/streak", headers=auth("alice")).json()
    assert streak["longest_streak"] == 1


def test_leaderboard_refresh_is_admin_only(client):
    award(client, "alice", "WORKSHOP_CHECKIN", reference_id="ws-1")

    assert client.post("/gamification/leaderboard/refresh", headers=auth("alice")).status_code == 403
    assert client.get("/gamification/leaderboard/me", headers=auth("alice")).status_code == 404

    refreshed = client.post("/gamification/leaderboard/refresh", headers=auth("root", role="admin"))
    assert refreshed.json()["entries"] == 1

    board = client.get("/gamification/leaderboard").json()
    assert board[0]["user_id"] == "alice"
    assert client.get("/gamification/leaderboard/me", headers=auth("alice")).json()["rank"] == 1


def test_profile(client):
    client.post(
        "/members",
        json={"user_id": "alice", "display_name": "Alice"},
        headers=auth("auth-service", role="service"),
    )
    client.put("/gamification/profile", json={"avatar_url": "https://cdn.example/a.png"}, headers=auth("alice"))

    profile = client.get("/gamification/profile", headers=auth("alice")).json()
    assert profile["balance"]["total_points"] == 0
    assert profile["daily_point_limit"] == 300
    assert profile["badges"]["unlocked"] == 0
    assert profile["rank"] is None


def test_badge_catalog_and_progress(client):
    assert len(client.get("/gamification/badges").json()) > 0
    progress = client.get("/gamification/badges/progress", headers=auth("alice")).json()
    assert all(p["progress"] <= p["requirement"] for p in progress)
    assert client.post("/gamification/badges/check", headers=auth("alice")).json() == []


def test_unlock_badge_endpoint(client):
    body = {"user_id": "alice", "code": "LAUNCH_CREW"}
    assert client.post("/gamification/badges/unlock", json=body, headers=auth("alice")).status_code == 403

    granted = client.post("/gamification/badges/unlock", json=body, headers=auth("events", role="service"))
    assert granted.status_code == 200
    assert granted.json()["success"] is True
    assert granted.json()["points_awarded"] == 20

    again = client.post("/gamification/badges/unlock", json=body, headers=auth("events", role="service"))
    assert again.json()["error"] == "already_unlocked"

    missing = client.post(
        "/gamification/badges/unlock",
        json={"user_id": "alice", "code": "NOPE"},
        headers=auth("events", role="service"),
    )
    assert missing.status_code == 404
