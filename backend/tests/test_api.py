"""API endpoint tests using FastAPI TestClient."""
import sys
import os
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient
from main import app
from analytics import analytics
from poll_gateway import poll_gateway
from question_bank import question_bank
from room_store import room_store
from storage import archive_store
import config
import identity


POOL = [
    {"question": "Capital of France?", "options": ["A. Berlin", "B. Paris", "C. Rome", "D. Madrid"], "answer": "B"},
]

USERS = {
    "admin-token": {"id": "admin1", "name": "Admin", "avatar": None, "username": "admin"},
    "user-token": {"id": "user1", "name": "User", "avatar": "av", "username": "user"},
}


@pytest.fixture(autouse=True)
def clear_state(monkeypatch):
    """Clear in-memory state before each test."""
    room_store.rooms.clear()
    archive_store.archives.clear()
    archive_store.live_scores.clear()
    analytics.__init__()
    question_bank.set_pool(POOL)

    async def validate(token):
        if token not in USERS:
            raise identity.IdentityError("Invalid Discord token")
        return dict(USERS[token])

    monkeypatch.setattr(identity, "validate_token", validate)
    monkeypatch.setattr(config, "ADMIN_USER_IDS", ["admin1"])
    yield
    room_store.rooms.clear()


client = TestClient(app)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Health & Root
# ---------------------------------------------------------------------------

class TestHealthEndpoints:
    def test_root(self):
        res = client.get("/")
        assert res.status_code == 200
        assert "running" in res.json()["message"].lower()

    @pytest.mark.parametrize("path", ["/health", "/api/health"])
    def test_health(self, path):
        res = client.get(path)
        assert res.status_code == 200
        assert res.json()["status"] == "healthy"
        assert "timestamp" in res.json()


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class TestToken:
    def test_missing_code(self):
        res = client.post("/api/token", json={})
        assert res.status_code == 400

    def test_exchange(self, monkeypatch):
        async def exchange(code):
            assert code == "abc"
            return {"access_token": "tok", "token_type": "Bearer"}

        monkeypatch.setattr(identity, "exchange_code", exchange)
        res = client.post("/api/token", json={"code": "abc"})
        assert res.status_code == 200
        assert res.json()["access_token"] == "tok"

    def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(config, "DISCORD_CLIENT_ID", "")
        res = client.post("/token", json={"code": "abc"})
        assert res.status_code == 503

    def test_provider_failure(self, monkeypatch):
        async def exchange(code):
            raise RuntimeError("provider down")

        monkeypatch.setattr(identity, "exchange_code", exchange)
        res = client.post("/token", json={"code": "abc"})
        assert res.status_code == 500


class TestMe:
    def test_requires_auth(self):
        assert client.get("/api/me").status_code == 401

    def test_invalid_token(self):
        assert client.get("/api/me", headers=auth("forged")).status_code == 401

    def test_returns_identity(self):
        res = client.get("/me", headers=auth("user-token"))
        assert res.status_code == 200
        assert res.json()["id"] == "user1"
        assert res.json()["name"] == "User"


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

class TestAnalytics:
    def test_non_admin_forbidden(self):
        assert client.get("/api/analytics", headers=auth("user-token")).status_code == 403

    def test_unauthenticated(self):
        assert client.get("/api/analytics").status_code == 401

    def test_admin_snapshot(self):
        client.post("/api/game-event", json={"event": "start_question", "data": {"roomId": "R1"}})
        res = client.get("/api/analytics", headers=auth("admin-token"))
        assert res.status_code == 200
        data = res.json()
        assert data["totalGamesPlayed"] == 1
        assert data["currentSessions"] == 1
        assert "dailyStats" in data


class TestLeaderboardHistory:
    def test_admin_history(self):
        archive_store.archive("R1", [{"id": "alice", "name": "Alice", "score": 30, "avatar": None}])
        res = client.get("/api/leaderboard/R1/history", headers=auth("admin-token"))
        assert res.status_code == 200
        data = res.json()
        assert data["roomId"] == "R1"
        assert data["history"][0]["scores"][0]["score"] == 30

    def test_days_out_of_range(self):
        res = client.get("/api/leaderboard/R1/history?days=0", headers=auth("admin-token"))
        assert res.status_code == 400

    def test_non_admin_forbidden(self):
        res = client.get("/api/leaderboard/R1/history", headers=auth("user-token"))
        assert res.status_code == 403


# ---------------------------------------------------------------------------
# Poll transport
# ---------------------------------------------------------------------------

def event(name, prefix="/api", **data):
    res = client.post(f"{prefix}/game-event", json={"event": name, "data": data})
    assert res.status_code == 200
    return res.json()


class TestGameEvent:
    def test_both_prefixes_share_rooms(self):
        first = event("start_question", roomId="R1")
        second = event("start_question", prefix="", roomId="R1")
        assert first["isNew"] is True
        assert second["isNew"] is False
        assert second["question"]["id"] == first["question"]["id"]

    def test_full_round(self):
        event("start_question", roomId="R1")
        event("select_option", roomId="R1", playerId="p1", playerName="Pat", optionIndex=1, timeTaken=2)
        event("select_option", roomId="R1", playerId="p2", optionIndex=0, timeTaken=1)

        first = event("end_round", roomId="R1")
        second = event("end_round", roomId="R1")

        assert first == second
        assert first["data"]["correctIndex"] == 1
        assert first["data"]["scores"] == {"p1": 113, "p2": 0}

    def test_event_name_normalized(self):
        assert event(" START_QUESTION ", roomId="R1")["success"] is True

    def test_unknown_event(self):
        data = event("dance", roomId="R1")
        assert data["success"] is False

    def test_missing_room(self):
        assert event("start_question")["success"] is False

    def test_internal_error(self, monkeypatch):
        async def boom(event_name, data):
            raise RuntimeError("boom")

        monkeypatch.setattr(poll_gateway, "handle_event", boom)
        res = client.post("/api/game-event", json={"event": "start_question", "data": {"roomId": "R1"}})
        assert res.status_code == 500
        assert res.json() == {"success": False, "error": "Failed to process game event"}

    def test_missing_event_field(self):
        res = client.post("/api/game-event", json={"data": {"roomId": "R1"}})
        assert res.status_code == 422


class TestGameState:
    def test_unknown_room(self):
        res = client.get("/api/game-state/NEW")
        assert res.status_code == 200
        data = res.json()
        assert data["success"] is True
        assert data["currentQuestion"] is None
        assert data["gameState"] == "waiting"

    def test_round_in_progress(self):
        event("start_question", roomId="R1")
        event("select_option", roomId="R1", playerId="p1", optionIndex=2)
        data = client.get("/game-state/R1").json()
        assert data["gameState"] == "playing"
        assert data["selections"] == {"p1": 2}
        assert "correctIndex" not in data["currentQuestion"]
        assert data["players"][0]["id"] == "p1"
