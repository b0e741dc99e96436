"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Drives the HTTP surface with the FastAPI TestClient against the in-memory
SQLite engine.

These tests verify:
- Auth guards (missing/invalid token → 401, non-admin → 403)
- The ``{success, error, code}`` envelope for every failure kind
- Completion, redemption, profile and leaderboard responses
- Operator endpoints
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import questline.api.routes.admin as admin_routes
import questline.api.routes.leaderboard as leaderboard_routes
import questline.api.routes.quests as quest_routes
from conftest import make_quest, make_template, make_token
from questline.config import QuestlineConfig
from questline.services import ledger_store
from questline.services.degraded_log import get_degraded_log


@pytest.fixture
def client(db_engine, cache):
    """TestClient wired to the test engine and cache."""
    from questline.api.main import app

    config = QuestlineConfig(service_name="Questline Test", api_port=0, leaderboard_limit=2)
    # Key overrides on the objects the routers were built with
    for module in (quest_routes, leaderboard_routes, admin_routes):
        app.dependency_overrides[module.get_engine] = lambda: db_engine
        app.dependency_overrides[module.get_cache] = lambda: cache
    app.dependency_overrides[quest_routes.get_config] = lambda: config
    app.dependency_overrides[leaderboard_routes.get_config] = lambda: config

    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
    get_degraded_log().clear()


@pytest.fixture
def user_token():
    return make_token(sub="u-1", username="Ada")


@pytest.fixture
def admin_token():
    return make_token(sub="ops", username="Operator", is_admin=True)


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _ready(client, token, quest_id="q-1"):
    resp = client.post(
        "/api/quests/progress", json={"questId": quest_id, "progress": 100},
        headers=_auth(token),
    )
    assert resp.status_code == 200, resp.text


# ===========================================================================
# Health
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "status": "ok"}


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    USER_ENDPOINTS = [
        ("post", "/api/quests/complete"),
        ("post", "/api/quests/redeem-code"),
        ("post", "/api/quests/progress"),
        ("get", "/api/me"),
    ]

    ADMIN_ENDPOINTS = [
        ("post", "/api/admin/leaderboard/rebuild"),
        ("get", "/api/admin/reconciliation"),
        ("post", "/api/admin/reconciliation/settle"),
        ("get", "/api/admin/degraded"),
        ("post", "/api/admin/cache/reload"),
        ("get", "/api/admin/accounts/u-1/transactions"),
    ]

    @pytest.mark.parametrize("method, endpoint", USER_ENDPOINTS + ADMIN_ENDPOINTS)
    def test_rejects_no_auth(self, client, method, endpoint):
        resp = getattr(client, method)(endpoint)
        assert resp.status_code == 401
        assert resp.json() == {
            "success": False, "error": "Missing token", "code": "InvalidAuthentication",
        }

    @pytest.mark.parametrize("method, endpoint", USER_ENDPOINTS + ADMIN_ENDPOINTS)
    def test_rejects_invalid_token(self, client, method, endpoint):
        resp = getattr(client, method)(endpoint, headers={"Authorization": "Bearer invalid"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid authentication"

    @pytest.mark.parametrize("method, endpoint", ADMIN_ENDPOINTS)
    def test_rejects_non_admin(self, client, user_token, method, endpoint):
        resp = getattr(client, method)(endpoint, headers=_auth(user_token))
        assert resp.status_code == 403
        assert resp.json()["code"] == "Forbidden"

    def test_token_without_subject_rejected(self, client):
        import jwt

        from questline.api.deps import JWT_ALGORITHM, JWT_SECRET

        token = jwt.encode({"username": "nobody"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        resp = client.get("/api/me", headers=_auth(token))
        assert resp.status_code == 401


# ===========================================================================
# POST /quests/complete
# ===========================================================================
class TestCompleteQuest:
    def test_completes_once(self, client, db_engine, user_token):
        make_quest(db_engine, "q-1", reward_points=50)
        _ready(client, user_token)

        resp = client.post("/api/quests/complete", json={"questId": "q-1"},
                           headers=_auth(user_token))
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["xpAwarded"] == 50
        assert body["data"]["newXpTotal"] == 50
        assert body["data"]["leveledUp"] is False
        assert body["data"]["newRank"] == "Novice"

        again = client.post("/api/quests/complete", json={"questId": "q-1"},
                            headers=_auth(user_token))
        assert again.status_code == 409
        assert again.json() == {
            "success": False,
            "error": "Quest already completed",
            "code": "AlreadyCompleted",
            "category": "conflict",
            "retryable": False,
        }

    def test_identity_mismatch(self, client, db_engine, user_token):
        make_quest(db_engine, "q-1")
        resp = client.post("/api/quests/complete", json={"questId": "q-1", "userId": "u-2"},
                           headers=_auth(user_token))
        assert resp.status_code == 403
        assert resp.json()["code"] == "IdentityMismatch"
        assert ledger_store.get_account(db_engine, "u-2") is None

    def test_matching_user_id_accepted(self, client, db_engine, user_token):
        make_quest(db_engine, "q-1")
        _ready(client, user_token)
        resp = client.post("/api/quests/complete", json={"questId": "q-1", "userId": "u-1"},
                           headers=_auth(user_token))
        assert resp.status_code == 200

    def test_missing_quest_id(self, client, user_token):
        resp = client.post("/api/quests/complete", json={}, headers=_auth(user_token))
        assert resp.status_code == 400
        assert resp.json() == {
            "success": False,
            "error": "Missing required field: questId",
            "code": "ValidationFailed",
        }

    def test_unknown_quest(self, client, user_token):
        resp = client.post("/api/quests/complete", json={"questId": "nope"},
                           headers=_auth(user_token))
        assert resp.status_code == 404
        assert resp.json()["code"] == "QuestNotFound"

    def test_not_ready(self, client, db_engine, user_token):
        make_quest(db_engine, "q-1")
        resp = client.post("/api/quests/complete", json={"questId": "q-1"},
                           headers=_auth(user_token))
        assert resp.status_code == 400
        assert resp.json()["code"] == "NotReady"

    def test_progress_out_of_range(self, client, user_token):
        resp = client.post("/api/quests/progress", json={"questId": "q-1", "progress": 101},
                           headers=_auth(user_token))
        assert resp.status_code == 400
        assert resp.json()["code"] == "ValidationFailed"


# ===========================================================================
# POST /quests/redeem-code
# ===========================================================================
class TestRedeemCode:
    def test_redeems(self, client, db_engine, user_token):
        make_quest(db_engine, "q-c", 100, title="Find the Beacon", requires_code=True,
                   codes=["ABC123"])
        resp = client.post(
            "/api/quests/redeem-code",
            json={"questId": "q-c", "userInputCode": " abc123 "},
            headers=_auth(user_token),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["message"] == 'Quest "Find the Beacon" completed successfully!'
        assert body["xpAwarded"] == 100

    def test_duplicate(self, client, db_engine, user_token):
        make_quest(db_engine, "q-c", 100, requires_code=True, codes=["ABC123"])
        payload = {"questId": "q-c", "userInputCode": "ABC123"}
        client.post("/api/quests/redeem-code", json=payload, headers=_auth(user_token))

        resp = client.post("/api/quests/redeem-code", json=payload, headers=_auth(user_token))
        assert resp.status_code == 400
        assert resp.json()["error"] == "You have already completed this quest"
        assert ledger_store.get_account(db_engine, "u-1").xp == 100

    def test_invalid_code(self, client, db_engine, user_token):
        make_quest(db_engine, "q-c", 100, requires_code=True, codes=["ABC123"])
        resp = client.post(
            "/api/quests/redeem-code",
            json={"questId": "q-c", "userInputCode": "nope"},
            headers=_auth(user_token),
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "InvalidCode"

    def test_missing_code(self, client, user_token):
        resp = client.post("/api/quests/redeem-code", json={"questId": "q-c"},
                           headers=_auth(user_token))
        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing required field: userInputCode"


# ===========================================================================
# unlockedAchievements shape
# ===========================================================================
class TestUnlockedAchievements:
    """``unlockedAchievements`` is a list of template ids as strings."""

    def test_complete_returns_string_ids(self, client, db_engine, cache, user_token):
        template_id = make_template(db_engine, "First", "quests_completed", {"count": 1},
                                    xp_reward=10)
        cache.handle_notify("achievement_templates")
        make_quest(db_engine, "q-1", reward_points=50)
        _ready(client, user_token)

        resp = client.post("/api/quests/complete", json={"questId": "q-1"},
                           headers=_auth(user_token))

        data = resp.json()["data"]
        assert data["unlockedAchievements"] == [str(template_id)]
        assert all(isinstance(a, str) for a in data["unlockedAchievements"])
        assert [a["name"] for a in data["achievements"]] == ["First"]

    def test_redeem_returns_string_ids(self, client, db_engine, cache, user_token):
        template_id = make_template(db_engine, "Code Breaker", "codes_redeemed", {"count": 1})
        cache.handle_notify("achievement_templates")
        make_quest(db_engine, "q-c", 100, requires_code=True, codes=["ABC123"])

        resp = client.post(
            "/api/quests/redeem-code",
            json={"questId": "q-c", "userInputCode": "ABC123"},
            headers=_auth(user_token),
        )

        body = resp.json()
        assert body["unlockedAchievements"] == [str(template_id)]
        assert all(isinstance(a, str) for a in body["unlockedAchievements"])


# ===========================================================================
# GET /me and GET /leaderboard
# ===========================================================================
class TestProfileAndLeaderboard:
    def test_me(self, client, db_engine, user_token):
        make_quest(db_engine, "q-1", reward_points=50)
        _ready(client, user_token)
        client.post("/api/quests/complete", json={"questId": "q-1"}, headers=_auth(user_token))

        resp = client.get("/api/me", headers=_auth(user_token))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["userId"] == "u-1"
        assert data["displayName"] == "Ada"
        assert data["xp"] == 50
        assert data["rank"] == "Novice"
        assert data["nextRank"] == "Explorer"
        assert data["xpToNextRank"] == 950
        assert data["position"] == 1
        assert [t["amount"] for t in data["recentTransactions"]] == [50]

    def test_me_unknown_account(self, client, user_token):
        resp = client.get("/api/me", headers=_auth(user_token))
        assert resp.status_code == 404
        assert resp.json()["code"] == "AccountNotFound"

    def test_leaderboard_default_limit(self, client, db_engine):
        for i, reward in enumerate((10, 30, 20)):
            quest_id = f"q-{i}"
            make_quest(db_engine, quest_id, reward_points=reward)
            token = make_token(sub=f"u-{i}")
            _ready(client, token, quest_id)
            client.post("/api/quests/complete", json={"questId": quest_id}, headers=_auth(token))

        resp = client.get("/api/leaderboard")
        assert resp.status_code == 200
        entries = resp.json()["data"]["entries"]
        assert [(e["position"], e["account_id"]) for e in entries] == [(1, "u-1"), (2, "u-2")]

    def test_leaderboard_limit_validated(self, client):
        resp = client.get("/api/leaderboard?limit=0")
        assert resp.status_code == 400

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/api/nothing-here")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Not Found", "code": "NotFound"}


# ===========================================================================
# Admin endpoints
# ===========================================================================
class TestAdminEndpoints:
    def test_reconciliation_flow(self, client, db_engine, admin_token):
        make_quest(db_engine, "q-1", reward_points=50)
        ledger_store.ensure_account(db_engine, "u-1")
        ledger_store.record_progress(db_engine, "u-1", "q-1", 100)
        ledger_store.mark_completed(db_engine, "u-1", "q-1")

        report = client.get("/api/admin/reconciliation", headers=_auth(admin_token))
        assert report.status_code == 200
        assert report.json()["data"]["unpaid_xp"] == 50

        settle = client.post("/api/admin/reconciliation/settle", headers=_auth(admin_token))
        assert settle.status_code == 200
        assert settle.json()["data"]["awards"]["settled"] == 1
        assert settle.json()["data"]["ranks"]["corrected"] == 0
        assert ledger_store.get_account(db_engine, "u-1").xp == 50

        transactions = client.get(
            "/api/admin/accounts/u-1/transactions", headers=_auth(admin_token),
        )
        assert [t["amount"] for t in transactions.json()["data"]["transactions"]] == [50]

    def test_rebuild_leaderboard(self, client, db_engine, admin_token):
        ledger_store.ensure_account(db_engine, "u-1")
        resp = client.post("/api/admin/leaderboard/rebuild", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["data"]["entries"] == 1

    def test_degraded_log(self, client, admin_token):
        get_degraded_log().record("leaderboard", "u-1", "quest_completion", "q-1", "boom")
        resp = client.get("/api/admin/degraded?step=leaderboard", headers=_auth(admin_token))
        assert resp.status_code == 200
        entries = resp.json()["data"]["entries"]
        assert [e["account_id"] for e in entries] == ["u-1"]

    def test_degraded_rejects_unknown_step(self, client, admin_token):
        resp = client.get("/api/admin/degraded?step=bogus", headers=_auth(admin_token))
        assert resp.status_code == 400

    def test_cache_reload(self, client, admin_token):
        resp = client.post("/api/admin/cache/reload", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["data"]["rankTableVersion"] == 1
