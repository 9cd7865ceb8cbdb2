"""
Tests for web/app.py: the JSON API end to end through the Flask test client.

The LLM collaborators are replaced with mocks; the store runs against a
temporary SQLite file.

Run with: pytest tests/test_app.py
"""

import time
from unittest.mock import MagicMock

import jwt
import pytest

import web.app as app_module
from core import store
from core.chat import ChatReply, ChatUnavailableError
from core.resilience import FixedWindowRateLimiter, RetryError

SECRET = "test-secret-with-enough-length-for-hs256"


def auth_headers(user_id="user-1"):
    token = jwt.encode(
        {"sub": user_id, "aud": "authenticated", "exp": int(time.time()) + 3600},
        SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test_app.db"))
    store.init_db()

    monkeypatch.setattr(app_module.settings, "auth_jwt_secret", SECRET)
    monkeypatch.setattr(app_module.settings, "anthropic_api_key", "test-key")
    monkeypatch.setattr(app_module.settings, "retry_initial_delay", 0)
    monkeypatch.setattr(
        app_module, "rate_limiter", FixedWindowRateLimiter(max_requests=2, window_seconds=60)
    )

    assistant = MagicMock()
    assistant.reply.return_value = ChatReply(content="Consider diversifying.", model="claude-haiku-4-5")
    researcher = MagicMock()
    researcher.research_for_message.return_value = ""
    monkeypatch.setattr(app_module, "assistant", assistant)
    monkeypatch.setattr(app_module, "researcher", researcher)

    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()


# ── Ideas ──────────────────────────────────────────────────────────────────


class TestIdeas:
    def test_empty_store_returns_fallback_preview(self, client):
        resp = client.get("/api/ideas")

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["message"] == "Returned mock trading ideas"
        assert len(body["data"]) == 3

    def test_store_failure_falls_back(self, client, monkeypatch):
        def boom(*args, **kwargs):
            raise store.StoreError("Database error: locked")

        monkeypatch.setattr(store, "fetch_idea_rows", boom)

        resp = client.get("/api/ideas/all")

        assert resp.status_code == 200
        assert len(resp.get_json()["data"]) == 6

    def test_bulk_row_expanded(self, client):
        row_id = store.insert_idea_row(
            "Daily batch",
            "IDEA 1 - Tech Momentum\nStrong breakout.\n---\nIDEA 2 - EV Weakness\nMixed signals.",
            "AAPL, NVDA\n---\n,TSLA, RIVN",
        )

        data = client.get("/api/ideas/all").get_json()["data"]

        assert [(i["id"], i["theme"], i["tickers"]) for i in data] == [
            (row_id, "Tech Momentum", "AAPL, NVDA"),
            (row_id + 1, "EV Weakness", "TSLA, RIVN"),
        ]

    def test_preview_caps_at_three(self, client):
        for n in range(5):
            store.insert_idea_row(f"Theme {n}", f"Analysis {n}", "AAPL")

        body = client.get("/api/ideas").get_json()

        assert body["message"] == "Retrieved 3 trading ideas"
        assert len(body["data"]) == 3

    def test_unparseable_rows_report_fallback(self, client):
        store.insert_idea_row("Broken", "IDEA 1 mentioned but --- no theme lines here", "")

        body = client.get("/api/ideas").get_json()

        assert body["message"] == "Returned mock trading ideas"
        assert body["data"][0]["theme"] == "Tech Sector Momentum"


class TestSavedIdeas:
    def test_requires_auth(self, client):
        resp = client.get("/api/ideas/saved")

        assert resp.status_code == 401
        assert resp.get_json()["code"] == "UNAUTHENTICATED"

    def test_save_list_remove(self, client):
        headers = auth_headers()

        resp = client.post("/api/ideas/saved", json={"idea_id": 5, "notes": "watch"}, headers=headers)
        assert resp.status_code == 201

        again = client.post("/api/ideas/saved", json={"idea_id": 5}, headers=headers)
        assert again.status_code == 200
        assert again.get_json()["message"] == "Idea is already saved"

        saved = client.get("/api/ideas/saved", headers=headers).get_json()["data"]
        assert [s["idea_id"] for s in saved] == [5]

        removed = client.delete("/api/ideas/saved?idea_id=5", headers=headers)
        assert removed.status_code == 200
        assert client.get("/api/ideas/saved", headers=headers).get_json()["data"] == []

    def test_invalid_idea_id(self, client):
        resp = client.post("/api/ideas/saved", json={"idea_id": -1}, headers=auth_headers())

        assert resp.status_code == 400
        assert resp.get_json()["details"] == {"receivedBody": {"idea_id": -1}}

    def test_delete_needs_integer_id(self, client):
        resp = client.delete("/api/ideas/saved?idea_id=abc", headers=auth_headers())

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_IDEA_ID"

    def test_delete_id_beyond_sqlite_integer(self, client):
        resp = client.delete(f"/api/ideas/saved?idea_id={2**64}", headers=auth_headers())

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_IDEA_ID"

    def test_save_id_beyond_sqlite_integer(self, client):
        resp = client.post("/api/ideas/saved", json={"idea_id": 2**64}, headers=auth_headers())

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_REQUEST"


# ── Subscribers ────────────────────────────────────────────────────────────


class TestSubscribe:
    def test_subscribe_then_conflict(self, client):
        resp = client.post("/api/subscribe", json={"email": "Trader@Example.com"})

        assert resp.status_code == 201
        assert resp.get_json()["data"]["email"] == "trader@example.com"

        dup = client.post("/api/subscribe", json={"email": "trader@example.com"})
        assert dup.status_code == 409
        assert dup.get_json()["code"] == "ALREADY_SUBSCRIBED"

    def test_unsubscribe_then_reactivate(self, client):
        client.post("/api/subscribe", json={"email": "a@example.com"})

        assert client.delete("/api/subscribe?email=a@example.com").status_code == 200

        resp = client.post("/api/subscribe", json={"email": "a@example.com"})
        assert resp.status_code == 200
        assert resp.get_json()["data"]["is_active"] is True

    def test_email_required(self, client):
        resp = client.post("/api/subscribe", json={})

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "EMAIL_REQUIRED"

    def test_invalid_email(self, client):
        resp = client.post("/api/subscribe", json={"email": "not-an-email"})

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_EMAIL"

    def test_invalid_json(self, client):
        resp = client.post("/api/subscribe", data="{oops", content_type="application/json")

        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid JSON in request body"

    def test_concurrent_signup_is_a_conflict(self, client, monkeypatch):
        store.create_subscriber("race@example.com")
        monkeypatch.setattr(store, "get_subscriber_by_email", lambda email: None)

        resp = client.post("/api/subscribe", json={"email": "race@example.com"})

        assert resp.status_code == 409
        assert resp.get_json()["code"] == "ALREADY_SUBSCRIBED"


# ── Watchlists ─────────────────────────────────────────────────────────────


class TestWatchlist:
    def test_add_creates_default(self, client):
        resp = client.post("/api/watchlist", json={"ticker": "aapl"}, headers=auth_headers())

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["message"] == "Created Default Watchlist and added AAPL!"
        assert body["data"]["tickers"] == ["AAPL"]
        assert body["data"]["is_default"] is True

    def test_duplicate_and_append(self, client):
        headers = auth_headers()
        client.post("/api/watchlist", json={"ticker": "AAPL"}, headers=headers)

        dup = client.post("/api/watchlist", json={"ticker": "AAPL"}, headers=headers)
        assert dup.status_code == 200
        assert dup.get_json()["message"] == "AAPL is already in your Default Watchlist"

        added = client.post("/api/watchlist", json={"ticker": "MSFT"}, headers=headers)
        assert added.get_json()["data"]["tickers"] == ["AAPL", "MSFT"]

    def test_remove(self, client):
        headers = auth_headers()
        client.post("/api/watchlist", json={"ticker": "AAPL"}, headers=headers)
        client.post("/api/watchlist", json={"ticker": "MSFT"}, headers=headers)

        resp = client.delete("/api/watchlist?ticker=aapl", headers=headers)

        assert resp.status_code == 200
        assert resp.get_json()["data"]["tickers"] == ["MSFT"]

    def test_remove_errors(self, client):
        headers = auth_headers()

        assert client.delete("/api/watchlist", headers=headers).get_json()["code"] == "TICKER_REQUIRED"

        missing = client.delete("/api/watchlist?ticker=AAPL&watchlist_name=Nope", headers=headers)
        assert missing.status_code == 404
        assert missing.get_json()["code"] == "WATCHLIST_NOT_FOUND"

    def test_invalid_ticker(self, client):
        resp = client.post("/api/watchlist", json={"ticker": "TOOLONG"}, headers=auth_headers())

        assert resp.status_code == 400

    def test_lists_are_per_user(self, client):
        client.post("/api/watchlist", json={"ticker": "AAPL"}, headers=auth_headers("user-1"))

        data = client.get("/api/watchlist", headers=auth_headers("user-2")).get_json()["data"]

        assert data == []


# ── Profile ────────────────────────────────────────────────────────────────


class TestProfile:
    def test_missing_profile(self, client):
        resp = client.get("/api/user/profile", headers=auth_headers())

        assert resp.status_code == 404
        assert resp.get_json()["code"] == "PROFILE_NOT_FOUND"

    def test_update(self, client):
        store.create_profile("user-1", "u@example.com")

        resp = client.put(
            "/api/user/profile",
            json={"display_name": "Trader", "preferences": {"daily_digest": False}},
            headers=auth_headers(),
        )

        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["display_name"] == "Trader"
        assert data["preferences"]["daily_digest"] is False

    def test_update_leaves_unsent_fields(self, client):
        store.create_profile("user-1", "u@example.com", first_name="Ada")

        resp = client.put("/api/user/profile", json={"display_name": "Trader"}, headers=auth_headers())

        data = resp.get_json()["data"]
        assert data["first_name"] == "Ada"
        assert data["display_name"] == "Trader"
        assert data["preferences"]["daily_digest"] is True

    def test_update_missing_profile(self, client):
        resp = client.put("/api/user/profile", json={"first_name": "Ada"}, headers=auth_headers())

        assert resp.status_code == 404

    def test_update_rejects_unknown_fields(self, client):
        resp = client.put("/api/user/profile", json={"email": "x@y.z"}, headers=auth_headers())

        assert resp.status_code == 400


# ── Chat ───────────────────────────────────────────────────────────────────

CHAT_BODY = {"messages": [{"role": "user", "content": "What about NVDA?"}]}


class TestChat:
    def test_requires_auth(self, client):
        assert client.post("/api/chat", json=CHAT_BODY).status_code == 401

    def test_success(self, client):
        resp = client.post("/api/chat", json=CHAT_BODY, headers=auth_headers())

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["message"] == "Chat response generated successfully"
        assert body["data"]["message"]["content"] == "Consider diversifying."

    def test_research_and_context_reach_prompt(self, client):
        app_module.researcher.research_for_message.return_value = "NVDA digest"
        body = {
            **CHAT_BODY,
            "tradingContext": {"watchlist": ["AMD"]},
            "maxTokens": 200,
        }

        client.post("/api/chat", json=body, headers=auth_headers())

        args, kwargs = app_module.assistant.reply.call_args
        assert "NVDA digest" in args[1]
        assert "User's Current Watchlist: AMD" in args[1]
        assert args[2] == "user-1"
        assert kwargs["max_tokens"] == 200

    def test_rate_limited(self, client):
        headers = auth_headers()
        for _ in range(2):
            client.post("/api/chat", json=CHAT_BODY, headers=headers)

        resp = client.post("/api/chat", json=CHAT_BODY, headers=headers)

        assert resp.status_code == 429
        body = resp.get_json()
        assert body["code"] == "RATE_LIMIT_EXCEEDED"
        assert set(body["details"]) == {"resetTime", "waitTime"}
        assert "Retry-After" in resp.headers

    def test_invalid_body(self, client):
        resp = client.post("/api/chat", json={"messages": []}, headers=auth_headers())

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_REQUEST"

    def test_non_finite_max_tokens_rejected(self, client):
        raw = '{"messages": [{"role": "user", "content": "Hi"}], "maxTokens": NaN}'

        resp = client.post(
            "/api/chat", data=raw, content_type="application/json", headers=auth_headers()
        )

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_REQUEST"
        app_module.assistant.reply.assert_not_called()

    def test_too_many_messages(self, client):
        body = {"messages": [{"role": "user", "content": f"m{i}"} for i in range(21)]}

        resp = client.post("/api/chat", json=body, headers=auth_headers())

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "MESSAGE_LIMIT_EXCEEDED"
        app_module.assistant.reply.assert_not_called()

    def test_backend_unavailable(self, client):
        app_module.assistant.reply.side_effect = ChatUnavailableError("no key")

        resp = client.post("/api/chat", json=CHAT_BODY, headers=auth_headers())

        assert resp.status_code == 503
        assert resp.get_json()["code"] == "AI_UNAVAILABLE"

    def test_exhausted_retries(self, client):
        app_module.assistant.reply.side_effect = RetryError(
            "Claude API call", 3, RuntimeError("overloaded")
        )

        resp = client.post("/api/chat", json=CHAT_BODY, headers=auth_headers())

        assert resp.status_code == 500
        assert resp.get_json()["code"] == "CHAT_ERROR"

    def test_empty_reply(self, client):
        app_module.assistant.reply.return_value = ChatReply(content="", model="m")

        resp = client.post("/api/chat", json=CHAT_BODY, headers=auth_headers())

        assert resp.status_code == 500
        assert resp.get_json()["code"] == "EMPTY_RESPONSE"


class TestChatHealth:
    def test_healthy(self, client):
        resp = client.get("/api/chat")

        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["status"] == "healthy"
        assert data["rateLimit"] == {"maxRequests": 2, "windowMs": 60000}

    def test_missing_key(self, client, monkeypatch):
        monkeypatch.setattr(app_module.settings, "anthropic_api_key", "")

        resp = client.get("/api/chat")

        assert resp.status_code == 500
        assert resp.get_json()["code"] == "MISSING_API_KEY"
