"""
Tests for core/store.py

Uses a temporary SQLite file so the real database is never touched.

Run with: pytest tests/test_store.py
"""

from datetime import datetime, timedelta, timezone

import pytest

import core.store as store


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Point DB_PATH to a fresh temp file for each test."""
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test_store.db"))
    store.init_db()
    yield


class TestIdeaRows:
    def test_fetch_newest_first(self):
        t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
        old = store.insert_idea_row("Old", "old analysis", "AAPL", created_at=t0)
        new = store.insert_idea_row("New", "new analysis", "MSFT", created_at=t0 + timedelta(hours=1))

        rows = store.fetch_idea_rows()

        assert [r.id for r in rows] == [new, old]
        assert rows[0].created_at == t0 + timedelta(hours=1)

    def test_fetch_respects_limit(self):
        for i in range(5):
            store.insert_idea_row(f"Theme {i}", "analysis", "")

        assert len(store.fetch_idea_rows(limit=3)) == 3

    def test_null_text_columns_read_as_empty(self):
        row_id = store.insert_idea_row(None, "IDEA 1 - X\nBody\n---\n", None)

        row = store.get_idea(row_id)

        assert row.theme == ""
        assert row.tickers == ""

    def test_get_missing_idea(self):
        assert store.get_idea(9999) is None


class TestSubscribers:
    def test_create_and_lookup(self):
        created = store.create_subscriber("a@example.com")
        found = store.get_subscriber_by_email("a@example.com")

        assert found == created
        assert found.is_active is True

    def test_duplicate_email_raises_store_error(self):
        store.create_subscriber("a@example.com")

        with pytest.raises(store.StoreError, match="Database error"):
            store.create_subscriber("a@example.com")

    def test_duplicate_email_is_a_conflict(self):
        store.create_subscriber("a@example.com")

        with pytest.raises(store.ConflictError):
            store.create_subscriber("a@example.com")

    def test_deactivate_and_reactivate(self):
        sub = store.create_subscriber("a@example.com")

        assert store.deactivate_subscriber("a@example.com") is True
        assert store.get_subscriber_by_email("a@example.com").is_active is False

        assert store.set_subscriber_active(sub.id, True).is_active is True

    def test_deactivate_unknown(self):
        assert store.deactivate_subscriber("nobody@example.com") is False


class TestWatchlists:
    def test_create_get_update(self):
        wl = store.create_watchlist("user-1", "Tech", ["AAPL"])

        assert store.get_watchlist("user-1", "Tech").tickers == ["AAPL"]

        updated = store.update_watchlist_tickers(wl.id, ["AAPL", "NVDA"])
        assert updated.tickers == ["AAPL", "NVDA"]

    def test_lists_are_per_user(self):
        store.create_watchlist("user-1", "A", [])
        store.create_watchlist("user-2", "B", [])

        assert [w.name for w in store.list_watchlists("user-1")] == ["A"]
        assert store.get_watchlist("user-1", "B") is None

    def test_update_missing_watchlist(self):
        with pytest.raises(store.StoreError):
            store.update_watchlist_tickers(424242, ["AAPL"])


class TestInteractions:
    def test_save_list_delete(self):
        idea_id = store.insert_idea_row("Chips", "Demand rising", "NVDA")
        store.create_interaction("user-1", idea_id, "saved", "check earnings")

        saved = store.list_saved_ideas("user-1")

        assert len(saved) == 1
        assert saved[0].notes == "check earnings"
        assert saved[0].generated_ideas.theme == "Chips"

        assert store.delete_interaction("user-1", idea_id) is True
        assert store.list_saved_ideas("user-1") == []

    def test_saved_synthetic_id_has_no_row(self):
        store.create_interaction("user-1", 777, "saved")

        [saved] = store.list_saved_ideas("user-1")

        assert saved.generated_ideas is None

    def test_get_interaction_filters_type(self):
        store.create_interaction("user-1", 1, "liked")

        assert store.get_interaction("user-1", 1, "saved") is None
        assert store.get_interaction("user-1", 1, "liked") is not None


class TestProfiles:
    def test_create_and_get(self):
        store.create_profile("user-1", "u@example.com", display_name="Trader")

        profile = store.get_profile("user-1")

        assert profile.display_name == "Trader"
        assert profile.preferences.daily_digest is True

    def test_update_merges_preferences(self):
        store.create_profile("user-1", "u@example.com")

        profile = store.update_profile(
            "user-1", {"first_name": "Ada", "preferences": {"daily_digest": False}}
        )

        assert profile.first_name == "Ada"
        assert profile.preferences.daily_digest is False
        assert profile.preferences.email_notifications is True

    def test_update_missing_profile(self):
        assert store.update_profile("ghost", {"first_name": "x"}) is None
