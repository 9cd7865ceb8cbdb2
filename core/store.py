"""
SQLite-backed storage for Speculation Assist.

Schema
──────
table: generated_ideas         written by the idea-generation job
  id, created_at, theme, analysis, tickers
table: subscribers             newsletter sign-ups
  id, email (unique), created_at, is_active
table: user_watchlists         tickers stored as a JSON array
  id, user_id, name, description, tickers, is_default, created_at, updated_at
table: user_idea_interactions  saved / liked / viewed / traded ideas
  id, user_id, idea_id, interaction_type, notes, created_at
table: user_profiles           one row per identity-provider user
  id, email, names, avatar_url, subscription_status, ..., preferences (JSON)

Timestamps are ISO-8601 UTC strings. Every sqlite3 failure surfaces as
``StoreError`` so handlers can retry or report it uniformly.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from core.models import (
    IdeaInteraction,
    ProfilePreferences,
    RawIdeaRow,
    SavedIdea,
    Subscriber,
    UserProfile,
    Watchlist,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "speculation.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS generated_ideas (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    theme      TEXT,
    analysis   TEXT,
    tickers    TEXT
);
CREATE TABLE IF NOT EXISTS subscribers (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    email      TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    is_active  INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS user_watchlists (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT NOT NULL,
    name        TEXT NOT NULL,
    description TEXT,
    tickers     TEXT NOT NULL DEFAULT '[]',
    is_default  INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    UNIQUE (user_id, name)
);
CREATE TABLE IF NOT EXISTS user_idea_interactions (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id          TEXT NOT NULL,
    idea_id          INTEGER NOT NULL,
    interaction_type TEXT NOT NULL,
    notes            TEXT,
    created_at       TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS user_profiles (
    id                       TEXT PRIMARY KEY,
    email                    TEXT NOT NULL,
    first_name               TEXT,
    last_name                TEXT,
    display_name             TEXT,
    avatar_url               TEXT,
    subscription_status      TEXT NOT NULL DEFAULT 'free',
    subscription_expires_at  TEXT,
    is_newsletter_subscribed INTEGER NOT NULL DEFAULT 0,
    preferences              TEXT NOT NULL,
    created_at               TEXT NOT NULL,
    updated_at               TEXT NOT NULL
);
"""


class StoreError(Exception):
    """Any failure talking to the database."""


class ConflictError(StoreError):
    """A write hit a UNIQUE constraint."""


def _db_path() -> Path:
    """Return the database file path, honouring a DB_PATH env var if set."""
    env = os.getenv("DB_PATH")
    return Path(env) if env else DEFAULT_DB_PATH


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def _connect():
    """Yield a connected sqlite3.Connection, creating the file/dir if needed."""
    path = _db_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path))
    except (OSError, sqlite3.Error) as exc:
        raise StoreError(f"Database error: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        raise ConflictError(f"Database error: {exc}") from exc
    except sqlite3.Error as exc:
        conn.rollback()
        raise StoreError(f"Database error: {exc}") from exc
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    """Create every table if it doesn't exist yet."""
    with _connect() as conn:
        conn.executescript(_SCHEMA)
    logger.info("Database initialised at %s", _db_path())


# ── Generated ideas ────────────────────────────────────────────────────────


def _idea_row(row: sqlite3.Row) -> RawIdeaRow:
    return RawIdeaRow(
        id=row["id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        theme=row["theme"],
        analysis=row["analysis"],
        tickers=row["tickers"],
    )


def fetch_idea_rows(limit: Optional[int] = None) -> list[RawIdeaRow]:
    """Return idea rows newest first, at most *limit* of them if given."""
    sql = (
        "SELECT id, created_at, theme, analysis, tickers FROM generated_ideas "
        "ORDER BY created_at DESC, id DESC"
    )
    params: tuple[Any, ...] = ()
    if limit is not None:
        sql += " LIMIT ?"
        params = (limit,)

    with _connect() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [_idea_row(row) for row in rows]


def get_idea(idea_id: int) -> Optional[RawIdeaRow]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT id, created_at, theme, analysis, tickers FROM generated_ideas WHERE id = ?",
            (idea_id,),
        ).fetchone()
    return _idea_row(row) if row else None


def insert_idea_row(
    theme: str,
    analysis: str,
    tickers: str,
    created_at: Optional[datetime] = None,
) -> int:
    """Store one generated row (single or bulk encoded) and return its ID."""
    stamp = (created_at or datetime.now(timezone.utc)).isoformat()
    with _connect() as conn:
        cursor = conn.execute(
            "INSERT INTO generated_ideas (created_at, theme, analysis, tickers) VALUES (?, ?, ?, ?)",
            (stamp, theme, analysis, tickers),
        )
        row_id = cursor.lastrowid
    logger.info("Stored generated idea row id=%d", row_id)
    return row_id


# ── Subscribers ────────────────────────────────────────────────────────────


def _subscriber(row: sqlite3.Row) -> Subscriber:
    return Subscriber(
        id=row["id"],
        email=row["email"],
        created_at=datetime.fromisoformat(row["created_at"]),
        is_active=bool(row["is_active"]),
    )


def get_subscriber_by_email(email: str) -> Optional[Subscriber]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT id, email, created_at, is_active FROM subscribers WHERE email = ?",
            (email,),
        ).fetchone()
    return _subscriber(row) if row else None


def create_subscriber(email: str) -> Subscriber:
    with _connect() as conn:
        cursor = conn.execute(
            "INSERT INTO subscribers (email, created_at, is_active) VALUES (?, ?, 1)",
            (email, _now()),
        )
        row = conn.execute(
            "SELECT id, email, created_at, is_active FROM subscribers WHERE id = ?",
            (cursor.lastrowid,),
        ).fetchone()
    logger.info("New subscriber id=%d", row["id"])
    return _subscriber(row)


def set_subscriber_active(subscriber_id: int, active: bool = True) -> Optional[Subscriber]:
    with _connect() as conn:
        conn.execute(
            "UPDATE subscribers SET is_active = ? WHERE id = ?",
            (int(active), subscriber_id),
        )
        row = conn.execute(
            "SELECT id, email, created_at, is_active FROM subscribers WHERE id = ?",
            (subscriber_id,),
        ).fetchone()
    return _subscriber(row) if row else None


def deactivate_subscriber(email: str) -> bool:
    """Mark *email* inactive. Returns True if a subscriber matched."""
    with _connect() as conn:
        cursor = conn.execute(
            "UPDATE subscribers SET is_active = 0 WHERE email = ?", (email,)
        )
    return cursor.rowcount > 0


# ── Watchlists ─────────────────────────────────────────────────────────────


def _watchlist(row: sqlite3.Row) -> Watchlist:
    return Watchlist(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        tickers=json.loads(row["tickers"] or "[]"),
        is_default=bool(row["is_default"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def list_watchlists(user_id: str) -> list[Watchlist]:
    with _connect() as conn:
        rows = conn.execute(
            "SELECT * FROM user_watchlists WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        ).fetchall()
    return [_watchlist(row) for row in rows]


def get_watchlist(user_id: str, name: str) -> Optional[Watchlist]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT * FROM user_watchlists WHERE user_id = ? AND name = ?",
            (user_id, name),
        ).fetchone()
    return _watchlist(row) if row else None


def create_watchlist(
    user_id: str,
    name: str,
    tickers: list[str],
    description: Optional[str] = None,
    is_default: bool = False,
) -> Watchlist:
    now = _now()
    with _connect() as conn:
        cursor = conn.execute(
            "INSERT INTO user_watchlists "
            "(user_id, name, description, tickers, is_default, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (user_id, name, description, json.dumps(tickers), int(is_default), now, now),
        )
        row = conn.execute(
            "SELECT * FROM user_watchlists WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
    logger.info("Created watchlist id=%d name=%r", row["id"], name)
    return _watchlist(row)


def update_watchlist_tickers(watchlist_id: int, tickers: list[str]) -> Watchlist:
    with _connect() as conn:
        conn.execute(
            "UPDATE user_watchlists SET tickers = ?, updated_at = ? WHERE id = ?",
            (json.dumps(tickers), _now(), watchlist_id),
        )
        row = conn.execute(
            "SELECT * FROM user_watchlists WHERE id = ?", (watchlist_id,)
        ).fetchone()
    if row is None:
        raise StoreError(f"Database error: watchlist {watchlist_id} vanished during update")
    return _watchlist(row)


# ── Idea interactions ──────────────────────────────────────────────────────


def _interaction(row: sqlite3.Row) -> IdeaInteraction:
    return IdeaInteraction(
        id=row["id"],
        user_id=row["user_id"],
        idea_id=row["idea_id"],
        interaction_type=row["interaction_type"],
        notes=row["notes"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def get_interaction(
    user_id: str, idea_id: int, interaction_type: str = "saved"
) -> Optional[IdeaInteraction]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT * FROM user_idea_interactions "
            "WHERE user_id = ? AND idea_id = ? AND interaction_type = ?",
            (user_id, idea_id, interaction_type),
        ).fetchone()
    return _interaction(row) if row else None


def create_interaction(
    user_id: str,
    idea_id: int,
    interaction_type: str = "saved",
    notes: Optional[str] = None,
) -> IdeaInteraction:
    with _connect() as conn:
        cursor = conn.execute(
            "INSERT INTO user_idea_interactions "
            "(user_id, idea_id, interaction_type, notes, created_at) VALUES (?, ?, ?, ?, ?)",
            (user_id, idea_id, interaction_type, notes, _now()),
        )
        row = conn.execute(
            "SELECT * FROM user_idea_interactions WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
    return _interaction(row)


def delete_interaction(user_id: str, idea_id: int, interaction_type: str = "saved") -> bool:
    with _connect() as conn:
        cursor = conn.execute(
            "DELETE FROM user_idea_interactions "
            "WHERE user_id = ? AND idea_id = ? AND interaction_type = ?",
            (user_id, idea_id, interaction_type),
        )
    return cursor.rowcount > 0


def list_saved_ideas(user_id: str) -> list[SavedIdea]:
    """Return the user's saved ideas, newest first, each with its idea row."""
    with _connect() as conn:
        rows = conn.execute(
            """
            SELECT i.id, i.idea_id, i.notes, i.created_at,
                   g.id AS g_id, g.created_at AS g_created_at,
                   g.theme AS g_theme, g.analysis AS g_analysis, g.tickers AS g_tickers
            FROM user_idea_interactions AS i
            LEFT JOIN generated_ideas AS g ON g.id = i.idea_id
            WHERE i.user_id = ? AND i.interaction_type = 'saved'
            ORDER BY i.created_at DESC, i.id DESC
            """,
            (user_id,),
        ).fetchall()

    saved: list[SavedIdea] = []
    for row in rows:
        idea = None
        if row["g_id"] is not None:
            idea = RawIdeaRow(
                id=row["g_id"],
                created_at=datetime.fromisoformat(row["g_created_at"]),
                theme=row["g_theme"],
                analysis=row["g_analysis"],
                tickers=row["g_tickers"],
            )
        saved.append(
            SavedIdea(
                id=row["id"],
                idea_id=row["idea_id"],
                notes=row["notes"],
                created_at=datetime.fromisoformat(row["created_at"]),
                generated_ideas=idea,
            )
        )
    return saved


# ── Profiles ───────────────────────────────────────────────────────────────


def _profile(row: sqlite3.Row) -> UserProfile:
    expires = row["subscription_expires_at"]
    return UserProfile(
        id=row["id"],
        email=row["email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        display_name=row["display_name"],
        avatar_url=row["avatar_url"],
        subscription_status=row["subscription_status"],
        subscription_expires_at=datetime.fromisoformat(expires) if expires else None,
        is_newsletter_subscribed=bool(row["is_newsletter_subscribed"]),
        preferences=ProfilePreferences.model_validate_json(row["preferences"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def get_profile(user_id: str) -> Optional[UserProfile]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT * FROM user_profiles WHERE id = ?", (user_id,)
        ).fetchone()
    return _profile(row) if row else None


def create_profile(user_id: str, email: str, **fields: Any) -> UserProfile:
    """Insert the profile row the identity provider creates on sign-up."""
    now = _now()
    preferences = ProfilePreferences(**fields.pop("preferences", {}))
    with _connect() as conn:
        conn.execute(
            "INSERT INTO user_profiles "
            "(id, email, first_name, last_name, display_name, avatar_url, "
            " preferences, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                user_id,
                email,
                fields.get("first_name"),
                fields.get("last_name"),
                fields.get("display_name"),
                fields.get("avatar_url"),
                preferences.model_dump_json(),
                now,
                now,
            ),
        )
        row = conn.execute(
            "SELECT * FROM user_profiles WHERE id = ?", (user_id,)
        ).fetchone()
    return _profile(row)


_PROFILE_COLUMNS = ("first_name", "last_name", "display_name", "avatar_url")


def update_profile(user_id: str, updates: dict[str, Any]) -> Optional[UserProfile]:
    """Apply *updates* to the profile; returns None if it doesn't exist.

    ``preferences`` is merged key by key into the stored preferences.
    """
    with _connect() as conn:
        row = conn.execute(
            "SELECT * FROM user_profiles WHERE id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return None

        assignments = {k: updates[k] for k in _PROFILE_COLUMNS if k in updates}
        if updates.get("preferences"):
            merged = json.loads(row["preferences"])
            merged.update(updates["preferences"])
            assignments["preferences"] = ProfilePreferences(**merged).model_dump_json()
        assignments["updated_at"] = _now()

        columns = ", ".join(f"{column} = ?" for column in assignments)
        conn.execute(
            f"UPDATE user_profiles SET {columns} WHERE id = ?",
            (*assignments.values(), user_id),
        )
        row = conn.execute(
            "SELECT * FROM user_profiles WHERE id = ?", (user_id,)
        ).fetchone()
    return _profile(row)
