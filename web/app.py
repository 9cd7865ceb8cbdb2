"""
Flask web server for Speculation Assist.

Routes
──────
GET    /api/ideas               Latest 3 trading ideas (JSON)
GET    /api/ideas/all           Every trading idea, newest first (JSON)
GET    /api/ideas/saved         The caller's saved ideas            [auth]
POST   /api/ideas/saved         Save an idea                        [auth]
DELETE /api/ideas/saved         Remove a saved idea (?idea_id=)     [auth]
POST   /api/subscribe           Newsletter sign-up
DELETE /api/subscribe           Unsubscribe (?email=)
GET    /api/watchlist           The caller's watchlists             [auth]
POST   /api/watchlist           Add a ticker                        [auth]
DELETE /api/watchlist           Remove a ticker (?ticker=)          [auth]
GET    /api/user/profile        The caller's profile                [auth]
PUT    /api/user/profile        Update the profile                  [auth]
POST   /api/chat                Ask the trading assistant           [auth]
GET    /api/chat                Chat health check

Every response is a JSON envelope: ``{"data": ..., "message": ...}`` on
success, ``{"error": ..., "details": ..., "code": ...}`` on failure.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import anthropic
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from pydantic import ValidationError

load_dotenv()

from config.settings import Settings
from core import store
from core.chat import (
    MAX_MESSAGES,
    ChatAssistant,
    ChatUnavailableError,
    build_system_prompt,
    sanitize_messages,
)
from core.ideas import expand_rows, fallback_ideas, normalize
from core.models import (
    AddToWatchlistRequest,
    ChatRequest,
    ProfileUpdateRequest,
    SaveIdeaRequest,
)
from core.research import StockResearcher
from core.resilience import (
    FixedWindowRateLimiter,
    PermanentError,
    RetryError,
    check_rate_limit,
    with_retry,
)
from core.validation import (
    is_object,
    is_valid_chat_request,
    is_valid_profile_update,
    is_valid_row_id,
    is_valid_save_idea_request,
    is_valid_subscribe_request,
    is_valid_watchlist_request,
    validate_body,
)
from web.auth import AuthError, resolve_user_id

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)

settings = Settings()
rate_limiter = FixedWindowRateLimiter(
    max_requests=settings.rate_limit_max_requests,
    window_seconds=settings.rate_limit_window_seconds,
)
assistant = ChatAssistant(settings)
researcher = StockResearcher(settings)

DEFAULT_WATCHLIST = "Default Watchlist"
PREVIEW_IDEAS = 3
PREVIEW_ROWS = 10

# Initialise the SQLite database on startup
store.init_db()


# ── Envelopes ──────────────────────────────────────────────────────────────

def api_success(data: Any = None, message: Optional[str] = None, status: int = 200):
    body: dict[str, Any] = {"data": data}
    if message:
        body["message"] = message
    response = jsonify(body)
    response.status_code = status
    return response


def api_message(message: str, status: int = 200):
    """Success envelope that carries only a message."""
    response = jsonify({"message": message})
    response.status_code = status
    return response


def api_error(
    error: str,
    status: int = 500,
    details: Any = None,
    code: Optional[str] = None,
):
    body: dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    if code:
        body["code"] = code
    logger.error("API error [%d]: %s %s", status, error, details or "")
    response = jsonify(body)
    response.status_code = status
    return response


def _retry(operation, name: str):
    """Run a store read/update with the configured backoff."""
    return with_retry(
        operation,
        settings.retry_max_attempts,
        settings.retry_initial_delay,
        name,
    )


class ProfileNotFoundError(PermanentError):
    """No profile row exists for the caller."""


# ── Error handlers ─────────────────────────────────────────────────────────

@app.errorhandler(store.StoreError)
def handle_store_error(exc: store.StoreError):
    return api_error("Database error occurred", 500, str(exc), "DATABASE_ERROR")


@app.errorhandler(RetryError)
def handle_retry_error(exc: RetryError):
    return api_error("Database error occurred", 500, str(exc), "DATABASE_ERROR")


# ── Auth ───────────────────────────────────────────────────────────────────

def require_user(view):
    """Resolve the caller from the bearer token into ``g.user_id``."""

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        try:
            g.user_id = resolve_user_id(
                request.headers.get("Authorization"),
                settings.auth_jwt_secret,
                settings.auth_jwt_audience,
            )
        except AuthError as exc:
            return api_error(str(exc), 401, code="UNAUTHENTICATED")
        return view(*args, **kwargs)

    return wrapper


# ── Ideas ──────────────────────────────────────────────────────────────────

def _dump_ideas(ideas) -> list[dict]:
    return [idea.model_dump(mode="json") for idea in ideas]


@app.route("/api/ideas")
def list_ideas():
    """Return the newest 3 ideas for the landing-page preview."""
    try:
        rows = _retry(lambda: store.fetch_idea_rows(limit=PREVIEW_ROWS), "Fetch trading ideas")
    except RetryError:
        logger.exception("Idea fetch failed after retries, using fallback ideas")
        rows = []

    ideas = expand_rows(rows)[:PREVIEW_IDEAS]
    if not ideas:
        logger.info("No usable ideas in %d rows, returning fallback ideas", len(rows))
        ideas = fallback_ideas()[:PREVIEW_IDEAS]
        return api_success(_dump_ideas(ideas), "Returned mock trading ideas")
    return api_success(_dump_ideas(ideas), f"Retrieved {len(ideas)} trading ideas")


@app.route("/api/ideas/all")
def list_all_ideas():
    """Return every idea, bulk rows expanded, newest first."""
    try:
        rows = _retry(store.fetch_idea_rows, "Fetch all trading ideas")
    except RetryError:
        logger.exception("Idea fetch failed after retries, using fallback ideas")
        rows = []

    return api_success(_dump_ideas(normalize(rows)))


@app.route("/api/ideas/saved")
@require_user
def list_saved_ideas():
    saved = _retry(lambda: store.list_saved_ideas(g.user_id), "Fetch saved ideas")
    return api_success([s.model_dump(mode="json") for s in saved])


@app.route("/api/ideas/saved", methods=["POST"])
@require_user
def save_idea():
    result = validate_body(
        request.get_data(),
        is_valid_save_idea_request,
        "Invalid save request. Please provide a positive idea_id.",
    )
    if not result.success:
        return api_error(result.error, result.status, result.details, "INVALID_REQUEST")

    body = SaveIdeaRequest.model_validate(result.data)
    existing = _retry(
        lambda: store.get_interaction(g.user_id, body.idea_id, "saved"),
        "Check saved idea",
    )
    if existing is not None:
        return api_message("Idea is already saved")

    interaction = store.create_interaction(g.user_id, body.idea_id, "saved", body.notes)
    return api_success(interaction.model_dump(mode="json"), "Idea saved successfully!", 201)


@app.route("/api/ideas/saved", methods=["DELETE"])
@require_user
def remove_saved_idea():
    raw_id = request.args.get("idea_id", "").strip()
    if not raw_id:
        return api_error("Idea ID is required", 400, code="IDEA_ID_REQUIRED")
    try:
        idea_id = int(raw_id)
    except ValueError:
        idea_id = None
    if idea_id is None or not is_valid_row_id(idea_id):
        return api_error(
            "Idea ID must be a positive integer", 400, {"idea_id": raw_id}, "INVALID_IDEA_ID"
        )

    _retry(lambda: store.delete_interaction(g.user_id, idea_id, "saved"), "Remove saved idea")
    return api_message("Idea removed from saved list!")


# ── Subscribers ────────────────────────────────────────────────────────────

@app.route("/api/subscribe", methods=["POST"])
def subscribe():
    result = validate_body(request.get_data(), is_object)
    if not result.success:
        return api_error(result.error, result.status, result.details, "INVALID_REQUEST")

    if not result.data.get("email"):
        return api_error("Email is required", 400, code="EMAIL_REQUIRED")
    if not is_valid_subscribe_request(result.data):
        return api_error("Invalid email format", 400, code="INVALID_EMAIL")

    email = result.data["email"].strip().lower()
    existing = _retry(lambda: store.get_subscriber_by_email(email), "Check subscriber")

    if existing is not None and existing.is_active:
        return api_error("Email is already subscribed", 409, code="ALREADY_SUBSCRIBED")

    if existing is not None:
        reactivated = _retry(
            lambda: store.set_subscriber_active(existing.id, True), "Reactivate subscriber"
        )
        return api_success(
            reactivated.model_dump(mode="json"), "Successfully reactivated your subscription!"
        )

    try:
        subscriber = store.create_subscriber(email)
    except store.ConflictError:
        return api_error("Email is already subscribed", 409, code="ALREADY_SUBSCRIBED")
    return api_success(
        subscriber.model_dump(mode="json"),
        "Successfully subscribed! Welcome to SpeculationAssist.",
        201,
    )


@app.route("/api/subscribe", methods=["DELETE"])
def unsubscribe():
    email = request.args.get("email", "")
    if not email:
        return api_error("Email parameter is required", 400, code="EMAIL_REQUIRED")
    if not is_valid_subscribe_request({"email": email}):
        return api_error("Invalid email format", 400, code="INVALID_EMAIL")

    normalised = email.strip().lower()
    _retry(lambda: store.deactivate_subscriber(normalised), "Unsubscribe")
    return api_message("Successfully unsubscribed")


# ── Watchlists ─────────────────────────────────────────────────────────────

@app.route("/api/watchlist")
@require_user
def list_watchlists():
    watchlists = _retry(lambda: store.list_watchlists(g.user_id), "Fetch watchlists")
    return api_success([w.model_dump(mode="json") for w in watchlists])


@app.route("/api/watchlist", methods=["POST"])
@require_user
def add_to_watchlist():
    result = validate_body(
        request.get_data(),
        is_valid_watchlist_request,
        "Invalid watchlist request. Tickers are 1-5 letters.",
    )
    if not result.success:
        return api_error(result.error, result.status, result.details, "INVALID_REQUEST")

    body = AddToWatchlistRequest.model_validate(result.data)
    ticker = body.ticker.strip().upper()
    name = body.watchlist_name.strip() if body.watchlist_name else DEFAULT_WATCHLIST

    watchlist = _retry(lambda: store.get_watchlist(g.user_id, name), "Fetch watchlist")

    if watchlist is None:
        is_default = name == DEFAULT_WATCHLIST
        created = store.create_watchlist(
            g.user_id,
            name,
            [ticker],
            description="My default watchlist" if is_default else None,
            is_default=is_default,
        )
        return api_success(created.model_dump(mode="json"), f"Created {name} and added {ticker}!", 201)

    if ticker in watchlist.tickers:
        return api_message(f"{ticker} is already in your {name}")

    updated = _retry(
        lambda: store.update_watchlist_tickers(watchlist.id, [*watchlist.tickers, ticker]),
        "Update watchlist",
    )
    return api_success(updated.model_dump(mode="json"), f"{ticker} added to {name}!")


@app.route("/api/watchlist", methods=["DELETE"])
@require_user
def remove_from_watchlist():
    ticker = request.args.get("ticker", "").strip().upper()
    name = request.args.get("watchlist_name") or DEFAULT_WATCHLIST
    if not ticker:
        return api_error("Ticker is required", 400, code="TICKER_REQUIRED")

    watchlist = _retry(lambda: store.get_watchlist(g.user_id, name), "Fetch watchlist")
    if watchlist is None:
        return api_error("Watchlist not found", 404, {"watchlist_name": name}, "WATCHLIST_NOT_FOUND")

    remaining = [t for t in watchlist.tickers if t != ticker]
    updated = _retry(
        lambda: store.update_watchlist_tickers(watchlist.id, remaining), "Update watchlist"
    )
    return api_success(updated.model_dump(mode="json"), f"{ticker} removed from {name}!")


# ── Profile ────────────────────────────────────────────────────────────────

@app.route("/api/user/profile")
@require_user
def get_profile():
    profile = _retry(lambda: store.get_profile(g.user_id), "Fetch user profile")
    if profile is None:
        return api_error("Profile not found", 404, code="PROFILE_NOT_FOUND")
    return api_success(profile.model_dump(mode="json"), "Profile retrieved successfully")


@app.route("/api/user/profile", methods=["PUT"])
@require_user
def update_profile():
    result = validate_body(
        request.get_data(),
        is_valid_profile_update,
        "Invalid profile update data. Please check the format of your request.",
    )
    if not result.success:
        return api_error(result.error, result.status, result.details, "INVALID_REQUEST")

    updates = ProfileUpdateRequest.model_validate(result.data).model_dump(exclude_unset=True)

    def apply_update():
        profile = store.update_profile(g.user_id, updates)
        if profile is None:
            raise ProfileNotFoundError(f"No profile found for user {g.user_id}")
        return profile

    try:
        profile = _retry(apply_update, "Update user profile")
    except ProfileNotFoundError as exc:
        return api_error("Profile not found", 404, str(exc), "PROFILE_NOT_FOUND")

    return api_success(profile.model_dump(mode="json"), "Profile updated successfully")


# ── Chat ───────────────────────────────────────────────────────────────────

def _upstream_error(exc: BaseException):
    """Map an Anthropic failure to the envelope the dashboard expects."""
    if isinstance(exc, anthropic.AuthenticationError):
        return api_error("AI service authentication failed.", 500, code="AI_AUTH_ERROR")
    if isinstance(exc, anthropic.RateLimitError):
        return api_error(
            "AI service is currently busy. Please try again in a moment.",
            429,
            code="AI_RATE_LIMIT",
        )
    if isinstance(exc, anthropic.BadRequestError):
        return api_error(
            "Invalid request to AI service. Please check your message format.",
            400,
            code="AI_BAD_REQUEST",
        )
    return api_error(
        "Failed to generate AI response. Please try again.", 500, str(exc), "CHAT_ERROR"
    )


@app.route("/api/chat", methods=["POST"])
@require_user
def chat():
    limit = check_rate_limit(g.user_id, rate_limiter)
    if not limit.allowed:
        wait = limit.retry_after()
        response = api_error(
            f"Rate limit exceeded. Please try again in {wait} seconds.",
            429,
            {"resetTime": int(limit.reset_at * 1000), "waitTime": wait},
            "RATE_LIMIT_EXCEEDED",
        )
        response.headers["Retry-After"] = str(wait)
        return response

    result = validate_body(
        request.get_data(),
        is_valid_chat_request,
        "Invalid chat request. Please provide a valid messages array.",
    )
    if not result.success:
        return api_error(result.error, result.status, result.details, "INVALID_REQUEST")

    try:
        chat_request = ChatRequest.model_validate(result.data)
    except ValidationError as exc:
        return api_error(
            "Invalid chat request. Please provide a valid messages array.",
            400,
            exc.errors(include_url=False),
            "INVALID_REQUEST",
        )

    messages = sanitize_messages(chat_request.messages)
    if len(messages) > MAX_MESSAGES:
        return api_error(
            "Too many messages in conversation. Please start a new chat.",
            400,
            code="MESSAGE_LIMIT_EXCEEDED",
        )

    research_data = researcher.research_for_message(messages[-1].content)
    system_prompt = build_system_prompt(chat_request.trading_context, research_data)

    try:
        reply = assistant.reply(
            messages,
            system_prompt,
            g.user_id,
            max_tokens=chat_request.max_tokens,
            temperature=chat_request.temperature,
        )
    except ChatUnavailableError:
        logger.exception("Chat backend unavailable")
        return api_error(
            "AI service is currently unavailable. Please try again later.",
            503,
            code="AI_UNAVAILABLE",
        )
    except RetryError as exc:
        return _upstream_error(exc.last_error)
    except Exception as exc:
        logger.exception("Chat request failed for user=%s", g.user_id)
        return _upstream_error(exc)

    if not reply.content:
        return api_error(
            "AI service returned an empty response. Please try again.",
            500,
            code="EMPTY_RESPONSE",
        )

    return api_success(reply.to_dict(), "Chat response generated successfully")


@app.route("/api/chat")
def chat_health():
    if not settings.anthropic_api_key:
        return api_error("Anthropic API key is not configured", 500, code="MISSING_API_KEY")

    return api_success(
        {
            "status": "healthy",
            "model": settings.chat_model,
            "rateLimit": {
                "maxRequests": rate_limiter.max_requests,
                "windowMs": int(rate_limiter.window_seconds * 1000),
            },
            "research": settings.research_configured,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        "Chat API is operational",
    )


# ── Entry point ────────────────────────────────────────────────────────────

if __name__ == "__main__":
    settings.validate()
    app.run(debug=settings.debug, host="0.0.0.0", port=settings.port)
