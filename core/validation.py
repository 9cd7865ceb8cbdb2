"""Request-body validation.

``validate_body`` parses a raw JSON payload and runs a caller-supplied
predicate over it. It never raises: every problem comes back as a
``ValidationFailure`` holding the error envelope the handler should send.

The ``is_valid_*`` predicates describe the bodies accepted by each route.
"""

from __future__ import annotations

import json
import math
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)

#: Upper bound on how much of a rejected payload is echoed back.
MAX_ECHO_CHARS = 1000

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TICKER_PATTERN = re.compile(r"^[A-Za-z]{1,5}$")
#: Largest id SQLite can store in an INTEGER column.
MAX_ROW_ID = 2**63 - 1

CHAT_ROLES = frozenset({"user", "assistant", "system"})
PROFILE_STRING_FIELDS = ("first_name", "last_name", "display_name", "avatar_url")
PROFILE_FIELDS = frozenset(PROFILE_STRING_FIELDS + ("preferences",))
PREFERENCE_FIELDS = frozenset(
    {"email_notifications", "push_notifications", "marketing_emails", "daily_digest"}
)


# ── Results ────────────────────────────────────────────────────────────────────


@dataclass
class ValidationSuccess:
    data: Any
    success: bool = field(default=True, init=False)


@dataclass
class ValidationFailure:
    """A rejected body plus the envelope describing why."""

    error: str
    details: Any = None
    status: int = 400
    success: bool = field(default=False, init=False)

    def envelope(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body


ValidationResult = Union[ValidationSuccess, ValidationFailure]


def _bounded_echo(payload: Any) -> Any:
    try:
        serialised = json.dumps(payload)
    except (TypeError, ValueError):
        serialised = repr(payload)
        return serialised[:MAX_ECHO_CHARS]
    if len(serialised) <= MAX_ECHO_CHARS:
        return payload
    return serialised[:MAX_ECHO_CHARS] + "…"


def validate_body(
    raw: Union[str, bytes, None],
    validator: Callable[[Any], bool],
    error_message: str = "Invalid request body",
) -> ValidationResult:
    """Parse *raw* as JSON and check it with *validator*.

    Args:
        raw: The request body as received.
        validator: Predicate returning True for acceptable payloads.
        error_message: Message used when the predicate rejects the payload.

    Returns:
        ``ValidationSuccess`` with the parsed payload, or
        ``ValidationFailure`` carrying a 400 envelope.
    """
    try:
        body = json.loads(raw or "")
    except (TypeError, ValueError) as exc:
        return ValidationFailure(error="Invalid JSON in request body", details=str(exc))

    try:
        accepted = validator(body)
    except Exception as exc:
        logger.warning("Validator %r raised: %s", validator, exc)
        accepted = False

    if not accepted:
        return ValidationFailure(
            error=error_message, details={"receivedBody": _bounded_echo(body)}
        )

    return ValidationSuccess(data=body)


# ── Primitive checks ───────────────────────────────────────────────────────────


def is_string(value: Any) -> bool:
    return isinstance(value, str)


def is_number(value: Any) -> bool:
    """True for JSON numbers; rejects bools and the NaN/Infinity literals."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def is_boolean(value: Any) -> bool:
    return isinstance(value, bool)


def is_object(value: Any) -> bool:
    return isinstance(value, dict)


def is_array(value: Any) -> bool:
    return isinstance(value, list)


def is_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_PATTERN.match(value))


def is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_valid_ticker(value: Any) -> bool:
    return is_non_empty_string(value) and bool(TICKER_PATTERN.match(value.strip()))


def is_valid_row_id(value: Any) -> bool:
    """A positive integral number that fits a SQLite INTEGER."""
    return is_number(value) and int(value) == value and 0 < value <= MAX_ROW_ID


# ── Route bodies ───────────────────────────────────────────────────────────────


def is_valid_subscribe_request(body: Any) -> bool:
    return is_object(body) and is_email(body.get("email"))


def is_valid_watchlist_request(body: Any) -> bool:
    if not is_object(body) or not is_valid_ticker(body.get("ticker")):
        return False
    name = body.get("watchlist_name")
    return name is None or is_non_empty_string(name)


def is_valid_save_idea_request(body: Any) -> bool:
    if not is_object(body):
        return False
    idea_id = body.get("idea_id")
    if not is_valid_row_id(idea_id):
        return False
    notes = body.get("notes")
    return notes is None or is_string(notes)


def is_valid_profile_update(body: Any) -> bool:
    if not is_object(body) or not set(body) <= PROFILE_FIELDS:
        return False

    for name in PROFILE_STRING_FIELDS:
        if name in body and not is_string(body[name]):
            return False

    if "preferences" in body:
        preferences = body["preferences"]
        if not is_object(preferences) or not set(preferences) <= PREFERENCE_FIELDS:
            return False
        if not all(is_boolean(v) for v in preferences.values()):
            return False

    return True


def _is_valid_idea_context(idea: Any) -> bool:
    return (
        is_object(idea)
        and is_number(idea.get("id"))
        and is_non_empty_string(idea.get("theme"))
        and is_non_empty_string(idea.get("analysis"))
        and is_non_empty_string(idea.get("tickers"))
    )


def is_valid_chat_request(body: Any) -> bool:
    if not is_object(body):
        return False

    messages = body.get("messages")
    if not is_array(messages) or not messages:
        return False
    for message in messages:
        if not is_object(message):
            return False
        if not is_non_empty_string(message.get("content")):
            return False
        if message.get("role") not in CHAT_ROLES:
            return False

    for key in ("maxTokens", "temperature"):
        if key in body and not is_number(body[key]):
            return False

    if "tradingContext" in body:
        context = body["tradingContext"]
        if not is_object(context):
            return False
        if "idea" in context and not _is_valid_idea_context(context["idea"]):
            return False
        if "watchlist" in context:
            watchlist = context["watchlist"]
            if not is_array(watchlist) or not all(is_string(t) for t in watchlist):
                return False
        if "userProfile" in context:
            profile = context["userProfile"]
            if not is_object(profile):
                return False
            for key in ("riskTolerance", "investmentGoals"):
                if profile.get(key) is not None and not is_string(profile[key]):
                    return False

    return True
