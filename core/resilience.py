"""Retry and rate-limit helpers shared by every request handler.

Responsibilities:
- ``with_retry``: exponential-backoff wrapper for flaky store / LLM calls
- ``FixedWindowRateLimiter``: per-identity request throttling
- ``check_rate_limit``: convenience over a process-wide default limiter

Usage:
    from core.resilience import with_retry, check_rate_limit

    rows = with_retry(lambda: store.fetch_idea_rows(limit=10),
                      3, 1.0, "Fetch trading ideas")

    result = check_rate_limit(user_id)
    if not result.allowed:
        ...  # reply 429 with result.retry_after()

The limiter keeps its counters in process memory. It is advisory only: it is
not shared between server processes and concurrent requests from the same
identity can race on the counter.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Exceptions ─────────────────────────────────────────────────────────────────


class PermanentError(Exception):
    """A failure that retrying cannot fix.

    ``with_retry`` re-raises these immediately instead of backing off.
    """


class RetryError(Exception):
    """Raised when every attempt of a wrapped operation has failed."""

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException):
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_error}"
        )


# ── Retry ──────────────────────────────────────────────────────────────────────


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    operation_name: str = "Database operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run *operation* until it succeeds or *max_attempts* is reached.

    After failed attempt ``n`` (1-indexed) the wrapper waits
    ``initial_delay * 2 ** (n - 1)`` seconds. There is no jitter and no state
    shared between invocations. The operation must be safe to re-run.

    Args:
        operation: Zero-argument callable doing the work.
        max_attempts: Total number of attempts (at least 1).
        initial_delay: Delay in seconds after the first failure.
        operation_name: Display name used in logs and in the final error.
        sleep: Wait function; tests pass a recorder instead of ``time.sleep``.

    Returns:
        The first successful result.

    Raises:
        PermanentError: As soon as the operation raises one.
        RetryError: After the last attempt failed; ``last_error`` holds the
            most recent exception.
    """
    max_attempts = max(1, max_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            logger.info("[RETRY] %s - attempt %d/%d", operation_name, attempt, max_attempts)
            result = operation()
            if attempt > 1:
                logger.info("[RETRY] %s - succeeded on attempt %d", operation_name, attempt)
            return result
        except PermanentError:
            logger.warning("[RETRY] %s - permanent failure, not retrying", operation_name)
            raise
        except Exception as exc:
            last_error = exc
            logger.warning("[RETRY] %s - attempt %d failed: %s", operation_name, attempt, exc)

            if attempt == max_attempts:
                logger.error("[RETRY] %s - all %d attempts failed", operation_name, max_attempts)
                break

            delay = initial_delay * 2 ** (attempt - 1)
            logger.info("[RETRY] %s - waiting %.2fs before retry", operation_name, delay)
            sleep(delay)

    raise RetryError(operation_name, max_attempts, last_error) from last_error


# ── Rate limiting ──────────────────────────────────────────────────────────────


@dataclass
class RateLimitEntry:
    """Request counter for one identity in its current window."""

    count: int
    reset_at: float


@dataclass
class RateLimitResult:
    """Outcome of a single rate-limit check."""

    allowed: bool
    reset_at: Optional[float] = None

    def retry_after(self, now: Optional[float] = None) -> int:
        """Whole seconds until the window resets (0 when allowed)."""
        if self.allowed or self.reset_at is None:
            return 0
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))


class FixedWindowRateLimiter:
    """Fixed-window counter keyed by caller identity.

    The first request of a window sets ``count = 1`` and
    ``reset_at = now + window_seconds``. Later requests in the same window are
    allowed while ``count < max_requests``; once the ceiling is reached they
    are rejected until ``reset_at`` passes and the next request opens a fresh
    window.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}

    def check(self, identity: str) -> RateLimitResult:
        """Count one request for *identity* and say whether it may proceed."""
        now = self._clock()
        entry = self._entries.get(identity)

        if entry is None or now > entry.reset_at:
            self._entries[identity] = RateLimitEntry(
                count=1, reset_at=now + self.window_seconds
            )
            return RateLimitResult(allowed=True)

        if entry.count >= self.max_requests:
            logger.info("Rate limit hit for identity=%s", identity)
            return RateLimitResult(allowed=False, reset_at=entry.reset_at)

        entry.count += 1
        return RateLimitResult(allowed=True)

    def reset(self) -> None:
        """Forget every counter."""
        self._entries.clear()


#: Process-wide limiter used by ``check_rate_limit``.
default_limiter = FixedWindowRateLimiter()


def check_rate_limit(
    identity: str,
    limiter: Optional[FixedWindowRateLimiter] = None,
) -> RateLimitResult:
    """Check *identity* against *limiter* (the process default if omitted)."""
    return (limiter or default_limiter).check(identity)
