"""Application settings: all configuration loaded from environment variables.

Usage:
    from config.settings import Settings
    settings = Settings()
    settings.validate()   # raises ValueError if AUTH_JWT_SECRET is missing
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Centralised application configuration.

    All values are read from environment variables at instantiation time
    so that tests can override them by patching ``os.environ``.
    """

    # ── API Keys ────────────────────────────────────────────────────────────
    anthropic_api_key: str = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY", "")
    )

    # ── Auth (tokens issued by the managed identity provider) ───────────────
    auth_jwt_secret: str = field(
        default_factory=lambda: os.environ.get("AUTH_JWT_SECRET", "")
    )
    auth_jwt_audience: str = field(
        default_factory=lambda: os.environ.get("AUTH_JWT_AUDIENCE", "authenticated")
    )

    # ── Flask ───────────────────────────────────────────────────────────────
    debug: bool = field(
        default_factory=lambda: os.environ.get("FLASK_DEBUG", "0") == "1"
    )
    port: int = field(
        default_factory=lambda: int(os.environ.get("PORT", "5001"))
    )

    # ── Chat ────────────────────────────────────────────────────────────────
    chat_model: str = field(
        default_factory=lambda: os.environ.get("CHAT_MODEL", "claude-haiku-4-5")
    )
    #: Model used for the optional web-search research pass.
    research_model: str = "claude-haiku-4-5"
    research_enabled: bool = field(
        default_factory=lambda: _env_bool("RESEARCH_ENABLED", "1")
    )

    # ── Rate limiting (chat) ────────────────────────────────────────────────
    rate_limit_max_requests: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", "10"))
    )
    rate_limit_window_seconds: float = field(
        default_factory=lambda: float(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))
    )

    # ── Retries (store + LLM calls) ─────────────────────────────────────────
    retry_max_attempts: int = field(
        default_factory=lambda: int(os.environ.get("RETRY_MAX_ATTEMPTS", "3"))
    )
    retry_initial_delay: float = field(
        default_factory=lambda: float(os.environ.get("RETRY_INITIAL_DELAY", "1.0"))
    )

    @property
    def research_configured(self) -> bool:
        """True when web research can actually run."""
        return self.research_enabled and bool(self.anthropic_api_key)

    def validate(self) -> None:
        """Raise ``ValueError`` if any required setting is missing."""
        if not self.auth_jwt_secret:
            raise ValueError(
                "AUTH_JWT_SECRET environment variable is not set. "
                "Copy .env.example to .env and add the identity provider's JWT secret."
            )
