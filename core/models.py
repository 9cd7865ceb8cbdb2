"""
Pydantic models shared across the Speculation Assist core.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Trading ideas ──────────────────────────────────────────────────────────


class RawIdeaRow(BaseModel):
    """A ``generated_ideas`` row exactly as the store returns it.

    The same schema carries either one idea per row or a bulk payload of
    several ``---``-separated ideas packed into ``analysis`` and ``tickers``.
    """

    id: int
    created_at: datetime
    theme: str = ""
    analysis: str = ""
    tickers: str = ""

    @field_validator("theme", "analysis", "tickers", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value


class TradingIdea(BaseModel):
    """A single displayable trading idea."""

    id: int
    created_at: datetime
    theme: str
    analysis: str
    tickers: str = ""


# ── Subscribers ────────────────────────────────────────────────────────────


class Subscriber(BaseModel):
    """A newsletter subscription."""

    id: int
    email: str
    created_at: datetime
    is_active: bool


# ── Per-user data ──────────────────────────────────────────────────────────


class Watchlist(BaseModel):
    """A named list of tickers owned by one user."""

    id: int
    user_id: str
    name: str
    description: Optional[str] = None
    tickers: list[str] = Field(default_factory=list)
    is_default: bool = False
    created_at: datetime
    updated_at: datetime


InteractionType = Literal["viewed", "liked", "saved", "traded"]


class IdeaInteraction(BaseModel):
    """A user's interaction with an idea (saved, liked, ...)."""

    id: int
    user_id: str
    idea_id: int
    interaction_type: InteractionType
    notes: Optional[str] = None
    created_at: datetime


class SavedIdea(BaseModel):
    """A saved interaction joined with the idea row it points at."""

    id: int
    idea_id: int
    notes: Optional[str] = None
    created_at: datetime
    generated_ideas: Optional[RawIdeaRow] = None


class ProfilePreferences(BaseModel):
    email_notifications: bool = True
    push_notifications: bool = False
    marketing_emails: bool = False
    daily_digest: bool = True


class UserProfile(BaseModel):
    """Profile row keyed by the identity provider's user id."""

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    subscription_status: Literal["free", "premium", "trial"] = "free"
    subscription_expires_at: Optional[datetime] = None
    is_newsletter_subscribed: bool = False
    preferences: ProfilePreferences = Field(default_factory=ProfilePreferences)
    created_at: datetime
    updated_at: datetime


# ── Request bodies ─────────────────────────────────────────────────────────


class AddToWatchlistRequest(BaseModel):
    ticker: str
    watchlist_name: Optional[str] = None


class SaveIdeaRequest(BaseModel):
    idea_id: int
    notes: Optional[str] = None


class PreferencesUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    marketing_emails: Optional[bool] = None
    daily_digest: Optional[bool] = None


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    preferences: Optional[PreferencesUpdate] = None


# ── Chat ───────────────────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class IdeaContext(BaseModel):
    id: int
    theme: str
    analysis: str
    tickers: str


class UserProfileContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    risk_tolerance: Optional[str] = Field(default=None, alias="riskTolerance")
    investment_goals: Optional[str] = Field(default=None, alias="investmentGoals")


class TradingContext(BaseModel):
    """Optional context the dashboard attaches to a chat request."""

    model_config = ConfigDict(populate_by_name=True)

    idea: Optional[IdeaContext] = None
    watchlist: list[str] = Field(default_factory=list)
    user_profile: Optional[UserProfileContext] = Field(default=None, alias="userProfile")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage]
    trading_context: Optional[TradingContext] = Field(default=None, alias="tradingContext")
    max_tokens: float = Field(default=500, alias="maxTokens", allow_inf_nan=False)
    temperature: float = Field(default=0.7, allow_inf_nan=False)
