"""
Trading assistant chat built on the Claude Messages API.

Flow
────
1. sanitize_messages(messages)
     → trims each message and caps it at 2000 characters
2. build_system_prompt(context, research_data)
     → assistant guidelines + optional idea / watchlist / profile / research
3. ChatAssistant.reply(...)
     → one Claude call wrapped in with_retry, returning a ChatReply
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import anthropic

from core.models import ChatMessage, TradingContext
from core.resilience import with_retry

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 2000
MAX_MESSAGES = 20
MAX_TOKENS_CAP = 1000

BASE_SYSTEM_PROMPT = """You are an AI trading assistant for SpeculationAssist with real-time research capabilities. Your role is to help users with:

1. Trading ideas and stock analysis
2. Market insights and trends
3. Watchlist management and optimization
4. Risk management and investment strategies
5. Educational content about trading and investing

Guidelines:
- Provide helpful, accurate, and actionable trading insights
- Always include appropriate risk disclaimers
- Be conversational but professional
- Focus on education and helping users make informed decisions
- Never guarantee returns or provide financial advice as a licensed advisor
- Encourage users to do their own research and consider their risk tolerance

Important: Always include a disclaimer that your responses are for educational purposes only and not personalized financial advice."""


class ChatUnavailableError(Exception):
    """The LLM backend is not configured."""


@dataclass
class ChatReply:
    """One assistant message plus token accounting."""

    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict:
        return {
            "message": {
                "role": "assistant",
                "content": self.content,
                "timestamp": self.timestamp.isoformat(),
            },
            "usage": {
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": self.completion_tokens,
                "total_tokens": self.total_tokens,
            },
            "model": self.model,
        }


# ── Prompt assembly ────────────────────────────────────────────────────────


def sanitize_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Trim whitespace and cap every message at ``MAX_MESSAGE_CHARS``."""
    return [
        m.model_copy(update={"content": m.content.strip()[:MAX_MESSAGE_CHARS]})
        for m in messages
    ]


def build_system_prompt(
    context: Optional[TradingContext] = None,
    research_data: str = "",
) -> str:
    """Compose the system prompt from the optional trading context."""
    prompt = BASE_SYSTEM_PROMPT

    if context and context.idea:
        idea = context.idea
        prompt += (
            "\n\nCurrent Trading Idea Context:\n"
            f"Theme: {idea.theme}\n"
            f"Analysis: {idea.analysis}\n"
            f"Tickers: {idea.tickers}\n\n"
            "Use this context to provide more specific and relevant responses "
            "about this particular trading opportunity."
        )

    if context and context.watchlist:
        prompt += (
            f"\n\nUser's Current Watchlist: {', '.join(context.watchlist)}\n"
            "Consider these holdings when providing portfolio advice or suggesting "
            "complementary investments."
        )

    if context and context.user_profile:
        profile = context.user_profile
        if profile.risk_tolerance:
            prompt += f"\n\nUser's Risk Tolerance: {profile.risk_tolerance}"
        if profile.investment_goals:
            prompt += f"\n\nUser's Investment Goals: {profile.investment_goals}"

    if research_data:
        prompt += (
            f"\n\nCurrent Research Information:\n{research_data}\n\n"
            "Use this research data to provide detailed, up-to-date analysis and insights."
        )

    return prompt


# ── Assistant ──────────────────────────────────────────────────────────────


class ChatAssistant:
    """Sends a conversation to Claude and returns the assistant's reply."""

    def __init__(
        self,
        settings: Settings,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.settings = settings
        self._sleep = sleep
        self._client: Optional[anthropic.Anthropic] = None

    @property
    def client(self) -> anthropic.Anthropic:
        """Lazy-initialise the Anthropic client; raises if no key is set."""
        if self._client is None:
            if not self.settings.anthropic_api_key:
                raise ChatUnavailableError("ANTHROPIC_API_KEY environment variable is not set")
            # Retries are handled by with_retry around each call.
            self._client = anthropic.Anthropic(
                api_key=self.settings.anthropic_api_key,
                max_retries=0,
            )
        return self._client

    def reply(
        self,
        messages: list[ChatMessage],
        system_prompt: str,
        user_id: str,
        max_tokens: float = 500,
        temperature: float = 0.7,
    ) -> ChatReply:
        """Get the next assistant message for *messages*.

        ``system``-role messages are folded into the system prompt because the
        Messages API takes the system prompt as a separate parameter.

        Raises:
            ChatUnavailableError: If no API key is configured.
            RetryError: If every attempt failed; ``last_error`` is the
                Anthropic exception.
        """
        client = self.client

        extra_system = [m.content for m in messages if m.role == "system"]
        system = "\n\n".join([system_prompt, *extra_system])
        conversation = [
            {"role": m.role, "content": m.content} for m in messages if m.role != "system"
        ]

        max_tokens = int(min(max(max_tokens, 1), MAX_TOKENS_CAP))
        temperature = max(0.0, min(float(temperature), 1.0))

        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        response = with_retry(
            lambda: client.messages.create(
                model=self.settings.chat_model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=conversation,
                metadata={"user_id": user_id},
            ),
            self.settings.retry_max_attempts,
            self.settings.retry_initial_delay,
            "Claude API call",
            **kwargs,
        )

        content = "".join(
            getattr(block, "text", "") or ""
            for block in response.content
            if getattr(block, "type", None) == "text"
        ).strip()

        usage = getattr(response, "usage", None)
        reply = ChatReply(
            content=content,
            model=getattr(response, "model", self.settings.chat_model),
            prompt_tokens=getattr(usage, "input_tokens", 0) or 0,
            completion_tokens=getattr(usage, "output_tokens", 0) or 0,
        )
        logger.info("Chat usage - user=%s tokens=%d", user_id, reply.total_tokens)
        return reply
