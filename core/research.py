"""Web research used to enrich chat replies with recent market data.

Responsibilities:
- Decide whether a chat message asks for a financial lookup (keyword heuristics)
- Pick what to look up: a ticker-like token, else a company phrase
- Run one Claude ``web_search`` pass and format the hits for the system prompt

Research is optional. When it is switched off or no API key is configured,
callers get a fixed "not configured" string instead of an error, and any
search failure degrades to an "unable to research" string.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Research functionality not configured."
MAX_RESULTS = 4

# ── Intent heuristics ──────────────────────────────────────────────────────────

#: Phrases that mark a message as a lookup worth researching.
_RESEARCH_SIGNALS: tuple[str, ...] = (
    # general
    "research", "look up", "tell me about", "analyze", "what is", "find out about",
    "information",
    # market data
    "current price", "stock price", "share price", "market cap", "market capitalization",
    "shares outstanding", "float", "volume", "market value", "valuation",
    # statements
    "revenue", "earnings", "profit", "income", "sales", "eps", "earnings per share",
    "cash flow", "debt", "balance sheet", "assets", "liabilities", "book value",
    # ratios
    "pe ratio", "p/e", "price to earnings", "dividend", "dividend yield", "growth",
    "return on equity", "roe", "margins", "profit margin", "gross margin",
    # news and filings
    "latest news", "recent news", "press release", "announcement", "filing",
    "sec filing", "10-k", "10-q", "quarterly report", "annual report",
    # trading
    "52 week high", "52 week low", "all time high", "all time low", "beta",
    "volatility", "moving average", "support", "resistance", "chart",
    # company
    "ceo", "headquarters", "employees", "founded", "sector", "industry",
    "competitors", "business model", "products", "services",
    # analyst coverage
    "buy rating", "sell rating", "analyst rating", "price target", "upgrade",
    "downgrade", "recommendation", "forecast", "guidance", "outlook",
    # speculative phrasing
    "could", "would", "might", "potential", "benefit", "gain", "exposed", "part of",
    "involved in",
)

#: Uppercase words that look like tickers but are ordinary English.
_COMMON_WORDS: frozenset[str] = frozenset("""
    THE AND FOR ARE YOU ALL CAN HAD HER WAS ONE OUR OUT DAY GET USE MAN NEW NOW WAY
    MAY SAY EACH WHICH SHE HOW ITS WHO OIL SIT BUT NOT WHAT SOME TIME VERY WHEN MUCH
    TAKE THEM WELL WERE ALSO MORE OVER SUCH INTO THAN ONLY COME WORK YEAR BACK WANT
    MADE MOST GOOD MAKE KNOW WILL PART JUST LIKE DONT CANT WONT THIS THAT WITH HAVE
    FROM THEY BEEN SAID WOULD THERE COULD WHERE THESE THOSE ABOUT AFTER FIRST NEVER
    OTHER RIGHT THINK BEFORE DURING WHILE SINCE STILL STOCK PRICE
""".split())

_TICKER_TOKEN = re.compile(r"\b[A-Z]{2,6}\b")

#: Fallback patterns pulling a company name out of the message.
_COMPANY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"(?:tell me about|analyze|research|information (?:on|about))\s+(.+?)(?:\s|$|\?)", re.IGNORECASE),
    re.compile(r"(?:what is|find out about)\s+(?:the\s+)?(.+?)(?:\s|$|\?)", re.IGNORECASE),
    re.compile(r"(?:current price|market cap|shares outstanding).*?(?:of|for)\s+(.+?)(?:\s|$|\?)", re.IGNORECASE),
    re.compile(r"(?:could|would)\s+(?:the\s+)?(?:stock\s+)?([A-Z]{2,6})\s+", re.IGNORECASE),
    re.compile(r"(?:stock\s+)([A-Z]{2,6})\s+", re.IGNORECASE),
]
_TRAILING_NOUN = re.compile(r"\s+(?:stock|ticker|symbol)$", re.IGNORECASE)


def needs_research(message: str) -> bool:
    """Return True if *message* reads like a request for market information.

    Examples:
        >>> needs_research("What is the market cap of NVDA?")
        True
        >>> needs_research("hello there")
        False
    """
    lowered = message.lower()
    return any(signal in lowered for signal in _RESEARCH_SIGNALS)


def extract_research_target(message: str) -> Optional[str]:
    """Return the ticker or company name to look up, or None.

    Examples:
        >>> extract_research_target("Tell me about AMD earnings")
        'AMD'
        >>> extract_research_target("tell me about nvidia")
        'nvidia'
    """
    for token in _TICKER_TOKEN.findall(message):
        if token not in _COMMON_WORDS:
            return token

    for pattern in _COMPANY_PATTERNS:
        match = pattern.search(message)
        if match:
            term = _TRAILING_NOUN.sub("", match.group(1).strip())
            if term:
                return term
    return None


# ── Web search ─────────────────────────────────────────────────────────────────

#: Beta header name for the Claude web_search tool.
_WEB_SEARCH_BETA = "web-search-2025-03-05"
#: Tool definition passed to the Claude beta messages API.
_WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search", "max_uses": 1}

_RESEARCH_SYSTEM = (
    "You are a market data researcher. Search the web once for the most recent "
    "price, market cap and news for the requested company or ticker, then reply "
    "with three short factual sentences. No advice, no disclaimers."
)


def _format_hit(title: str, page_age: str, url: str) -> str:
    """``• title (page_age)`` with the URL on the next line."""
    heading = f"• {title} ({page_age})" if page_age else f"• {title}"
    return f"{heading}\n  {url}" if url else heading


class StockResearcher:
    """Looks up recent market information with Claude's ``web_search`` tool.

    The Anthropic client is lazy-initialised so the class can be built without
    a live API key (tests swap in a mock).
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: object = None

    @property
    def client(self) -> object:
        """Lazy-initialise and return the Anthropic SDK client."""
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(
                api_key=self.settings.anthropic_api_key,
                max_retries=2,
            )
        return self._client

    def research(self, query: str) -> str:
        """Return a short research digest for *query*; never raises."""
        if not self.settings.research_configured:
            return NOT_CONFIGURED

        try:
            response = self.client.beta.messages.create(
                model=self.settings.research_model,
                max_tokens=600,
                betas=[_WEB_SEARCH_BETA],
                tools=[_WEB_SEARCH_TOOL],
                system=_RESEARCH_SYSTEM,
                messages=[{
                    "role": "user",
                    "content": f"{query} stock price today current market cap",
                }],
            )
        except Exception:
            logger.exception("Research failed for query=%r", query)
            return f"Unable to research {query} at this time."

        hits: list[tuple[str, str, str]] = []
        text_parts: list[str] = []
        for block in getattr(response, "content", []) or []:
            block_type = getattr(block, "type", None)
            if block_type == "web_search_tool_result":
                for item in getattr(block, "content", []) or []:
                    if getattr(item, "type", None) == "web_search_result":
                        title = getattr(item, "title", "") or ""
                        page_age = getattr(item, "page_age", None) or ""
                        url = getattr(item, "url", "") or ""
                        hits.append((title, page_age, url))
            elif block_type == "text":
                text_parts.append(getattr(block, "text", "") or "")

        if not hits:
            return f"No recent information found for {query}"

        summary = "\n\n".join(_format_hit(*hit) for hit in hits[:MAX_RESULTS])
        notes = "".join(text_parts).strip()
        if notes:
            summary += f"\n\nSummary: {notes}"

        logger.info("Research for %r returned %d results", query, len(hits))
        return (
            f"Current research results for {query} "
            f"(Note: Please verify prices with real-time sources):\n\n{summary}"
        )

    def research_for_message(self, message: str) -> str:
        """Research whatever *message* asks about; empty string if nothing to do."""
        if not needs_research(message):
            return ""
        target = extract_research_target(message)
        if target is None:
            logger.info("Research requested but no target found in message")
            return ""
        logger.info("Researching %r", target)
        return self.research(target)


def perform_stock_research(query: str, settings: Settings) -> str:
    """One-off research call for callers without a long-lived researcher."""
    return StockResearcher(settings).research(query)
