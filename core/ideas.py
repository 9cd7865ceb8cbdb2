"""Trading-idea normalisation.

Turns ``generated_ideas`` rows into a flat, newest-first list of
``TradingIdea`` objects. The table holds two encodings:

* one idea per row (``theme`` / ``analysis`` / ``tickers`` used as-is)
* a bulk row packing several ideas, written by the generation job::

    analysis: "IDEA 1 - Tech Momentum\\nStrong breakout.\\n---\\nIDEA 2 - ..."
    tickers:  "AAPL, NVDA\\n---\\n,TSLA, RIVN"

  Blocks are separated by ``---`` and the ticker groups line up with the
  analysis blocks by position.

A batch is treated as bulk when *any* row looks bulk. In that case only the
rows that look bulk themselves are parsed; single-idea rows in the same batch
are dropped. Parsing never raises: malformed blocks are skipped, and when
nothing usable is left the feed falls back to a fixed set of example ideas.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.models import RawIdeaRow, TradingIdea

logger = logging.getLogger(__name__)

#: Text that starts the first block of a bulk payload.
BULK_MARKER = "IDEA 1"
#: Separator between blocks in both ``analysis`` and ``tickers``.
BLOCK_DELIMITER = "---"

_THEME_LINE = re.compile(r"^IDEA\s+\d+\s*-\s*(.+?)$", re.MULTILINE)
_TICKER_ONLY_LINE = re.compile(r"[A-Z\s,]+")
_TICKER_LINE_MAX_LEN = 50
_LEADING_COMMA = re.compile(r"^,\s*")
_WHITESPACE_RUN = re.compile(r"\s+")


# ── Classification ─────────────────────────────────────────────────────────────


def is_bulk_row(row: RawIdeaRow) -> bool:
    """Return True if *row* packs several ideas into one ``analysis`` field."""
    return bool(row.analysis) and BULK_MARKER in row.analysis and BLOCK_DELIMITER in row.analysis


# ── Bulk parsing ───────────────────────────────────────────────────────────────


def clean_tickers(fragment: str) -> str:
    """Tidy one ticker group from a bulk row.

    Examples:
        >>> clean_tickers(" ,AAPL, MSFT ")
        'AAPL, MSFT'
        >>> clean_tickers("\\n,TSLA,\\n  RIVN")
        'TSLA, RIVN'
    """
    cleaned = _LEADING_COMMA.sub("", fragment.strip())
    return _WHITESPACE_RUN.sub(" ", cleaned).strip()


def _is_ticker_line(line: str) -> bool:
    return bool(_TICKER_ONLY_LINE.fullmatch(line)) and len(line) <= _TICKER_LINE_MAX_LEN


def _narrative(block: str, theme_match: re.Match[str]) -> str:
    # Lines after the theme line, minus stray ticker lists the generator
    # sometimes leaves inside the analysis text.
    body = block[theme_match.end():]
    lines = [line.strip() for line in body.split("\n")]
    return "\n".join(line for line in lines if line and not _is_ticker_line(line)).strip()


def parse_bulk_row(row: RawIdeaRow) -> list[TradingIdea]:
    """Split a bulk row into its individual ideas.

    The idea at block ``i`` gets ``id = row.id + i`` and shares the row's
    ``created_at``. Blocks without an ``IDEA <n> - <theme>`` line, or whose
    narrative is empty once ticker lines are removed, are skipped.
    """
    blocks = row.analysis.split(BLOCK_DELIMITER)
    ticker_groups = row.tickers.split(BLOCK_DELIMITER)

    ideas: list[TradingIdea] = []
    for index, raw_block in enumerate(blocks):
        block = raw_block.strip()
        if not block:
            continue

        match = _THEME_LINE.search(block)
        if match is None:
            logger.debug("Row %d block %d has no theme line, skipping", row.id, index)
            continue

        theme = match.group(1).strip()
        analysis = _narrative(block, match)
        tickers = clean_tickers(ticker_groups[index]) if index < len(ticker_groups) else ""

        if theme and analysis:
            ideas.append(
                TradingIdea(
                    id=row.id + index,
                    created_at=row.created_at,
                    theme=theme,
                    analysis=analysis,
                    tickers=tickers,
                )
            )

    return ideas


# ── Fallback content ───────────────────────────────────────────────────────────

_FALLBACK = [
    (
        "Tech Sector Momentum",
        "Strong technical breakout in major tech stocks with high volume. AI and "
        "semiconductor sectors showing particular strength with institutional buying pressure.",
        "AAPL, NVDA, MSFT",
        timedelta(0),
    ),
    (
        "EV Market Volatility",
        "Electric vehicle stocks showing mixed signals. Recent earnings reports and "
        "regulatory changes creating uncertainty, but long-term outlook remains positive.",
        "TSLA, RIVN, LCID",
        timedelta(hours=1),
    ),
    (
        "Financial Sector Rotation",
        "Banking and financial services benefiting from interest rate environment. Strong "
        "earnings and improved lending conditions driving sector performance.",
        "JPM, BAC, GS, WFC",
        timedelta(hours=2),
    ),
    (
        "Healthcare Innovation",
        "Biotech and pharmaceutical companies with breakthrough treatments gaining momentum. "
        "FDA approvals and clinical trial results driving significant price movements.",
        "JNJ, PFE, MRNA, GILD",
        timedelta(days=1),
    ),
    (
        "Energy Transition",
        "Renewable energy and traditional energy companies showing divergent patterns. Solar "
        "and wind stocks outperforming while oil companies face headwinds.",
        "ENPH, FSLR, XOM, CVX",
        timedelta(days=2),
    ),
    (
        "Consumer Discretionary Weakness",
        "Retail and consumer discretionary stocks under pressure from inflation concerns. "
        "However, luxury brands and premium retailers showing resilience.",
        "AMZN, HD, TGT, LVMUY",
        timedelta(days=3),
    ),
]


def fallback_ideas(now: Optional[datetime] = None) -> list[TradingIdea]:
    """Return the example ideas shown when the feed has nothing real to show.

    Timestamps are relative to *now* so the list is already newest first.
    """
    now = now or datetime.now(timezone.utc)
    return [
        TradingIdea(id=i, created_at=now - age, theme=theme, analysis=analysis, tickers=tickers)
        for i, (theme, analysis, tickers, age) in enumerate(_FALLBACK, start=1)
    ]


# ── Entry point ────────────────────────────────────────────────────────────────


def _created_at_key(idea: TradingIdea) -> datetime:
    # Naive timestamps are UTC so they compare with aware ones.
    created = idea.created_at
    return created if created.tzinfo else created.replace(tzinfo=timezone.utc)


def expand_rows(rows: Iterable[RawIdeaRow]) -> list[TradingIdea]:
    """Parse *rows* into ideas, newest first, without the fallback.

    An empty result means nothing in *rows* was usable.
    """
    rows = list(rows)

    if any(is_bulk_row(row) for row in rows):
        logger.info("Processing bulk-encoded idea rows")
        ideas: list[TradingIdea] = []
        for row in rows:
            if is_bulk_row(row):
                ideas.extend(parse_bulk_row(row))
    else:
        ideas = [TradingIdea(**row.model_dump()) for row in rows]

    ideas.sort(key=_created_at_key, reverse=True)
    return ideas


def normalize(rows: Iterable[RawIdeaRow]) -> list[TradingIdea]:
    """Convert raw ``generated_ideas`` rows into displayable ideas.

    Args:
        rows: Rows in any order.

    Returns:
        Ideas sorted newest first; the fallback list if none survive.
    """
    rows = list(rows)
    ideas = expand_rows(rows)
    if not ideas:
        logger.info("No usable ideas in %d rows, returning fallback ideas", len(rows))
        return fallback_ideas()
    return ideas
