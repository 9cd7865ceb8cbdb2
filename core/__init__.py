"""
speculation-assist core package.

Modules
───────
models      - Pydantic data models (RawIdeaRow, TradingIdea, Watchlist, ChatRequest, ...)
ideas       - bulk-row parsing and normalisation of stored trading ideas
resilience  - retry with exponential backoff, fixed-window rate limiting
validation  - request-body parsing and shape predicates
store       - SQLite-backed ideas, subscribers, watchlists, interactions, profiles
research    - research-intent heuristics + Claude web_search lookups
chat        - system-prompt assembly and the Claude trading assistant
"""
