"""Domain models and types for the paper trading ledger.

This package contains in-memory (Pydantic) models describing trading contexts,
holdings, account snapshots and transactions, plus the pure balance logic that
mutates them. They are independent from persistence models so that business
logic and testing can evolve without DB coupling.
"""

__all__ = [
    "account_book",
    "base_types",
    "context",
    "errors",
    "holdings",
    "intents",
    "leaderboard",
    "trading",
]
