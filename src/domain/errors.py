from __future__ import annotations

from decimal import Decimal


class PaperTradingError(Exception):
    """Base class of every error the ledger reports to its callers."""

    @property
    def user_message(self) -> str:
        return "Something went wrong. Please try again."


class InsufficientBalanceError(PaperTradingError):
    def __init__(self, *, context_id: str, required: Decimal, available: Decimal) -> None:
        self.context_id = context_id
        self.required = required
        self.available = available
        super().__init__(f"Insufficient balance in context={context_id} required={required} available={available}")

    @property
    def user_message(self) -> str:
        return f"Insufficient balance. Required: ${self.required:,.2f}, Available: ${self.available:,.2f}"


class InsufficientHoldingsError(PaperTradingError):
    def __init__(self, *, context_id: str, symbol: str, requested: Decimal, available: Decimal) -> None:
        self.context_id = context_id
        self.symbol = symbol
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient holdings of {symbol} in context={context_id} requested={requested} available={available}"
        )

    @property
    def user_message(self) -> str:
        return f"Insufficient {self.symbol} holdings. Required: {self.requested}, Available: {self.available}"


class ContextNotFoundError(PaperTradingError):
    def __init__(self, context_id: str) -> None:
        self.context_id = context_id
        super().__init__(f"No account stored for context={context_id}")

    @property
    def user_message(self) -> str:
        return "This account does not exist yet."


class DataUnavailableError(PaperTradingError):
    def __init__(self, key: str, message: str | None = None) -> None:
        self.key = key
        super().__init__(message or f"Market data unavailable for {key}")

    @property
    def user_message(self) -> str:
        return "Market data is temporarily unavailable."


class RateLimitedError(PaperTradingError):
    def __init__(self, message: str = "Rate limited by market data provider", *, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return "Too many requests. Please wait a moment and try again."


class StoreConflictError(PaperTradingError):
    def __init__(self, context_id: str, message: str | None = None) -> None:
        self.context_id = context_id
        super().__init__(message or f"Concurrent write detected for context={context_id}")

    @property
    def user_message(self) -> str:
        return "Your account changed while the trade was processed. Please retry."
