"""Persistence intents produced by in-memory ledger mutations.

A mutation first changes an ``AccountBook`` and only records what has to be
written. The store applies the collected intents in a single database
transaction, or none of them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .context import TradingContext
from .holdings import Holding
from .trading import Transaction


@dataclass(frozen=True)
class UpsertHolding:
    context_id: str
    holding: Holding


@dataclass(frozen=True)
class DeleteHolding:
    context_id: str
    symbol: str


@dataclass(frozen=True)
class UpsertAccount:
    context: TradingContext
    starting_balance: Decimal
    usdt_balance: Decimal
    total_portfolio_value: Decimal
    total_pnl: Decimal
    total_pnl_percentage: Decimal
    expected_version: int | None
    last_activity_at: datetime | None


@dataclass(frozen=True)
class AppendTransaction:
    transaction: Transaction


PersistenceIntent = UpsertHolding | DeleteHolding | UpsertAccount | AppendTransaction
