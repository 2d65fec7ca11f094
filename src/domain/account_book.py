from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from .context import TradingContext
from .errors import InsufficientBalanceError, InsufficientHoldingsError
from .holdings import RESERVE_SYMBOL, AccountSnapshot, Holding, normalize_symbol
from .intents import AppendTransaction, DeleteHolding, PersistenceIntent, UpsertAccount, UpsertHolding
from .trading import Transaction

_ZERO = Decimal(0)


class AccountBook:
    """Working copy of one context's holdings.

    Mutations validate first and only then touch state, so a raised error
    leaves the book exactly as it was. Every change is remembered and turned
    into persistence intents by ``pending_intents``.
    """

    def __init__(
        self,
        context: TradingContext,
        *,
        starting_balance: Decimal,
        holdings: Iterable[Holding] = (),
        version: int | None = None,
        last_activity_at: datetime | None = None,
    ) -> None:
        self.context = context
        self.starting_balance = starting_balance
        self.version = version
        self.last_activity_at = last_activity_at
        self._holdings: dict[str, Holding] = {}
        self._changed: dict[str, Holding | None] = {}
        self._transactions: list[Transaction] = []

        for holding in holdings:
            self._holdings[holding.symbol] = holding
        if RESERVE_SYMBOL not in self._holdings:
            self._holdings[RESERVE_SYMBOL] = Holding.reserve(starting_balance)
            if version is not None:
                # Stored account without a reserve row: persist the synthesized one.
                self._changed[RESERVE_SYMBOL] = self._holdings[RESERVE_SYMBOL]

    @classmethod
    def fresh(cls, context: TradingContext, *, starting_balance: Decimal) -> AccountBook:
        return cls(context, starting_balance=starting_balance)

    @property
    def is_persisted(self) -> bool:
        return self.version is not None

    @property
    def reserve(self) -> Holding:
        return self._holdings[RESERVE_SYMBOL]

    @property
    def has_changes(self) -> bool:
        return bool(self._changed or self._transactions)

    def holding(self, symbol: str) -> Holding | None:
        return self._holdings.get(normalize_symbol(symbol))

    def holdings(self) -> list[Holding]:
        """Non-reserve holdings, ordered by symbol."""
        return sorted(
            (holding for symbol, holding in self._holdings.items() if symbol != RESERVE_SYMBOL),
            key=lambda holding: holding.symbol,
        )

    def apply_holding_delta(self, symbol: str, amount_delta: Decimal, value_delta: Decimal) -> Holding | None:
        """Apply a signed change to one holding and return it, or None once it is removed."""
        symbol = normalize_symbol(symbol)
        if amount_delta == 0:
            raise ValueError("amount_delta must be non-zero")
        if symbol == RESERVE_SYMBOL:
            return self._apply_reserve_delta(amount_delta)
        if amount_delta > 0:
            return self._increase(symbol, amount_delta, value_delta)
        return self._decrease(symbol, amount_delta, value_delta)

    def update_current_price(self, symbol: str, price: Decimal) -> Holding | None:
        """Revalue one holding at ``price``. Amount and average cost stay untouched."""
        symbol = normalize_symbol(symbol)
        if price <= 0:
            raise ValueError("price must be > 0")
        current = self._holdings.get(symbol)
        if current is None or current.is_reserve:
            return current
        if current.current_price == price:
            return current
        updated = Holding.valued(
            symbol=symbol,
            amount=current.amount,
            average_buy_price=current.average_buy_price,
            current_price=price,
        )
        self._store(updated)
        return updated

    def record_transaction(self, transaction: Transaction) -> None:
        self._transactions.append(transaction)
        self.last_activity_at = transaction.timestamp

    def snapshot(self) -> AccountSnapshot:
        return AccountSnapshot.from_holdings(
            self.context,
            starting_balance=self.starting_balance,
            reserve=self.reserve,
            holdings=self.holdings(),
            last_activity_at=self.last_activity_at,
        )

    def pending_intents(self) -> list[PersistenceIntent]:
        """Intents for everything changed since load, ending with the refreshed account aggregates."""
        context_id = self.context.context_id
        intents: list[PersistenceIntent] = []
        for symbol, holding in self._changed.items():
            if holding is None:
                intents.append(DeleteHolding(context_id=context_id, symbol=symbol))
            else:
                intents.append(UpsertHolding(context_id=context_id, holding=holding))
        intents.extend(AppendTransaction(transaction=transaction) for transaction in self._transactions)

        snapshot = self.snapshot()
        intents.append(
            UpsertAccount(
                context=self.context,
                starting_balance=self.starting_balance,
                usdt_balance=snapshot.usdt_balance,
                total_portfolio_value=snapshot.total_portfolio_value,
                total_pnl=snapshot.total_pnl,
                total_pnl_percentage=snapshot.total_pnl_percentage,
                expected_version=self.version,
                last_activity_at=self.last_activity_at,
            )
        )
        return intents

    def _apply_reserve_delta(self, amount_delta: Decimal) -> Holding:
        current = self.reserve
        new_amount = current.amount + amount_delta
        if new_amount < 0:
            raise InsufficientBalanceError(
                context_id=self.context.context_id,
                required=-amount_delta,
                available=current.amount,
            )
        updated = Holding.reserve(new_amount)
        self._store(updated)
        return updated

    def _increase(self, symbol: str, amount_delta: Decimal, value_delta: Decimal) -> Holding:
        current = self._holdings.get(symbol)
        old_amount = current.amount if current else _ZERO
        old_average = current.average_buy_price if current else _ZERO
        new_amount = old_amount + amount_delta
        # Blend the cost basis before the amount is replaced.
        new_average = (old_amount * old_average + value_delta) / new_amount
        trade_price = value_delta / amount_delta
        updated = Holding.valued(
            symbol=symbol,
            amount=new_amount,
            average_buy_price=new_average,
            current_price=trade_price,
        )
        self._store(updated)
        return updated

    def _decrease(self, symbol: str, amount_delta: Decimal, value_delta: Decimal) -> Holding | None:
        current = self._holdings.get(symbol)
        available = current.amount if current else _ZERO
        if current is None or -amount_delta > available:
            raise InsufficientHoldingsError(
                context_id=self.context.context_id,
                symbol=symbol,
                requested=-amount_delta,
                available=available,
            )

        new_amount = current.amount + amount_delta
        if new_amount <= 0:
            self._remove(symbol)
            return None

        updated = Holding.valued(
            symbol=symbol,
            amount=new_amount,
            average_buy_price=current.average_buy_price,
            current_price=current.current_price,
            value_in_usd=current.value_in_usd + value_delta,
        )
        self._store(updated)
        return updated

    def _store(self, holding: Holding) -> None:
        self._holdings[holding.symbol] = holding
        self._changed[holding.symbol] = holding

    def _remove(self, symbol: str) -> None:
        self._holdings.pop(symbol, None)
        self._changed[symbol] = None
