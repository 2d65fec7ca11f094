from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from .context import TradingContext

RESERVE_SYMBOL = "USDT"
DEFAULT_STARTING_BALANCE = Decimal("100000")

_ZERO = Decimal(0)
_ONE = Decimal(1)
_HUNDRED = Decimal(100)


def normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


def is_valid_symbol(symbol: str | None) -> bool:
    return bool(symbol and symbol.strip())


class Holding(BaseModel):
    """Position of one symbol inside one context.

    ``profit_loss`` and ``profit_loss_percentage`` are recomputed from
    ``(current_price - average_buy_price) * amount`` whenever a holding is
    built, never carried over from a previous value.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    amount: Decimal
    average_buy_price: Decimal
    current_price: Decimal
    value_in_usd: Decimal
    profit_loss: Decimal = _ZERO
    profit_loss_percentage: Decimal = _ZERO

    @classmethod
    def valued(
        cls,
        *,
        symbol: str,
        amount: Decimal,
        average_buy_price: Decimal,
        current_price: Decimal,
        value_in_usd: Decimal | None = None,
    ) -> Holding:
        value = amount * current_price if value_in_usd is None else value_in_usd
        cost_basis = amount * average_buy_price
        profit_loss = (current_price - average_buy_price) * amount
        percentage = profit_loss / cost_basis * _HUNDRED if cost_basis > 0 else _ZERO
        return cls(
            symbol=symbol,
            amount=amount,
            average_buy_price=average_buy_price,
            current_price=current_price,
            value_in_usd=value,
            profit_loss=profit_loss,
            profit_loss_percentage=percentage,
        )

    @classmethod
    def reserve(cls, amount: Decimal) -> Holding:
        return cls(
            symbol=RESERVE_SYMBOL,
            amount=amount,
            average_buy_price=_ONE,
            current_price=_ONE,
            value_in_usd=amount,
        )

    @property
    def is_reserve(self) -> bool:
        return self.symbol == RESERVE_SYMBOL

    @property
    def cost_basis(self) -> Decimal:
        return self.amount * self.average_buy_price


class AccountSnapshot(BaseModel):
    """Aggregate view of one context. Totals are always derived from holdings."""

    model_config = ConfigDict(frozen=True)

    context: TradingContext
    starting_balance: Decimal
    usdt_balance: Decimal
    holdings: list[Holding]
    total_portfolio_value: Decimal
    total_pnl: Decimal
    total_pnl_percentage: Decimal
    last_activity_at: datetime | None = None

    @classmethod
    def from_holdings(
        cls,
        context: TradingContext,
        *,
        starting_balance: Decimal,
        reserve: Holding,
        holdings: list[Holding],
        last_activity_at: datetime | None = None,
    ) -> AccountSnapshot:
        ordered = sorted(holdings, key=lambda holding: holding.symbol)
        total_value = reserve.value_in_usd + sum((holding.value_in_usd for holding in ordered), start=_ZERO)
        total_pnl = total_value - starting_balance
        percentage = total_pnl / starting_balance * _HUNDRED if starting_balance > 0 else _ZERO
        return cls(
            context=context,
            starting_balance=starting_balance,
            usdt_balance=reserve.amount,
            holdings=ordered,
            total_portfolio_value=total_value,
            total_pnl=total_pnl,
            total_pnl_percentage=percentage,
            last_activity_at=last_activity_at,
        )

    def holding(self, symbol: str) -> Holding | None:
        wanted = normalize_symbol(symbol)
        for holding in self.holdings:
            if holding.symbol == wanted:
                return holding
        return None


class CombinedPnL(BaseModel):
    individual: AccountSnapshot
    collections: list[AccountSnapshot]
    total_pnl: Decimal
    total_starting_balance: Decimal
    total_pnl_percentage: Decimal
