from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .base_types import TransactionId
from .context import TradingContext
from .holdings import RESERVE_SYMBOL, is_valid_symbol, normalize_symbol


class TradeType(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(StrEnum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class TradeOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TradeType
    symbol: str
    quantity: Decimal
    price: Decimal
    fee: Decimal = Decimal(0)
    order_type: OrderType = OrderType.MARKET

    @field_validator("type", "order_type", mode="before")
    @classmethod
    def _upper_enum(cls, value: object) -> object:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        if not is_valid_symbol(value):
            raise ValueError("symbol must be non-empty")
        symbol = normalize_symbol(value)
        if symbol == RESERVE_SYMBOL:
            raise ValueError(f"{RESERVE_SYMBOL} is the reserve currency and cannot be traded")
        return symbol

    @model_validator(mode="after")
    def _validate_amounts(self) -> TradeOrder:
        if self.quantity <= 0:
            raise ValueError("quantity must be > 0")
        if self.price <= 0:
            raise ValueError("price must be > 0")
        if self.fee < 0:
            raise ValueError("fee must be >= 0")
        return self

    @property
    def total_value(self) -> Decimal:
        return self.quantity * self.price


class Transaction(BaseModel):
    """Append-only record of one completed trade."""

    model_config = ConfigDict(frozen=True)

    id: TransactionId = Field(default_factory=uuid4)
    context: TradingContext
    type: TradeType
    order_type: OrderType = OrderType.MARKET
    symbol: str
    quantity: Decimal
    price: Decimal
    total_value: Decimal
    fee: Decimal
    balance_before: Decimal
    balance_after: Decimal
    timestamp: datetime
