from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable

from services.market_data_client import MarketQuote, PricePoint


class StubMarketSource:
    """In-memory market data provider with scriptable failures."""

    def __init__(self, prices: dict[str, Decimal | str | int] | None = None) -> None:
        self.prices = {symbol: Decimal(str(price)) for symbol, price in (prices or {}).items()}
        self.market_calls: list[list[str]] = []
        self.chart_calls: list[tuple[str, int]] = []
        self.failures: list[Exception] = []
        self.fail_always: Exception | None = None
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    @staticmethod
    def coin_id(symbol: str) -> str:
        return f"{symbol.lower()}-coin"

    def get_markets(self, symbols: Iterable[str], *, page: int = 1, per_page: int = 250) -> list[MarketQuote]:
        wanted = list(symbols)
        with self._lock:
            self.market_calls.append(wanted)
            failure = self.failures.pop(0) if self.failures else self.fail_always
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if failure is not None:
            raise failure
        return [
            MarketQuote(
                coin_id=self.coin_id(symbol),
                symbol=symbol,
                name=symbol.title(),
                current_price=self.prices[symbol],
                last_updated=None,
            )
            for symbol in wanted
            if symbol in self.prices
        ]

    def get_market_chart(self, coin_id: str, *, days: int) -> list[PricePoint]:
        with self._lock:
            self.chart_calls.append((coin_id, days))
            failure = self.failures.pop(0) if self.failures else self.fail_always
        if failure is not None:
            raise failure
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        return [PricePoint(timestamp=start + timedelta(days=day), price=Decimal(100 + day)) for day in range(days)]
