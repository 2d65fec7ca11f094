from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol

from domain.errors import DataUnavailableError, RateLimitedError
from domain.holdings import RESERVE_SYMBOL, is_valid_symbol, normalize_symbol
from utils.clock import Clock, Sleeper, sleep, utc_now

from .market_data_client import MarketDataAPIError, MarketQuote, PricePoint
from .price_cache import CacheEntry, InMemoryPriceCache, PriceCache
from .rate_limit import ExponentialBackoff, RateLimiter
from .request_coalescer import RequestCoalescer

if TYPE_CHECKING:
    from config import AppSettings

logger = logging.getLogger(__name__)


class MarketDataSource(Protocol):
    def get_markets(self, symbols: Iterable[str], *, page: int = 1, per_page: int = 250) -> list[MarketQuote]: ...

    def get_market_chart(self, coin_id: str, *, days: int) -> list[PricePoint]: ...


@dataclass(frozen=True)
class GatewayOptions:
    fresh_ttl: timedelta = timedelta(minutes=15)
    stale_ttl: timedelta = timedelta(hours=2)
    cache_tag: str = "1"
    rate_limit_per_minute: int = 30
    retry_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_max_seconds: float = 60.0
    per_page: int = 250

    @classmethod
    def from_settings(cls, settings: AppSettings) -> GatewayOptions:
        return cls(
            fresh_ttl=timedelta(milliseconds=settings.cache_fresh_ttl_ms),
            stale_ttl=timedelta(milliseconds=settings.cache_stale_ttl_ms),
            cache_tag=settings.cache_tag,
            rate_limit_per_minute=settings.rate_limit_per_minute,
            retry_attempts=settings.retry_attempts,
            backoff_base_seconds=settings.backoff_base_ms / 1000,
            backoff_factor=settings.backoff_factor,
            backoff_max_seconds=settings.backoff_max_ms / 1000,
        )


@dataclass(frozen=True)
class PriceLookup:
    prices: dict[str, Decimal]
    fetched_at: datetime | None
    stale: bool = False
    missing: list[str] = field(default_factory=list)


class MarketDataGateway:
    """Single funnel for external price lookups.

    Lookups are answered from a fresh cache entry when one exists. Otherwise one
    caller per query fetches from the provider (others wait for its result),
    subject to the per-minute rate limit and exponential backoff between
    failed attempts. When every attempt fails, a stale entry inside the stale
    window is served; without one the lookup raises ``DataUnavailableError``.
    """

    def __init__(
        self,
        source: MarketDataSource,
        *,
        cache: PriceCache | None = None,
        options: GatewayOptions | None = None,
        clock: Clock = utc_now,
        sleeper: Sleeper = sleep,
    ) -> None:
        self.source = source
        self.options = options or GatewayOptions()
        self.cache = cache or InMemoryPriceCache()
        self._clock = clock
        self._sleep = sleeper
        self._rate_limiter = RateLimiter(
            max_requests=self.options.rate_limit_per_minute,
            clock=clock,
            sleeper=sleeper,
        )
        self._backoff = ExponentialBackoff(
            base_delay=self.options.backoff_base_seconds,
            factor=self.options.backoff_factor,
            max_delay=self.options.backoff_max_seconds,
        )
        self._coalescer = RequestCoalescer()
        self._coin_ids: dict[str, str] = {}
        self._coin_ids_lock = threading.Lock()
        self.network_calls = 0

    def get_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        return self.lookup_prices(symbols).prices

    def lookup_prices(self, symbols: Iterable[str]) -> PriceLookup:
        wanted = sorted({normalize_symbol(symbol) for symbol in symbols if is_valid_symbol(symbol)} - {RESERVE_SYMBOL})
        if not wanted:
            return PriceLookup(prices={}, fetched_at=None)

        per_page = self.options.per_page
        prices: dict[str, Decimal] = {}
        stale = False
        fetched_at: datetime | None = None
        for start in range(0, len(wanted), per_page):
            chunk = wanted[start : start + per_page]
            key = f"prices:{','.join(chunk)}:page=1:per_page={per_page}"
            entry, chunk_stale = self._load(key, lambda chunk=chunk: self._fetch_markets(chunk))
            self._remember_coin_ids(entry.payload.get("coins", {}))
            prices.update({symbol: Decimal(raw) for symbol, raw in entry.payload.get("prices", {}).items()})
            stale = stale or chunk_stale
            fetched_at = entry.stored_at if fetched_at is None else min(fetched_at, entry.stored_at)

        missing = [symbol for symbol in wanted if symbol not in prices]
        if missing:
            logger.info("No market price for %s", ", ".join(missing))
        return PriceLookup(
            prices={symbol: prices[symbol] for symbol in wanted if symbol in prices},
            fetched_at=fetched_at,
            stale=stale,
            missing=missing,
        )

    def get_historical_prices(self, symbol: str, days: int) -> list[tuple[datetime, Decimal]]:
        if days <= 0:
            msg = "days must be > 0"
            raise ValueError(msg)
        coin_id = self._coin_id(normalize_symbol(symbol))
        key = f"history:{coin_id}:days={days}"
        entry, _ = self._load(key, lambda: self._fetch_history(coin_id, days))
        return [(datetime.fromisoformat(timestamp), Decimal(price)) for timestamp, price in entry.payload]

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Market data cache cleared")

    def stats(self) -> dict[str, Any]:
        return {
            "cache_keys": len(self.cache.keys()),
            "pending_requests": self._coalescer.pending,
            "deduplicated_requests": self._coalescer.deduplicated,
            "network_calls": self.network_calls,
            "requests_in_window": self._rate_limiter.used,
            "backoff_seconds": self._backoff.current_delay,
        }

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    def _load(self, key: str, fetch: Callable[[], Any]) -> tuple[CacheEntry, bool]:
        fresh = self._cached(key, self.options.fresh_ttl)
        if fresh is not None:
            logger.debug("Serving %s from fresh cache", key)
            return fresh, False
        return self._coalescer.run(key, lambda: self._refresh(key, fetch))

    def _refresh(self, key: str, fetch: Callable[[], Any]) -> tuple[CacheEntry, bool]:
        try:
            payload = self._fetch_with_retry(key, fetch)
        except (MarketDataAPIError, RateLimitedError) as exc:
            stale = self._cached(key, self.options.stale_ttl)
            if stale is not None:
                age = self._clock() - stale.stored_at
                logger.warning("Serving stale market data for %s (age %s) after fetch failure: %s", key, age, exc)
                return stale, True
            raise DataUnavailableError(key, f"Market data unavailable for {key}: {exc}") from exc

        entry = CacheEntry(key=key, payload=payload, stored_at=self._clock(), tag=self.options.cache_tag)
        self.cache.write(entry)
        return entry, False

    def _fetch_with_retry(self, key: str, fetch: Callable[[], Any]) -> Any:
        attempts = self.options.retry_attempts + 1
        attempt = 1
        while True:
            self._rate_limiter.acquire()
            try:
                self.network_calls += 1
                payload = fetch()
            except (MarketDataAPIError, RateLimitedError) as exc:
                delay = self._backoff.failure()
                if isinstance(exc, RateLimitedError) and exc.retry_after:
                    delay = max(delay, exc.retry_after)
                logger.warning("Fetching %s failed (attempt %d/%d): %s", key, attempt, attempts, exc)
                if attempt >= attempts:
                    raise
                self._sleep(delay)
                attempt += 1
                continue
            self._backoff.success()
            return payload

    def _cached(self, key: str, max_age: timedelta) -> CacheEntry | None:
        entry = self.cache.read(key)
        if entry is None:
            return None
        if entry.tag != self.options.cache_tag:
            logger.info("Ignoring cache entry %s with outdated tag %s", key, entry.tag)
            return None
        if self._clock() - entry.stored_at > max_age:
            return None
        return entry

    def _fetch_markets(self, symbols: list[str]) -> dict[str, Any]:
        quotes = self.source.get_markets(symbols, page=1, per_page=self.options.per_page)
        prices: dict[str, str] = {}
        coins: dict[str, str] = {}
        for quote in quotes:
            symbol = normalize_symbol(quote.symbol)
            # Several coins can share a ticker; the provider lists the largest first.
            if symbol in prices:
                continue
            prices[symbol] = str(quote.current_price)
            coins[symbol] = quote.coin_id
        return {"prices": prices, "coins": coins}

    def _fetch_history(self, coin_id: str, days: int) -> list[list[str]]:
        points = self.source.get_market_chart(coin_id, days=days)
        return [[point.timestamp.isoformat(), str(point.price)] for point in points]

    def _remember_coin_ids(self, coins: dict[str, str]) -> None:
        with self._coin_ids_lock:
            self._coin_ids.update(coins)

    def _coin_id(self, symbol: str) -> str:
        with self._coin_ids_lock:
            coin_id = self._coin_ids.get(symbol)
        if coin_id is not None:
            return coin_id
        self.lookup_prices([symbol])
        with self._coin_ids_lock:
            coin_id = self._coin_ids.get(symbol)
        if coin_id is None:
            raise DataUnavailableError(f"coin:{symbol}", f"Unknown market symbol {symbol}")
        return coin_id


__all__ = ["GatewayOptions", "MarketDataGateway", "MarketDataSource", "PriceLookup"]
