# flake8: noqa E402
# Run via uv for access to dev deps, e.g.:
# uv run scripts/market_data_probe.py --symbol BTC --symbol ETH --repeat 3
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable

# Ensure the src directory is importable when the script is invoked via uv/python directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from config import config
from services.market_data import GatewayOptions, MarketDataGateway
from services.market_data_client import CoinGeckoClient, MarketQuote, PricePoint
from services.price_cache import JsonlPriceCache


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Probe MarketDataGateway caching against the CoinGecko API.")
    parser.add_argument("--symbol", action="append", dest="symbols", help="Symbol to price. Can be repeated (default: BTC, ETH).")
    parser.add_argument("--repeat", type=int, default=2, help="How many times to repeat the lookup (default: 2).")
    parser.add_argument("--history-days", type=int, default=0, help="Also fetch N days of history for the first symbol.")
    parser.add_argument(
        "--cache-dir",
        default=str(PROJECT_ROOT / ".cache" / "market_data_probe"),
        help="Directory to persist JsonlPriceCache data (default: .cache/market_data_probe).",
    )
    return parser.parse_args()


class LoggingCoinGeckoClient(CoinGeckoClient):
    def __init__(self, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(*args, **kwargs)
        self.fetch_count = 0

    def get_markets(self, symbols: Iterable[str], **kwargs) -> list[MarketQuote]:  # type: ignore[no-untyped-def, override]
        symbols = list(symbols)
        self.fetch_count += 1
        print(f"[source] fetch #{self.fetch_count} markets for {', '.join(symbols)}")
        return super().get_markets(symbols, **kwargs)

    def get_market_chart(self, coin_id: str, **kwargs) -> list[PricePoint]:  # type: ignore[no-untyped-def, override]
        self.fetch_count += 1
        print(f"[source] fetch #{self.fetch_count} market chart for {coin_id}")
        return super().get_market_chart(coin_id, **kwargs)


def main() -> None:
    args = parse_args()
    settings = config()
    symbols = args.symbols or ["BTC", "ETH"]
    client = LoggingCoinGeckoClient(base_url=settings.market_data_base_url, api_key=settings.market_data_api_key)
    gateway = MarketDataGateway(
        client,
        cache=JsonlPriceCache(root_dir=Path(args.cache_dir)),
        options=GatewayOptions.from_settings(settings),
    )

    for attempt in range(1, args.repeat + 1):
        lookup = gateway.lookup_prices(symbols)
        print(f"[probe] lookup #{attempt} stale={lookup.stale} fetched_at={lookup.fetched_at}")
        for symbol, price in lookup.prices.items():
            print(f"  {symbol}: {price}")
        if lookup.missing:
            print(f"  missing: {', '.join(lookup.missing)}")

    if args.history_days > 0:
        points = gateway.get_historical_prices(symbols[0], args.history_days)
        print(f"[probe] {len(points)} historical points for {symbols[0]}")
        for timestamp, price in points[-5:]:
            print(f"  {timestamp.isoformat()}: {price}")

    print(f"[probe] source fetches: {client.fetch_count}")
    print(f"[probe] gateway stats: {gateway.stats()}")


if __name__ == "__main__":
    main()
