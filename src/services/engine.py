from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings, config
from db.db import init_db
from db.ledger_store import SqlLedgerStore
from utils.clock import Clock, Sleeper, sleep, utc_now

from .account_ledger import AccountLedger
from .events import EventBus
from .leaderboard import LeaderboardRanker
from .market_data import GatewayOptions, MarketDataGateway, MarketDataSource
from .market_data_client import CoinGeckoClient
from .price_cache import InMemoryPriceCache, JsonlPriceCache, PriceCache
from .reconciliation import ReconciliationScheduler, SchedulerOptions
from .trade_executor import TradeExecutor

logger = logging.getLogger(__name__)


@dataclass
class TradingEngine:
    """Process-scoped set of collaborators, wired once by the entry point."""

    settings: AppSettings
    store: SqlLedgerStore
    ledger: AccountLedger
    executor: TradeExecutor
    gateway: MarketDataGateway
    ranker: LeaderboardRanker
    scheduler: ReconciliationScheduler
    events: EventBus

    def close(self) -> None:
        self.scheduler.stop()


def build_engine(
    settings: AppSettings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    market_source: MarketDataSource | None = None,
    cache: PriceCache | None = None,
    clock: Clock = utc_now,
    sleeper: Sleeper = sleep,
) -> TradingEngine:
    settings = settings or config()
    session_factory = session_factory or init_db(settings.database_url)
    events = EventBus()

    store = SqlLedgerStore(session_factory, clock=clock)
    ledger = AccountLedger(store, starting_balance=settings.starting_balance, clock=clock)
    executor = TradeExecutor(ledger, clock=clock, events=events)

    if market_source is None:
        market_source = CoinGeckoClient(
            base_url=settings.market_data_base_url,
            api_key=settings.market_data_api_key,
            timeout=settings.request_timeout_ms / 1000,
        )
    if cache is None:
        cache = JsonlPriceCache(root_dir=Path(settings.price_cache_dir)) if settings.price_cache_dir else InMemoryPriceCache()
    gateway = MarketDataGateway(
        market_source,
        cache=cache,
        options=GatewayOptions.from_settings(settings),
        clock=clock,
        sleeper=sleeper,
    )

    ranker = LeaderboardRanker(ledger, store, clock=clock)
    scheduler = ReconciliationScheduler(
        ledger,
        gateway,
        ranker,
        options=SchedulerOptions.from_settings(settings),
        clock=clock,
        sleeper=sleeper,
        events=events,
    )
    logger.info("Trading engine ready (database %s)", settings.database_url)
    return TradingEngine(
        settings=settings,
        store=store,
        ledger=ledger,
        executor=executor,
        gateway=gateway,
        ranker=ranker,
        scheduler=scheduler,
        events=events,
    )


__all__ = ["TradingEngine", "build_engine"]
