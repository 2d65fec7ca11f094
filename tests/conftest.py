from decimal import Decimal
from typing import Generator

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from db.db import create_db_engine
from db.ledger_store import SqlLedgerStore
from db.models import Base
from services.account_ledger import AccountLedger
from services.events import EventBus
from services.leaderboard import LeaderboardRanker
from services.market_data import GatewayOptions, MarketDataGateway
from services.reconciliation import ReconciliationScheduler, SchedulerOptions
from services.trade_executor import TradeExecutor
from tests.constants import BTC, ETH, STARTING_BALANCE
from tests.helpers.fake_clock import FakeClock
from tests.helpers.stub_market import StubMarketSource

engine: Engine = create_db_engine("sqlite:///:memory:")
session_factory = sessionmaker(engine)


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def events() -> EventBus:
    return EventBus()


@pytest.fixture(scope="function")
def store(clock: FakeClock) -> SqlLedgerStore:
    return SqlLedgerStore(session_factory, clock=clock)


@pytest.fixture(scope="function")
def ledger(store: SqlLedgerStore, clock: FakeClock) -> AccountLedger:
    return AccountLedger(store, starting_balance=STARTING_BALANCE, clock=clock)


@pytest.fixture(scope="function")
def executor(ledger: AccountLedger, clock: FakeClock, events: EventBus) -> TradeExecutor:
    return TradeExecutor(ledger, clock=clock, events=events)


@pytest.fixture(scope="function")
def market_source() -> StubMarketSource:
    return StubMarketSource({BTC: "60000", ETH: "3000"})


@pytest.fixture(scope="function")
def gateway_options() -> GatewayOptions:
    return GatewayOptions(retry_attempts=2, rate_limit_per_minute=30, backoff_base_seconds=1.0)


@pytest.fixture(scope="function")
def gateway(market_source: StubMarketSource, gateway_options: GatewayOptions, clock: FakeClock) -> MarketDataGateway:
    return MarketDataGateway(market_source, options=gateway_options, clock=clock, sleeper=clock.sleep)


@pytest.fixture(scope="function")
def ranker(ledger: AccountLedger, store: SqlLedgerStore, clock: FakeClock) -> LeaderboardRanker:
    return LeaderboardRanker(ledger, store, clock=clock)


@pytest.fixture(scope="function")
def scheduler(
    ledger: AccountLedger,
    gateway: MarketDataGateway,
    ranker: LeaderboardRanker,
    clock: FakeClock,
    events: EventBus,
) -> ReconciliationScheduler:
    options = SchedulerOptions(retry_attempts=2, max_concurrent_updates=2)
    return ReconciliationScheduler(ledger, gateway, ranker, options=options, clock=clock, sleeper=clock.sleep, events=events)
