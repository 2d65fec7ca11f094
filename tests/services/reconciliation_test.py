import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from db.repositories import CollectionMemberRepository, UserRepository
from domain.context import TradingContext
from domain.errors import StoreConflictError
from domain.trading import TradeOrder, TradeType
from services.account_ledger import AccountLedger
from services.events import EventBus, ReconciliationFinished
from services.leaderboard import LeaderboardRanker
from services.market_data import MarketDataGateway
from services.market_data_client import MarketDataAPIError
from services.reconciliation import ReconciliationScheduler, SyncState
from services.trade_executor import TradeExecutor
from tests.constants import ALICE, BOB, BTC, CLUB, ETH, USDT
from tests.helpers.fake_clock import FakeClock
from tests.helpers.stub_market import StubMarketSource

ALICE_INDIVIDUAL = TradingContext.individual(ALICE)
BOB_INDIVIDUAL = TradingContext.individual(BOB)


@pytest.fixture()
def portfolios(executor: TradeExecutor) -> None:
    executor.execute_trade(
        TradeOrder(type=TradeType.BUY, symbol=BTC, quantity=Decimal("1"), price=Decimal("50000")), ALICE_INDIVIDUAL, ALICE
    )
    executor.execute_trade(
        TradeOrder(type=TradeType.BUY, symbol=ETH, quantity=Decimal("2"), price=Decimal("2500")), BOB_INDIVIDUAL, BOB
    )


def _price(ledger: AccountLedger, context: TradingContext, symbol: str) -> Decimal:
    holding = ledger.get_snapshot(context).holding(symbol)
    assert holding is not None
    return holding.current_price


@pytest.mark.usefixtures("portfolios")
def test_pass_revalues_holdings_and_ranks(
    scheduler: ReconciliationScheduler, ledger: AccountLedger, ranker: LeaderboardRanker
) -> None:
    report = scheduler.trigger()

    assert report is not None
    assert report.ok
    assert report.attempts == 1
    assert report.updated_holdings == 2
    assert [step.name for step in report.steps] == [
        "fetch_prices",
        "update_prices",
        "refresh_aggregates",
        "leaderboard",
        "cleanup",
    ]
    assert _price(ledger, ALICE_INDIVIDUAL, BTC) == Decimal("60000")
    assert _price(ledger, BOB_INDIVIDUAL, ETH) == Decimal("3000")
    assert ledger.get_snapshot(ALICE_INDIVIDUAL).total_pnl == Decimal("10000")
    assert [entry.user_id for entry in ranker.get_leaderboard()] == [ALICE, BOB]

    status = scheduler.status()
    assert status.last_result == SyncState.SUCCESS
    assert status.state == SyncState.IDLE
    assert status.sync_count == 1
    assert status.last_sync_at == report.finished_at
    assert not status.data_may_be_stale


@pytest.mark.usefixtures("portfolios")
def test_pass_uses_stale_prices_when_provider_fails(
    scheduler: ReconciliationScheduler,
    gateway: MarketDataGateway,
    market_source: StubMarketSource,
    ledger: AccountLedger,
    clock: FakeClock,
) -> None:
    gateway.get_prices([BTC, ETH])
    clock.advance(minutes=45)
    market_source.fail_always = MarketDataAPIError("provider down", status_code=502)

    report = scheduler.trigger()

    assert report is not None
    assert report.ok
    assert report.prices_stale
    assert _price(ledger, ALICE_INDIVIDUAL, BTC) == Decimal("60000")
    holding = ledger.get_snapshot(BOB_INDIVIDUAL).holding(ETH)
    assert holding is not None
    assert holding.profit_loss == Decimal("1000")
    assert holding.value_in_usd == Decimal("6000")


@pytest.mark.usefixtures("portfolios")
def test_failed_pass_is_retried_then_marked_failed(
    scheduler: ReconciliationScheduler,
    market_source: StubMarketSource,
    ledger: AccountLedger,
    clock: FakeClock,
) -> None:
    market_source.fail_always = MarketDataAPIError("provider down", status_code=500)
    before = ledger.get_snapshot(ALICE_INDIVIDUAL)

    report = scheduler.trigger()

    assert report is not None
    assert not report.ok
    assert report.attempts == 3
    assert clock.sleeps.count(5.0) == 2
    assert not report.step("fetch_prices").ok  # type: ignore[union-attr]
    assert report.step("update_prices").skipped  # type: ignore[union-attr]
    assert report.step("cleanup").ok  # type: ignore[union-attr]
    assert ledger.get_snapshot(ALICE_INDIVIDUAL).holdings == before.holdings

    status = scheduler.status()
    assert status.last_result == SyncState.FAILED
    assert status.error_count == 1
    assert status.consecutive_failures == 1
    assert status.last_error is not None and status.last_error.startswith("fetch_prices")


@pytest.mark.usefixtures("portfolios")
def test_repeated_failures_flag_stale_data_until_success(
    scheduler: ReconciliationScheduler, market_source: StubMarketSource
) -> None:
    scheduler.update_options(retry_attempts=0)
    market_source.fail_always = MarketDataAPIError("provider down")

    for _ in range(3):
        scheduler.trigger()
    assert scheduler.status().data_may_be_stale

    market_source.fail_always = None
    scheduler.trigger()

    status = scheduler.status()
    assert not status.data_may_be_stale
    assert status.consecutive_failures == 0
    assert status.error_count == 3
    assert status.sync_count == 4
    assert status.last_error is None


@pytest.mark.usefixtures("portfolios")
def test_context_failure_does_not_stop_other_updates(
    scheduler: ReconciliationScheduler, ledger: AccountLedger, monkeypatch: pytest.MonkeyPatch
) -> None:
    original = ledger.update_current_prices

    def flaky(context: TradingContext, prices: dict[str, Decimal]) -> int:
        if context == BOB_INDIVIDUAL:
            raise StoreConflictError(context.context_id)
        return original(context, prices)

    monkeypatch.setattr(ledger, "update_current_prices", flaky)

    report = scheduler.trigger()

    assert report is not None
    assert not report.ok
    update = report.step("update_prices")
    assert update is not None and not update.ok
    assert BOB_INDIVIDUAL.context_id in (update.error or "")
    assert report.step("refresh_aggregates").ok  # type: ignore[union-attr]
    assert _price(ledger, ALICE_INDIVIDUAL, BTC) == Decimal("60000")
    assert _price(ledger, BOB_INDIVIDUAL, ETH) == Decimal("2500")


@pytest.mark.usefixtures("portfolios")
def test_trigger_while_running_is_dropped(
    scheduler: ReconciliationScheduler, market_source: StubMarketSource
) -> None:
    market_source.gate = threading.Event()
    reports = []
    runner = threading.Thread(target=lambda: reports.append(scheduler.trigger()))
    runner.start()
    deadline = time.monotonic() + 5
    while not market_source.market_calls and time.monotonic() < deadline:
        time.sleep(0.01)

    assert scheduler.trigger() is None
    assert scheduler.status().is_running

    market_source.gate.set()
    runner.join()
    assert reports[0] is not None and reports[0].ok
    assert scheduler.status().sync_count == 1


@pytest.mark.usefixtures("portfolios")
def test_leaderboard_respects_cooldown(
    scheduler: ReconciliationScheduler, clock: FakeClock
) -> None:
    first = scheduler.trigger()
    second = scheduler.trigger()
    clock.advance(seconds=61)
    third = scheduler.trigger()

    assert not first.step("leaderboard").skipped  # type: ignore[union-attr]
    assert second.step("leaderboard").skipped  # type: ignore[union-attr]
    assert not third.step("leaderboard").skipped  # type: ignore[union-attr]


@pytest.mark.usefixtures("portfolios")
def test_cleanup_removes_accounts_of_deleted_users(
    scheduler: ReconciliationScheduler, ledger: AccountLedger, executor: TradeExecutor, test_session: Session
) -> None:
    bob_club = TradingContext.collection(BOB, CLUB)
    executor.execute_trade(
        TradeOrder(type=TradeType.BUY, symbol=BTC, quantity=Decimal("0.1"), price=Decimal("50000")), bob_club, BOB
    )
    # account deletion that stopped after removing the user and membership rows
    UserRepository(test_session).delete(BOB)
    CollectionMemberRepository(test_session).delete(CLUB, BOB)
    test_session.commit()

    report = scheduler.trigger()

    assert report is not None and report.ok
    assert ledger.list_contexts() == [ALICE_INDIVIDUAL]
    assert ledger.list_transactions(BOB_INDIVIDUAL) == []
    assert ledger.list_transactions(bob_club) == []
    assert len(ledger.list_transactions(ALICE_INDIVIDUAL)) == 1


def test_cleanup_keeps_contexts_traded_without_registration(
    scheduler: ReconciliationScheduler, ledger: AccountLedger, executor: TradeExecutor
) -> None:
    executor.execute_trade(
        TradeOrder(type=TradeType.BUY, symbol=BTC, quantity=Decimal("1"), price=Decimal("50000")), ALICE_INDIVIDUAL, ALICE
    )
    executor.execute(TradeOrder(type=TradeType.BUY, symbol=ETH, quantity=Decimal("2"), price=Decimal("2500")), BOB_INDIVIDUAL)
    bob_club = TradingContext.collection(BOB, CLUB)
    ledger.apply_holding_delta(bob_club, USDT, Decimal("-10"), Decimal("-10"))

    report = scheduler.trigger()

    assert report is not None and report.ok
    assert ledger.get_snapshot(BOB_INDIVIDUAL).usdt_balance == Decimal("95000")
    assert len(ledger.list_transactions(BOB_INDIVIDUAL)) == 1
    assert set(ledger.list_contexts()) == {ALICE_INDIVIDUAL, BOB_INDIVIDUAL, bob_club}


def test_pass_without_accounts_succeeds(scheduler: ReconciliationScheduler, market_source: StubMarketSource) -> None:
    report = scheduler.trigger()

    assert report is not None and report.ok
    assert market_source.market_calls == []


def test_finished_pass_is_published(scheduler: ReconciliationScheduler, events: EventBus) -> None:
    finished: list[ReconciliationFinished] = []
    events.subscribe(ReconciliationFinished, finished.append)

    report = scheduler.trigger()

    assert [event.report for event in finished] == [report]


def test_start_and_stop_are_idempotent(scheduler: ReconciliationScheduler) -> None:
    scheduler.update_options(interval=timedelta(hours=1))

    assert scheduler.start()
    assert not scheduler.start()
    deadline = time.monotonic() + 5
    while scheduler.status().sync_count == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop()
    scheduler.stop()

    assert not scheduler.is_started
    assert scheduler.status().sync_count == 1

    assert scheduler.start()
    scheduler.stop()
    assert not scheduler.is_started


def test_update_options_validates(scheduler: ReconciliationScheduler) -> None:
    with pytest.raises(ValueError):
        scheduler.update_options(max_concurrent_updates=0)

    assert scheduler.update_options(retry_attempts=1).retry_attempts == 1
