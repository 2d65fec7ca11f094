import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from db import models
from db.ledger_store import SqlLedgerStore
from domain.context import TradingContext
from domain.errors import ContextNotFoundError, InsufficientBalanceError
from domain.leaderboard import LeaderboardPeriod
from domain.trading import TradeOrder, TradeType
from services.account_ledger import AccountLedger
from services.trade_executor import TradeExecutor
from tests.constants import ALICE, BOB, BTC, CLUB, ETH, STARTING_BALANCE, USDT
from tests.helpers.fake_clock import FakeClock


def _buy(executor: TradeExecutor, context: TradingContext, symbol: str, quantity: str, price: str) -> None:
    order = TradeOrder(type=TradeType.BUY, symbol=symbol, quantity=Decimal(quantity), price=Decimal(price))
    executor.execute_trade(order, context, context.user_id)


def test_snapshot_of_unknown_context_is_synthesized_without_writing(
    ledger: AccountLedger, store: SqlLedgerStore
) -> None:
    context = TradingContext.individual(ALICE)

    first = ledger.get_snapshot(context)
    second = ledger.get_snapshot(context)

    assert first == second
    assert first.usdt_balance == STARTING_BALANCE
    assert first.total_pnl == 0
    with pytest.raises(ContextNotFoundError):
        store.load_account(context)


def test_apply_holding_delta_persists_changes(ledger: AccountLedger, store: SqlLedgerStore) -> None:
    context = TradingContext.individual(ALICE)

    ledger.apply_holding_delta(context, USDT, Decimal("-3000"), Decimal("-3000"))
    holding = ledger.apply_holding_delta(context, ETH, Decimal("1"), Decimal("3000"))

    assert holding is not None
    assert holding.average_buy_price == Decimal("3000")
    snapshot = ledger.get_snapshot(context)
    assert snapshot.usdt_balance == Decimal("97000")
    assert snapshot.total_portfolio_value == STARTING_BALANCE
    assert store.load_account(context).version == 2


def test_failed_delta_writes_nothing(ledger: AccountLedger, store: SqlLedgerStore) -> None:
    context = TradingContext.individual(ALICE)

    with pytest.raises(InsufficientBalanceError):
        ledger.apply_holding_delta(context, USDT, Decimal("-200000"), Decimal("-200000"))

    with pytest.raises(ContextNotFoundError):
        store.load_account(context)


def test_update_current_price_keeps_amount_and_cost(ledger: AccountLedger, executor: TradeExecutor) -> None:
    context = TradingContext.individual(ALICE)
    _buy(executor, context, BTC, "1", "50000")

    holding = ledger.update_current_price(context, BTC, Decimal("60000"))

    assert holding is not None
    assert holding.amount == Decimal("1")
    assert holding.average_buy_price == Decimal("50000")
    assert holding.profit_loss_percentage == Decimal("20")
    snapshot = ledger.get_snapshot(context)
    assert snapshot.total_portfolio_value == Decimal("110000")
    assert snapshot.total_pnl == Decimal("10000")
    assert snapshot.total_pnl_percentage == Decimal("10")


def test_update_current_prices_skips_missing_symbols(ledger: AccountLedger, executor: TradeExecutor) -> None:
    context = TradingContext.individual(ALICE)
    _buy(executor, context, BTC, "1", "50000")
    _buy(executor, context, ETH, "2", "3000")

    changed = ledger.update_current_prices(context, {BTC: Decimal("51000")})

    snapshot = ledger.get_snapshot(context)
    assert changed == 1
    assert snapshot.holding(BTC).current_price == Decimal("51000")  # type: ignore[union-attr]
    assert snapshot.holding(ETH).current_price == Decimal("3000")  # type: ignore[union-attr]


def test_update_current_prices_ignores_unknown_context(ledger: AccountLedger, store: SqlLedgerStore) -> None:
    context = TradingContext.individual(ALICE)

    assert ledger.update_current_prices(context, {BTC: Decimal("1")}) == 0
    with pytest.raises(ContextNotFoundError):
        store.load_account(context)


def test_concurrent_deltas_on_one_context_are_serialized(ledger: AccountLedger, store: SqlLedgerStore) -> None:
    context = TradingContext.individual(ALICE)
    ledger.apply_holding_delta(context, USDT, Decimal("-1"), Decimal("-1"))
    errors: list[BaseException] = []

    def worker() -> None:
        try:
            for _ in range(10):
                ledger.apply_holding_delta(context, USDT, Decimal("-10"), Decimal("-10"))
                ledger.apply_holding_delta(context, BTC, Decimal("0.001"), Decimal("10"))
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    snapshot = ledger.get_snapshot(context)
    assert snapshot.usdt_balance == STARTING_BALANCE - Decimal("401")
    assert snapshot.holding(BTC).amount == Decimal("0.040")  # type: ignore[union-attr]
    assert store.load_account(context).version == 81


def test_refresh_aggregates_stores_derived_totals(
    ledger: AccountLedger, executor: TradeExecutor, test_session: Session
) -> None:
    context = TradingContext.individual(ALICE)
    _buy(executor, context, BTC, "1", "50000")
    ledger.update_current_price(context, BTC, Decimal("45000"))

    snapshot = ledger.refresh_aggregates(context)

    row = test_session.get(models.AccountOrm, context.context_id)
    assert row.total_portfolio_value == snapshot.total_portfolio_value == Decimal("95000")
    assert row.total_pnl == Decimal("-5000")


def test_list_account_snapshots_filters_by_activity(
    ledger: AccountLedger, executor: TradeExecutor, clock: FakeClock
) -> None:
    _buy(executor, TradingContext.individual(ALICE), BTC, "0.1", "50000")
    clock.advance(days=10)
    _buy(executor, TradingContext.individual(BOB), ETH, "1", "3000")

    weekly = ledger.list_account_snapshots(LeaderboardPeriod.WEEKLY)
    monthly = ledger.list_account_snapshots(LeaderboardPeriod.MONTHLY)
    all_time = ledger.list_account_snapshots()

    assert [snapshot.context.user_id for snapshot in weekly] == [BOB]
    assert {snapshot.context.user_id for snapshot in monthly} == {ALICE, BOB}
    assert len(all_time) == 2
    assert ledger.list_account_snapshots(LeaderboardPeriod.MONTHLY, now=clock() + timedelta(days=60)) == []


def test_combined_pnl_spans_individual_and_collections(
    ledger: AccountLedger, executor: TradeExecutor
) -> None:
    individual = TradingContext.individual(ALICE)
    club = TradingContext.collection(ALICE, CLUB)
    _buy(executor, individual, BTC, "1", "50000")
    _buy(executor, club, ETH, "10", "3000")
    ledger.update_current_price(individual, BTC, Decimal("55000"))
    ledger.update_current_price(club, ETH, Decimal("2500"))

    combined = ledger.combined_pnl(ALICE)

    assert combined.individual.total_pnl == Decimal("5000")
    assert [snapshot.context for snapshot in combined.collections] == [club]
    assert combined.total_pnl == Decimal("0")
    assert combined.total_starting_balance == STARTING_BALANCE * 2


def test_list_transactions_defaults_to_latest_fifty(
    ledger: AccountLedger, executor: TradeExecutor, clock: FakeClock
) -> None:
    context = TradingContext.individual(ALICE)
    for _ in range(55):
        clock.advance(seconds=1)
        _buy(executor, context, ETH, "0.01", "3000")

    transactions = ledger.list_transactions(context)

    assert len(transactions) == 50
    assert transactions[0].timestamp == clock()


def test_reset_user_removes_every_context(ledger: AccountLedger, executor: TradeExecutor, store: SqlLedgerStore) -> None:
    _buy(executor, TradingContext.individual(ALICE), BTC, "0.1", "50000")
    _buy(executor, TradingContext.collection(ALICE, CLUB), BTC, "0.1", "50000")
    _buy(executor, TradingContext.individual(BOB), BTC, "0.1", "50000")

    assert ledger.reset_user(ALICE) == 2

    assert store.list_contexts() == [TradingContext.individual(BOB)]
    assert ledger.list_transactions(TradingContext.individual(ALICE)) == []
    assert ledger.get_snapshot(TradingContext.individual(ALICE)).usdt_balance == STARTING_BALANCE


def test_reset_context_releases_its_lock(ledger: AccountLedger, executor: TradeExecutor) -> None:
    context = TradingContext.individual(ALICE)
    _buy(executor, context, BTC, "0.1", "50000")
    lock = ledger.lock_for(context)
    assert ledger.lock_for(context) is lock

    ledger.reset_context(context)

    assert ledger.lock_for(context) is not lock
