from datetime import datetime, timezone
from decimal import Decimal

import pytest

from domain.context import TradingContext
from domain.holdings import AccountSnapshot, Holding
from domain.leaderboard import LeaderboardPeriod
from domain.trading import TradeOrder, TradeType
from services.account_ledger import AccountLedger
from services.leaderboard import LeaderboardRanker, rank_snapshots
from services.trade_executor import TradeExecutor
from tests.constants import ALICE, BOB, BTC, CAROL, CLUB, ETH, STARTING_BALANCE
from tests.helpers.fake_clock import FakeClock

COMPUTED_AT = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _snapshot(context: TradingContext, reserve: str) -> AccountSnapshot:
    return AccountSnapshot.from_holdings(
        context,
        starting_balance=STARTING_BALANCE,
        reserve=Holding.reserve(Decimal(reserve)),
        holdings=[],
    )


def _trade(executor: TradeExecutor, context: TradingContext, side: TradeType, symbol: str, quantity: str, price: str) -> None:
    order = TradeOrder(type=side, symbol=symbol, quantity=Decimal(quantity), price=Decimal(price))
    executor.execute_trade(order, context, context.user_id)


def test_rank_orders_by_pnl_then_value_then_user() -> None:
    snapshots = [
        _snapshot(TradingContext.individual(CAROL), "100500"),
        _snapshot(TradingContext.individual(BOB), "100500"),
        _snapshot(TradingContext.individual(ALICE), "99000"),
        _snapshot(TradingContext.individual("dave"), "120000"),
    ]

    entries = rank_snapshots(LeaderboardPeriod.ALL_TIME, snapshots, computed_at=COMPUTED_AT)

    assert [(entry.rank, entry.user_id) for entry in entries] == [(1, "dave"), (2, BOB), (3, CAROL), (4, ALICE)]
    assert entries[0].total_pnl == Decimal("20000")
    assert entries[0].total_pnl_percentage == Decimal("20")


def test_collections_are_ranked_separately() -> None:
    snapshots = [
        _snapshot(TradingContext.individual(ALICE), "101000"),
        _snapshot(TradingContext.collection(ALICE, CLUB), "90000"),
        _snapshot(TradingContext.collection(BOB, CLUB), "95000"),
    ]

    entries = rank_snapshots(LeaderboardPeriod.WEEKLY, snapshots, computed_at=COMPUTED_AT)

    boards = {(entry.collection_id, entry.user_id): entry.rank for entry in entries}
    assert boards == {(None, ALICE): 1, (CLUB, BOB): 1, (CLUB, ALICE): 2}


@pytest.fixture()
def traded(executor: TradeExecutor, ledger: AccountLedger, clock: FakeClock) -> None:
    _trade(executor, TradingContext.individual(ALICE), TradeType.BUY, BTC, "1", "50000")
    ledger.update_current_price(TradingContext.individual(ALICE), BTC, Decimal("55000"))
    _trade(executor, TradingContext.collection(ALICE, CLUB), TradeType.BUY, ETH, "1", "3000")
    clock.advance(days=20)
    _trade(executor, TradingContext.individual(BOB), TradeType.BUY, ETH, "10", "3000")
    ledger.update_current_price(TradingContext.individual(BOB), ETH, Decimal("2000"))


@pytest.mark.usefixtures("traded")
def test_recompute_stores_every_period(ranker: LeaderboardRanker) -> None:
    counts = ranker.recompute()

    assert counts == {
        LeaderboardPeriod.WEEKLY: 1,
        LeaderboardPeriod.MONTHLY: 3,
        LeaderboardPeriod.ALL_TIME: 3,
    }
    assert [entry.user_id for entry in ranker.get_leaderboard(LeaderboardPeriod.WEEKLY)] == [BOB]
    assert [entry.user_id for entry in ranker.get_leaderboard()] == [ALICE, BOB]
    assert [entry.user_id for entry in ranker.get_leaderboard(collection_id=CLUB)] == [ALICE]


@pytest.mark.usefixtures("traded")
def test_user_rank_and_stats(ranker: LeaderboardRanker) -> None:
    ranker.recompute()

    bob = ranker.get_user_rank(BOB)
    stats = ranker.get_stats()

    assert bob is not None
    assert bob.rank == 2
    assert bob.total_pnl == Decimal("-10000")
    assert ranker.get_user_rank(CAROL) is None
    assert stats.participants == 2
    assert stats.top_performer is not None and stats.top_performer.user_id == ALICE
    assert stats.average_pnl == Decimal("-2500")


def test_stats_of_empty_board(ranker: LeaderboardRanker) -> None:
    stats = ranker.get_stats(LeaderboardPeriod.MONTHLY, collection_id=CLUB)

    assert stats.participants == 0
    assert stats.top_performer is None
    assert stats.average_pnl == 0


@pytest.mark.usefixtures("traded")
def test_get_leaderboard_limit(ranker: LeaderboardRanker) -> None:
    ranker.recompute()

    assert len(ranker.get_leaderboard(limit=1)) == 1
