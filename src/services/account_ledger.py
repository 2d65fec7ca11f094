from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Mapping

from db.ledger_store import SqlLedgerStore, StoredAccount
from domain.account_book import AccountBook
from domain.base_types import UserId
from domain.context import TradingContext
from domain.errors import ContextNotFoundError
from domain.holdings import DEFAULT_STARTING_BALANCE, AccountSnapshot, CombinedPnL, Holding
from domain.leaderboard import LeaderboardPeriod
from domain.trading import Transaction
from utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

_ZERO = Decimal(0)
_HUNDRED = Decimal(100)


class AccountLedger:
    """Single entry point for reading and mutating per-context balances.

    Every mutation of a context runs under that context's lock: the book is
    loaded, changed in memory and its persistence intents are written in one
    store transaction. Different contexts never wait on each other.
    """

    def __init__(
        self,
        store: SqlLedgerStore,
        *,
        starting_balance: Decimal = DEFAULT_STARTING_BALANCE,
        clock: Clock = utc_now,
    ) -> None:
        if starting_balance <= 0:
            msg = "starting_balance must be > 0"
            raise ValueError(msg)
        self.store = store
        self.starting_balance = starting_balance
        self._clock = clock
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, context: TradingContext) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(context.context_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[context.context_id] = lock
            return lock

    @contextmanager
    def unit_of_work(self, context: TradingContext) -> Iterator[AccountBook]:
        """Yield the context's book and persist its changes on a clean exit.

        An exception raised inside the block discards every in-memory change.
        """
        with self.lock_for(context):
            book = self._load_book(context)
            yield book
            if book.has_changes:
                self.store.apply_intents(book.pending_intents())

    def ensure_context(self, context: TradingContext) -> None:
        self.store.ensure_context(context)

    def get_snapshot(self, context: TradingContext) -> AccountSnapshot:
        with self.lock_for(context):
            return self._load_book(context).snapshot()

    def apply_holding_delta(
        self, context: TradingContext, symbol: str, amount_delta: Decimal, value_delta: Decimal
    ) -> Holding | None:
        with self.unit_of_work(context) as book:
            return book.apply_holding_delta(symbol, amount_delta, value_delta)

    def update_current_price(self, context: TradingContext, symbol: str, price: Decimal) -> Holding | None:
        with self.unit_of_work(context) as book:
            return book.update_current_price(symbol, price)

    def update_current_prices(self, context: TradingContext, prices: Mapping[str, Decimal]) -> int:
        """Revalue every holding of the context that has a price; returns the number of changed holdings."""
        with self.unit_of_work(context) as book:
            if not book.is_persisted:
                return 0
            changed = 0
            for holding in book.holdings():
                price = prices.get(holding.symbol)
                if price is None:
                    continue
                if book.update_current_price(holding.symbol, price) != holding:
                    changed += 1
            return changed

    def refresh_aggregates(self, context: TradingContext) -> AccountSnapshot:
        """Recompute the stored aggregates of a persisted context from its holdings."""
        with self.lock_for(context):
            book = self._load_book(context)
            if book.is_persisted:
                self.store.apply_intents(book.pending_intents())
            return book.snapshot()

    def list_contexts(self, user_id: str | None = None) -> list[TradingContext]:
        return self.store.list_contexts(user_id)

    def list_account_snapshots(
        self, period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME, *, now: datetime | None = None
    ) -> list[AccountSnapshot]:
        window_start = period.window_start(now or self._clock())
        snapshots: list[AccountSnapshot] = []
        for stored in self.store.list_accounts():
            if window_start is not None and (stored.last_activity_at is None or stored.last_activity_at < window_start):
                continue
            snapshots.append(self._to_book(stored).snapshot())
        return snapshots

    def list_transactions(
        self, context: TradingContext, *, symbol: str | None = None, limit: int | None = 50
    ) -> list[Transaction]:
        return self.store.list_transactions(context, symbol=symbol, limit=limit)

    def combined_pnl(self, user_id: str) -> CombinedPnL:
        individual = self.get_snapshot(TradingContext.individual(user_id))
        collections = [
            self.get_snapshot(context) for context in self.store.list_contexts(UserId(user_id)) if context.is_collection
        ]
        snapshots = [individual, *collections]
        total_pnl = sum((snapshot.total_pnl for snapshot in snapshots), start=_ZERO)
        total_starting = sum((snapshot.starting_balance for snapshot in snapshots), start=_ZERO)
        return CombinedPnL(
            individual=individual,
            collections=collections,
            total_pnl=total_pnl,
            total_starting_balance=total_starting,
            total_pnl_percentage=total_pnl / total_starting * _HUNDRED if total_starting > 0 else _ZERO,
        )

    def reset_context(self, context: TradingContext) -> None:
        with self.lock_for(context):
            self.store.delete_contexts([context])
        with self._locks_guard:
            self._locks.pop(context.context_id, None)
        logger.info("Reset ledger data of context %s", context.context_id)

    def reset_user(self, user_id: str) -> int:
        contexts = self.store.list_contexts(user_id)
        for context in contexts:
            self.reset_context(context)
        logger.info("Reset %d contexts of user %s", len(contexts), user_id)
        return len(contexts)

    def _load_book(self, context: TradingContext) -> AccountBook:
        try:
            stored = self.store.load_account(context)
        except ContextNotFoundError:
            logger.debug("No stored account for %s, using a fresh one", context.context_id)
            return AccountBook.fresh(context, starting_balance=self.starting_balance)
        return self._to_book(stored)

    @staticmethod
    def _to_book(stored: StoredAccount) -> AccountBook:
        return AccountBook(
            stored.context,
            starting_balance=stored.starting_balance,
            holdings=stored.holdings,
            version=stored.version,
            last_activity_at=stored.last_activity_at,
        )


__all__ = ["AccountLedger"]
