from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from db import models
from db.repositories import (
    AccountRepository,
    CollectionMemberRepository,
    HoldingRepository,
    LeaderboardRepository,
    StoredHolding,
    TransactionRepository,
    UserRepository,
    ensure_utc,
)
from domain.context import ContextKind, TradingContext
from domain.errors import ContextNotFoundError, StoreConflictError
from domain.holdings import Holding, is_valid_symbol
from domain.intents import AppendTransaction, DeleteHolding, PersistenceIntent, UpsertAccount, UpsertHolding
from domain.leaderboard import LeaderboardEntry, LeaderboardPeriod
from domain.trading import Transaction
from utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredAccount:
    context: TradingContext
    starting_balance: Decimal
    version: int
    last_activity_at: datetime | None
    holdings: list[Holding]


@dataclass(frozen=True)
class CleanupReport:
    invalid_symbol_holdings: int = 0
    orphaned_holdings: int = 0
    orphaned_accounts: int = 0
    orphaned_transactions: int = 0
    orphaned_rankings: int = 0

    @property
    def total(self) -> int:
        return (
            self.invalid_symbol_holdings
            + self.orphaned_holdings
            + self.orphaned_accounts
            + self.orphaned_transactions
            + self.orphaned_rankings
        )


class SqlLedgerStore:
    """Durable storage of accounts, holdings and transactions keyed by context id.

    Each call runs in its own session and database transaction. Access is
    serialized, which gives every row at least read-committed isolation even
    on a single shared SQLite connection.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, clock: Clock = utc_now) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._lock = threading.RLock()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._lock, self._session_factory() as session, session.begin():
            yield session

    def load_account(self, context: TradingContext) -> StoredAccount:
        context_id = context.context_id
        with self._transaction() as session:
            row = AccountRepository(session).get(context_id)
            if row is None:
                raise ContextNotFoundError(context_id)
            holdings = HoldingRepository(session).list_for_context(context_id)
            return self._to_stored(row, holdings)

    def list_accounts(self) -> list[StoredAccount]:
        with self._transaction() as session:
            holdings = HoldingRepository(session).list_by_context()
            return [self._to_stored(row, holdings.get(row.context_id, [])) for row in AccountRepository(session).list()]

    def list_contexts(self, user_id: str | None = None) -> list[TradingContext]:
        with self._transaction() as session:
            accounts = AccountRepository(session)
            rows = accounts.list() if user_id is None else accounts.list_for_user(user_id)
            return [AccountRepository.to_context(row) for row in rows]

    def list_stored_holdings(self) -> list[StoredHolding]:
        with self._transaction() as session:
            return HoldingRepository(session).list_stored()

    def apply_intents(self, intents: Sequence[PersistenceIntent]) -> None:
        """Write every intent in one database transaction, or none of them."""
        if not intents:
            return
        now = self._clock()
        context_id = self._context_of(intents)
        try:
            with self._transaction() as session:
                holdings = HoldingRepository(session)
                accounts = AccountRepository(session)
                transactions = TransactionRepository(session)
                for intent in intents:
                    if isinstance(intent, UpsertHolding):
                        holdings.upsert(intent.context_id, intent.holding, now=now)
                    elif isinstance(intent, DeleteHolding):
                        holdings.delete(intent.context_id, intent.symbol)
                    elif isinstance(intent, AppendTransaction):
                        transactions.create(intent.transaction)
                    elif isinstance(intent, UpsertAccount):
                        accounts.upsert(intent, now=now)
                    else:
                        raise TypeError(f"Unsupported persistence intent: {intent!r}")
        except IntegrityError as exc:
            raise StoreConflictError(context_id, f"Conflicting write for context={context_id}: {exc.orig}") from exc

    def ensure_user(self, user_id: str) -> bool:
        with self._transaction() as session:
            return UserRepository(session).ensure(user_id, now=self._clock())

    def ensure_context(self, context: TradingContext) -> None:
        """Register the user and, for collections, the membership behind a context."""
        now = self._clock()
        with self._transaction() as session:
            created = UserRepository(session).ensure(context.user_id, now=now)
            if created:
                logger.info("Registered user %s", context.user_id)
            if context.kind == ContextKind.COLLECTION and context.collection_id is not None:
                if CollectionMemberRepository(session).ensure(context.collection_id, context.user_id, now=now):
                    logger.info("Registered user %s in collection %s", context.user_id, context.collection_id)

    def list_transactions(
        self, context: TradingContext, *, symbol: str | None = None, limit: int | None = None
    ) -> list[Transaction]:
        with self._transaction() as session:
            return TransactionRepository(session).list_for_context(context.context_id, symbol=symbol, limit=limit)

    def count_transactions(self, context: TradingContext) -> int:
        with self._transaction() as session:
            return TransactionRepository(session).count_for_context(context.context_id)

    def replace_rankings(self, period: LeaderboardPeriod, entries: Iterable[LeaderboardEntry]) -> None:
        with self._transaction() as session:
            LeaderboardRepository(session).replace(period, entries)

    def list_rankings(
        self, period: LeaderboardPeriod, *, collection_id: str | None = None, limit: int | None = None
    ) -> list[LeaderboardEntry]:
        with self._transaction() as session:
            return LeaderboardRepository(session).list(period, collection_id=collection_id, limit=limit)

    def delete_contexts(self, contexts: Iterable[TradingContext]) -> None:
        """Explicit data reset: the only path that removes transactions."""
        context_ids = [context.context_id for context in contexts]
        with self._transaction() as session:
            HoldingRepository(session).delete_for_contexts(context_ids)
            TransactionRepository(session).delete_for_contexts(context_ids)
            AccountRepository(session).delete(context_ids)

    def delete_invalid_holdings(self) -> int:
        with self._transaction() as session:
            repo = HoldingRepository(session)
            invalid = [stored.id for stored in repo.list_stored() if not is_valid_symbol(stored.symbol)]
            return repo.delete_ids(invalid)

    def delete_orphans(self) -> CleanupReport:
        """Remove rows left behind by partially completed account deletions.

        Account rows register their owner when first written, so a context whose
        user or collection membership is gone belongs to a deleted account.
        """
        with self._transaction() as session:
            user_ids = UserRepository(session).list_ids()
            memberships = CollectionMemberRepository(session).list_pairs()
            accounts = AccountRepository(session)
            holdings = HoldingRepository(session)

            orphaned_contexts: list[str] = []
            live_contexts: set[str] = set()
            for row in accounts.list():
                if row.user_id not in user_ids:
                    orphaned_contexts.append(row.context_id)
                elif row.kind == ContextKind.COLLECTION.value and (row.collection_id, row.user_id) not in memberships:
                    orphaned_contexts.append(row.context_id)
                else:
                    live_contexts.add(row.context_id)

            contextless = {stored.context_id for stored in holdings.list_stored() if stored.context_id not in live_contexts}
            orphaned_holdings = holdings.delete_for_contexts(contextless | set(orphaned_contexts))
            orphaned_accounts = accounts.delete(orphaned_contexts)

            orphaned_transactions = TransactionRepository(session).delete_for_missing_users(user_ids)
            orphaned_rankings = LeaderboardRepository(session).delete_for_missing_users(user_ids)

        return CleanupReport(
            orphaned_holdings=orphaned_holdings,
            orphaned_accounts=orphaned_accounts,
            orphaned_transactions=orphaned_transactions,
            orphaned_rankings=orphaned_rankings,
        )

    @staticmethod
    def _to_stored(row: models.AccountOrm, holdings: list[Holding]) -> StoredAccount:
        return StoredAccount(
            context=AccountRepository.to_context(row),
            starting_balance=row.starting_balance,
            version=row.version,
            last_activity_at=ensure_utc(row.last_activity_at),
            holdings=holdings,
        )

    @staticmethod
    def _context_of(intents: Sequence[PersistenceIntent]) -> str:
        for intent in intents:
            if isinstance(intent, UpsertAccount):
                return intent.context.context_id
            if isinstance(intent, AppendTransaction):
                return intent.transaction.context.context_id
            return intent.context_id
        return ""
