from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from db import models
from domain.base_types import CollectionId, TransactionId, UserId
from domain.context import ContextKind, TradingContext
from domain.errors import StoreConflictError
from domain.holdings import Holding
from domain.intents import UpsertAccount
from domain.leaderboard import LeaderboardEntry, LeaderboardPeriod
from domain.trading import OrderType, TradeType, Transaction


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class StoredHolding:
    """Raw holding row, including rows that no longer form a valid holding."""

    id: UUID
    context_id: str
    symbol: str | None


class UserRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def ensure(self, user_id: str, *, now: datetime) -> bool:
        if self._session.get(models.UserOrm, user_id) is not None:
            return False
        self._session.add(models.UserOrm(id=user_id, created_at=now))
        self._session.flush()
        return True

    def exists(self, user_id: str) -> bool:
        return self._session.get(models.UserOrm, user_id) is not None

    def list_ids(self) -> set[str]:
        return set(self._session.scalars(select(models.UserOrm.id)))

    def delete(self, user_id: str) -> None:
        self._session.execute(delete(models.UserOrm).where(models.UserOrm.id == user_id))


class CollectionMemberRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def ensure(self, collection_id: str, user_id: str, *, now: datetime) -> bool:
        if self.exists(collection_id, user_id):
            return False
        self._session.add(models.CollectionMemberOrm(collection_id=collection_id, user_id=user_id, joined_at=now))
        self._session.flush()
        return True

    def exists(self, collection_id: str, user_id: str) -> bool:
        stmt = select(models.CollectionMemberOrm.id).where(
            models.CollectionMemberOrm.collection_id == collection_id,
            models.CollectionMemberOrm.user_id == user_id,
        )
        return self._session.scalar(stmt) is not None

    def list_pairs(self) -> set[tuple[str, str]]:
        stmt = select(models.CollectionMemberOrm.collection_id, models.CollectionMemberOrm.user_id)
        return {(collection_id, user_id) for collection_id, user_id in self._session.execute(stmt)}

    def delete(self, collection_id: str, user_id: str) -> None:
        self._session.execute(
            delete(models.CollectionMemberOrm).where(
                models.CollectionMemberOrm.collection_id == collection_id,
                models.CollectionMemberOrm.user_id == user_id,
            )
        )

    def delete_for_user(self, user_id: str) -> None:
        self._session.execute(delete(models.CollectionMemberOrm).where(models.CollectionMemberOrm.user_id == user_id))


class AccountRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, context_id: str) -> models.AccountOrm | None:
        return self._session.get(models.AccountOrm, context_id)

    def list(self) -> list[models.AccountOrm]:
        return list(self._session.scalars(select(models.AccountOrm).order_by(models.AccountOrm.context_id)))

    def list_for_user(self, user_id: str) -> list[models.AccountOrm]:
        stmt = select(models.AccountOrm).where(models.AccountOrm.user_id == user_id).order_by(models.AccountOrm.context_id)
        return list(self._session.scalars(stmt))

    def upsert(self, intent: UpsertAccount, *, now: datetime) -> None:
        context_id = intent.context.context_id
        row = self.get(context_id)
        if row is None:
            if intent.expected_version is not None:
                raise StoreConflictError(context_id, f"Account {context_id} was removed concurrently")
            self._register_owner(intent.context, now=now)
            row = models.AccountOrm(
                context_id=context_id,
                kind=intent.context.kind.value,
                user_id=intent.context.user_id,
                collection_id=intent.context.collection_id,
                starting_balance=intent.starting_balance,
                version=0,
                created_at=now,
            )
            self._session.add(row)
        elif row.version != intent.expected_version:
            raise StoreConflictError(
                context_id,
                f"Account {context_id} changed concurrently: expected version {intent.expected_version}, found {row.version}",
            )

        row.usdt_balance = intent.usdt_balance
        row.total_portfolio_value = intent.total_portfolio_value
        row.total_pnl = intent.total_pnl
        row.total_pnl_percentage = intent.total_pnl_percentage
        row.last_activity_at = intent.last_activity_at
        row.updated_at = now
        row.version = row.version + 1
        self._session.flush()

    def _register_owner(self, context: TradingContext, *, now: datetime) -> None:
        UserRepository(self._session).ensure(context.user_id, now=now)
        if context.kind == ContextKind.COLLECTION and context.collection_id is not None:
            CollectionMemberRepository(self._session).ensure(context.collection_id, context.user_id, now=now)

    def delete(self, context_ids: Iterable[str]) -> int:
        ids = list(context_ids)
        if not ids:
            return 0
        result = self._session.execute(delete(models.AccountOrm).where(models.AccountOrm.context_id.in_(ids)))
        return result.rowcount or 0

    @staticmethod
    def to_context(row: models.AccountOrm) -> TradingContext:
        return TradingContext(
            user_id=UserId(row.user_id),
            kind=ContextKind(row.kind),
            collection_id=CollectionId(row.collection_id) if row.collection_id is not None else None,
        )


class HoldingRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def list_for_context(self, context_id: str) -> list[Holding]:
        stmt = (
            select(models.HoldingOrm)
            .where(models.HoldingOrm.context_id == context_id)
            .order_by(models.HoldingOrm.symbol)
        )
        return [self._to_domain(row) for row in self._session.scalars(stmt) if row.symbol]

    def list_by_context(self) -> dict[str, list[Holding]]:
        grouped: dict[str, list[Holding]] = {}
        for row in self._session.scalars(select(models.HoldingOrm).order_by(models.HoldingOrm.symbol)):
            if row.symbol:
                grouped.setdefault(row.context_id, []).append(self._to_domain(row))
        return grouped

    def list_stored(self) -> list[StoredHolding]:
        stmt = select(models.HoldingOrm.id, models.HoldingOrm.context_id, models.HoldingOrm.symbol)
        return [
            StoredHolding(id=row_id, context_id=context_id, symbol=symbol)
            for row_id, context_id, symbol in self._session.execute(stmt)
        ]

    def upsert(self, context_id: str, holding: Holding, *, now: datetime) -> None:
        stmt = select(models.HoldingOrm).where(
            models.HoldingOrm.context_id == context_id,
            models.HoldingOrm.symbol == holding.symbol,
        )
        row = self._session.scalar(stmt)
        if row is None:
            row = models.HoldingOrm(context_id=context_id, symbol=holding.symbol)
            self._session.add(row)
        row.amount = holding.amount
        row.average_buy_price = holding.average_buy_price
        row.current_price = holding.current_price
        row.value_in_usd = holding.value_in_usd
        row.profit_loss = holding.profit_loss
        row.profit_loss_percentage = holding.profit_loss_percentage
        row.updated_at = now
        self._session.flush()

    def delete(self, context_id: str, symbol: str) -> None:
        self._session.execute(
            delete(models.HoldingOrm).where(
                models.HoldingOrm.context_id == context_id,
                models.HoldingOrm.symbol == symbol,
            )
        )

    def delete_ids(self, holding_ids: Iterable[UUID]) -> int:
        ids = list(holding_ids)
        if not ids:
            return 0
        result = self._session.execute(delete(models.HoldingOrm).where(models.HoldingOrm.id.in_(ids)))
        return result.rowcount or 0

    def delete_for_contexts(self, context_ids: Iterable[str]) -> int:
        ids = list(context_ids)
        if not ids:
            return 0
        result = self._session.execute(delete(models.HoldingOrm).where(models.HoldingOrm.context_id.in_(ids)))
        return result.rowcount or 0

    @staticmethod
    def _to_domain(row: models.HoldingOrm) -> Holding:
        return Holding(
            symbol=row.symbol or "",
            amount=row.amount,
            average_buy_price=row.average_buy_price,
            current_price=row.current_price,
            value_in_usd=row.value_in_usd,
            profit_loss=row.profit_loss,
            profit_loss_percentage=row.profit_loss_percentage,
        )


class TransactionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, transaction: Transaction) -> None:
        context = transaction.context
        self._session.add(
            models.TransactionOrm(
                id=transaction.id,
                context_id=context.context_id,
                user_id=context.user_id,
                context_kind=context.kind.value,
                collection_id=context.collection_id,
                type=transaction.type.value,
                order_type=transaction.order_type.value,
                symbol=transaction.symbol,
                quantity=transaction.quantity,
                price=transaction.price,
                total_value=transaction.total_value,
                fee=transaction.fee,
                balance_before=transaction.balance_before,
                balance_after=transaction.balance_after,
                timestamp=transaction.timestamp,
            )
        )
        self._session.flush()

    def list_for_context(self, context_id: str, *, symbol: str | None = None, limit: int | None = None) -> list[Transaction]:
        stmt = select(models.TransactionOrm).where(models.TransactionOrm.context_id == context_id)
        if symbol is not None:
            stmt = stmt.where(models.TransactionOrm.symbol == symbol)
        stmt = stmt.order_by(models.TransactionOrm.timestamp.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    def count_for_context(self, context_id: str) -> int:
        stmt = select(func.count(models.TransactionOrm.id)).where(models.TransactionOrm.context_id == context_id)
        return self._session.scalar(stmt) or 0

    def delete_for_contexts(self, context_ids: Iterable[str]) -> int:
        ids = list(context_ids)
        if not ids:
            return 0
        result = self._session.execute(delete(models.TransactionOrm).where(models.TransactionOrm.context_id.in_(ids)))
        return result.rowcount or 0

    def delete_for_missing_users(self, user_ids: set[str]) -> int:
        result = self._session.execute(delete(models.TransactionOrm).where(models.TransactionOrm.user_id.not_in(user_ids)))
        return result.rowcount or 0

    @staticmethod
    def _to_domain(row: models.TransactionOrm) -> Transaction:
        context = TradingContext(
            user_id=UserId(row.user_id),
            kind=ContextKind(row.context_kind),
            collection_id=CollectionId(row.collection_id) if row.collection_id is not None else None,
        )
        return Transaction(
            id=TransactionId(row.id),
            context=context,
            type=TradeType(row.type),
            order_type=OrderType(row.order_type),
            symbol=row.symbol,
            quantity=row.quantity,
            price=row.price,
            total_value=row.total_value,
            fee=row.fee,
            balance_before=row.balance_before,
            balance_after=row.balance_after,
            timestamp=ensure_utc(row.timestamp),
        )


class LeaderboardRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def replace(self, period: LeaderboardPeriod, entries: Iterable[LeaderboardEntry]) -> None:
        self._session.execute(delete(models.LeaderboardRankingOrm).where(models.LeaderboardRankingOrm.period == period.value))
        self._session.add_all(
            models.LeaderboardRankingOrm(
                period=entry.period.value,
                collection_id=entry.collection_id,
                user_id=entry.user_id,
                context_id=entry.context_id,
                rank=entry.rank,
                total_pnl=entry.total_pnl,
                total_pnl_percentage=entry.total_pnl_percentage,
                total_portfolio_value=entry.total_portfolio_value,
                computed_at=entry.computed_at,
            )
            for entry in entries
        )
        self._session.flush()

    def list(self, period: LeaderboardPeriod, *, collection_id: str | None = None, limit: int | None = None) -> list[LeaderboardEntry]:
        stmt = select(models.LeaderboardRankingOrm).where(models.LeaderboardRankingOrm.period == period.value)
        if collection_id is None:
            stmt = stmt.where(models.LeaderboardRankingOrm.collection_id.is_(None))
        else:
            stmt = stmt.where(models.LeaderboardRankingOrm.collection_id == collection_id)
        stmt = stmt.order_by(models.LeaderboardRankingOrm.rank.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    def delete_for_missing_users(self, user_ids: set[str]) -> int:
        result = self._session.execute(
            delete(models.LeaderboardRankingOrm).where(models.LeaderboardRankingOrm.user_id.not_in(user_ids))
        )
        return result.rowcount or 0

    def delete_for_user(self, user_id: str) -> None:
        self._session.execute(delete(models.LeaderboardRankingOrm).where(models.LeaderboardRankingOrm.user_id == user_id))

    @staticmethod
    def _to_domain(row: models.LeaderboardRankingOrm) -> LeaderboardEntry:
        return LeaderboardEntry(
            period=LeaderboardPeriod(row.period),
            collection_id=row.collection_id,
            user_id=row.user_id,
            context_id=row.context_id,
            rank=row.rank,
            total_pnl=row.total_pnl,
            total_pnl_percentage=row.total_pnl_percentage,
            total_portfolio_value=row.total_portfolio_value,
            computed_at=ensure_utc(row.computed_at),
        )
