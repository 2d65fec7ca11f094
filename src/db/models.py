from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class UserOrm(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CollectionMemberOrm(Base):
    __tablename__ = "collection_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("collection_id", "user_id", name="uq_collection_member"),)


class AccountOrm(Base):
    __tablename__ = "accounts"

    context_id: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    # No foreign key: rows outliving their user are repaired by reconciliation cleanup.
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    collection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    starting_balance: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    usdt_balance: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_portfolio_value: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_pnl: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_pnl_percentage: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_accounts_user", "user_id"),)


class HoldingOrm(Base):
    __tablename__ = "holdings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    context_id: Mapped[str] = mapped_column(String, nullable=False)
    symbol: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    average_buy_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    current_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    value_in_usd: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    profit_loss: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    profit_loss_percentage: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("context_id", "symbol", name="uq_holding_context_symbol"),
        Index("ix_holdings_context", "context_id"),
    )


class TransactionOrm(Base):
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    context_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    context_kind: Mapped[str] = mapped_column(String, nullable=False)
    collection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    order_type: Mapped[str] = mapped_column(String, nullable=False)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_value: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    fee: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_transactions_context_ts", "context_id", "timestamp"),)


class LeaderboardRankingOrm(Base):
    __tablename__ = "leaderboard_rankings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period: Mapped[str] = mapped_column(String, nullable=False)
    collection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    context_id: Mapped[str] = mapped_column(String, nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    total_pnl: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_pnl_percentage: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_portfolio_value: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_rankings_board", "period", "collection_id", "rank"),)
