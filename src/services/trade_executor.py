from __future__ import annotations

import logging
from decimal import Decimal

from domain.account_book import AccountBook
from domain.context import ContextSelector, TradingContext
from domain.errors import InsufficientHoldingsError, PaperTradingError
from domain.holdings import RESERVE_SYMBOL, AccountSnapshot
from domain.trading import TradeOrder, TradeType, Transaction
from utils.clock import Clock, utc_now

from .account_ledger import AccountLedger
from .events import EventBus, TradeExecuted, TradeRejected

logger = logging.getLogger(__name__)


class TradeExecutor:
    """Turns one order into one atomic ledger mutation plus one transaction record."""

    def __init__(self, ledger: AccountLedger, *, clock: Clock = utc_now, events: EventBus | None = None) -> None:
        self.ledger = ledger
        self.events = events or EventBus()
        self._clock = clock

    def execute_trade(self, order: TradeOrder, selector: ContextSelector | TradingContext, user_id: str) -> Transaction:
        context = selector.for_user(user_id) if isinstance(selector, ContextSelector) else selector
        if context.user_id != user_id:
            msg = f"context {context.context_id} does not belong to user {user_id}"
            raise ValueError(msg)
        self.ledger.ensure_context(context)
        return self.execute(order, context)

    def execute(self, order: TradeOrder, context: TradingContext) -> Transaction:
        snapshot: AccountSnapshot
        try:
            with self.ledger.unit_of_work(context) as book:
                transaction = self._apply(book, order)
                snapshot = book.snapshot()
        except PaperTradingError as exc:
            logger.warning(
                "Rejected %s %s %s @ %s for %s: %s",
                order.type,
                order.quantity,
                order.symbol,
                order.price,
                context.context_id,
                exc,
            )
            self.events.publish(TradeRejected(context=context, order=order, error=exc))
            raise

        logger.info(
            "Executed %s %s %s @ %s for %s, reserve %s -> %s",
            order.type,
            order.quantity,
            order.symbol,
            order.price,
            context.context_id,
            transaction.balance_before,
            transaction.balance_after,
        )
        self.events.publish(TradeExecuted(transaction=transaction, snapshot=snapshot))
        return transaction

    def _apply(self, book: AccountBook, order: TradeOrder) -> Transaction:
        balance_before = book.reserve.amount
        total_value = order.total_value
        reserve_delta = -total_value if order.type == TradeType.BUY else total_value

        # Reserve first: an unaffordable buy fails before any holding is touched.
        book.apply_holding_delta(RESERVE_SYMBOL, reserve_delta, reserve_delta)
        try:
            if order.type == TradeType.BUY:
                book.apply_holding_delta(order.symbol, order.quantity, total_value)
            else:
                held = book.holding(order.symbol)
                if held is None or order.quantity > held.amount:
                    raise InsufficientHoldingsError(
                        context_id=book.context.context_id,
                        symbol=order.symbol,
                        requested=order.quantity,
                        available=held.amount if held else Decimal(0),
                    )
                value_delta = -(held.value_in_usd * order.quantity / held.amount)
                book.apply_holding_delta(order.symbol, -order.quantity, value_delta)
        except PaperTradingError:
            book.apply_holding_delta(RESERVE_SYMBOL, -reserve_delta, -reserve_delta)
            raise

        transaction = Transaction(
            context=book.context,
            type=order.type,
            order_type=order.order_type,
            symbol=order.symbol,
            quantity=order.quantity,
            price=order.price,
            total_value=total_value,
            fee=order.fee,
            balance_before=balance_before,
            balance_after=book.reserve.amount,
            timestamp=self._clock(),
        )
        book.record_transaction(transaction)
        return transaction


__all__ = ["TradeExecutor"]
