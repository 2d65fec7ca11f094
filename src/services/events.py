from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from domain.context import TradingContext
from domain.errors import PaperTradingError
from domain.holdings import AccountSnapshot
from domain.trading import TradeOrder, Transaction

if TYPE_CHECKING:
    from .reconciliation import RunReport

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class TradeExecuted:
    transaction: Transaction
    snapshot: AccountSnapshot


@dataclass(frozen=True)
class TradeRejected:
    context: TradingContext
    order: TradeOrder
    error: PaperTradingError

    @property
    def reason(self) -> str:
        return self.error.user_message


@dataclass(frozen=True)
class ReconciliationFinished:
    report: RunReport


class EventBus:
    """Synchronous publish/subscribe channel between the engine and its presentation layers."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handlers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        with self._lock:
            self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event_type]:
                    self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: object) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)
