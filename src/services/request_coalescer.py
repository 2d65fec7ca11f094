from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCoalescer:
    """Share one in-flight call per key between concurrent callers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, Future] = {}
        self.deduplicated = 0

    def run(self, key: str, fn: Callable[[], T]) -> T:
        with self._lock:
            future = self._pending.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._pending[key] = future
            else:
                self.deduplicated += 1

        if not leader:
            logger.debug("Request deduplicated: %s", key)
            return future.result()

        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._pending.pop(key, None)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)
