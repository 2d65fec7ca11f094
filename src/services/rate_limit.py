from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from utils.clock import Clock, Sleeper, sleep, utc_now

logger = logging.getLogger(__name__)


class RateLimiter:
    """Rolling request counter per window; callers over the cap wait for the window to reset."""

    def __init__(
        self,
        *,
        max_requests: int,
        window: timedelta = timedelta(seconds=60),
        clock: Clock = utc_now,
        sleeper: Sleeper = sleep,
    ) -> None:
        if max_requests <= 0:
            msg = "max_requests must be > 0"
            raise ValueError(msg)
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._sleep = sleeper
        self._lock = threading.Lock()
        self._window_start: datetime | None = None
        self._count = 0

    def acquire(self) -> float:
        """Take one request slot and return the seconds spent waiting for it."""
        waited = 0.0
        with self._lock:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self.window:
                self._window_start = now
                self._count = 0

            if self._count >= self.max_requests:
                remaining = (self._window_start + self.window - now).total_seconds()
                if remaining > 0:
                    logger.info("Rate limit of %d requests reached, waiting %.1fs", self.max_requests, remaining)
                    self._sleep(remaining)
                    waited = remaining
                self._window_start = self._clock()
                self._count = 0

            self._count += 1
        return waited

    @property
    def used(self) -> int:
        return self._count


class ExponentialBackoff:
    """Delay between provider retries: grows on consecutive failures, resets on success."""

    def __init__(self, *, base_delay: float, factor: float = 2.0, max_delay: float = 60.0) -> None:
        if base_delay < 0 or max_delay < base_delay:
            msg = "delays must satisfy 0 <= base_delay <= max_delay"
            raise ValueError(msg)
        if factor < 1:
            msg = "factor must be >= 1"
            raise ValueError(msg)
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self._lock = threading.Lock()
        self._delay = base_delay

    @property
    def current_delay(self) -> float:
        return self._delay

    def failure(self) -> float:
        """Return the delay to wait now and grow the next one."""
        with self._lock:
            delay = self._delay
            self._delay = min(self._delay * self.factor, self.max_delay)
            return delay

    def success(self) -> None:
        with self._lock:
            self._delay = self.base_delay
