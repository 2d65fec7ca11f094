from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Iterable, TypeVar

from domain.context import TradingContext
from domain.holdings import AccountSnapshot
from utils.clock import Clock, Sleeper, sleep, utc_now

from .account_ledger import AccountLedger
from .events import EventBus, ReconciliationFinished
from .leaderboard import LeaderboardRanker
from .market_data import MarketDataGateway

if TYPE_CHECKING:
    from config import AppSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncState(StrEnum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SchedulerOptions:
    interval: timedelta = timedelta(seconds=30)
    max_concurrent_updates: int = 5
    retry_attempts: int = 3
    retry_delay: timedelta = timedelta(seconds=5)
    leaderboard_cooldown: timedelta = timedelta(seconds=60)
    stale_after_failures: int = 3

    def __post_init__(self) -> None:
        if self.interval <= timedelta(0):
            raise ValueError("interval must be positive")
        if self.max_concurrent_updates <= 0:
            raise ValueError("max_concurrent_updates must be > 0")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts must be >= 0")

    @classmethod
    def from_settings(cls, settings: AppSettings) -> SchedulerOptions:
        return cls(
            interval=timedelta(milliseconds=settings.sync_interval_ms),
            max_concurrent_updates=settings.max_concurrent_updates,
            retry_attempts=settings.retry_attempts,
            retry_delay=timedelta(milliseconds=settings.retry_delay_ms),
            leaderboard_cooldown=timedelta(milliseconds=settings.leaderboard_cooldown_ms),
            stale_after_failures=settings.stale_after_failures,
        )


@dataclass(frozen=True)
class StepOutcome:
    name: str
    ok: bool
    detail: str = ""
    error: str | None = None
    skipped: bool = False


@dataclass(frozen=True)
class RunReport:
    started_at: datetime
    finished_at: datetime
    attempts: int
    steps: list[StepOutcome] = field(default_factory=list)
    prices_stale: bool = False
    updated_holdings: int = 0

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)

    @property
    def state(self) -> SyncState:
        return SyncState.SUCCESS if self.ok else SyncState.FAILED

    @property
    def error(self) -> str | None:
        for step in self.steps:
            if not step.ok:
                return f"{step.name}: {step.error}"
        return None

    def step(self, name: str) -> StepOutcome | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None


@dataclass(frozen=True)
class SyncStatus:
    state: SyncState
    is_started: bool
    last_result: SyncState | None
    last_sync_at: datetime | None
    last_error: str | None
    sync_count: int
    error_count: int
    consecutive_failures: int
    data_may_be_stale: bool
    last_report: RunReport | None

    @property
    def is_running(self) -> bool:
        return self.state == SyncState.RUNNING


class ReconciliationScheduler:
    """Recurring background pass that aligns stored valuations with market prices.

    A pass fetches prices for every held symbol, revalues holdings through the
    ledger with at most ``max_concurrent_updates`` contexts in flight, persists
    the recomputed aggregates, refreshes the leaderboard (at most once per
    cooldown) and removes orphaned rows. Step failures are logged and recorded;
    the remaining steps still run. A pass with a failed step is retried after
    ``retry_delay`` up to ``retry_attempts`` times.

    Only one pass runs at a time. A trigger arriving while a pass runs is
    dropped.
    """

    def __init__(
        self,
        ledger: AccountLedger,
        gateway: MarketDataGateway,
        ranker: LeaderboardRanker,
        *,
        options: SchedulerOptions | None = None,
        clock: Clock = utc_now,
        sleeper: Sleeper = sleep,
        events: EventBus | None = None,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.ranker = ranker
        self.options = options or SchedulerOptions()
        self.events = events or EventBus()
        self._clock = clock
        self._sleep = sleeper

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._thread_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

        self._state = SyncState.IDLE
        self._last_report: RunReport | None = None
        self._last_sync_at: datetime | None = None
        self._last_error: str | None = None
        self._sync_count = 0
        self._error_count = 0
        self._consecutive_failures = 0
        self._last_leaderboard_at: datetime | None = None

    def start(self) -> bool:
        """Start the interval timer; returns False when it is already running."""
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop, args=(self._stop_event,), name="reconciliation-scheduler", daemon=True
            )
            self._thread.start()
        logger.info("Reconciliation scheduler started, interval %s", self.options.interval)
        return True

    def stop(self, timeout: float | None = None) -> None:
        with self._thread_lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            logger.info("Reconciliation scheduler stopped")

    @property
    def is_started(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def update_options(self, **changes: Any) -> SchedulerOptions:
        """Replace options at runtime; the running timer picks the new interval up after its current wait."""
        self.options = dataclasses.replace(self.options, **changes)
        logger.info("Reconciliation options updated: %s", changes)
        return self.options

    def trigger(self) -> RunReport | None:
        """Run one pass now, or return None when a pass is already running."""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Reconciliation already running, trigger dropped")
            return None
        try:
            with self._state_lock:
                self._state = SyncState.RUNNING
            report = self._run_with_retries()
            self._record(report)
        finally:
            with self._state_lock:
                self._state = SyncState.IDLE
            self._run_lock.release()

        self.events.publish(ReconciliationFinished(report=report))
        return report

    def status(self) -> SyncStatus:
        with self._state_lock:
            return SyncStatus(
                state=self._state,
                is_started=self.is_started,
                last_result=self._last_report.state if self._last_report else None,
                last_sync_at=self._last_sync_at,
                last_error=self._last_error,
                sync_count=self._sync_count,
                error_count=self._error_count,
                consecutive_failures=self._consecutive_failures,
                data_may_be_stale=self._consecutive_failures >= self.options.stale_after_failures,
                last_report=self._last_report,
            )

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.trigger()
            except Exception:
                logger.exception("Reconciliation pass crashed")
            stop_event.wait(self.options.interval.total_seconds())

    def _run_with_retries(self) -> RunReport:
        started_at = self._clock()
        max_attempts = self.options.retry_attempts + 1
        attempt = 1
        while True:
            logger.info("Reconciliation pass started (attempt %d/%d)", attempt, max_attempts)
            report = self._run_once(started_at, attempt)
            if report.ok:
                logger.info(
                    "Reconciliation pass succeeded: %d holdings revalued%s",
                    report.updated_holdings,
                    " from stale prices" if report.prices_stale else "",
                )
                return report
            if attempt >= max_attempts:
                logger.error("Reconciliation pass failed after %d attempts: %s", attempt, report.error)
                return report
            logger.warning("Reconciliation attempt %d failed: %s; retrying", attempt, report.error)
            self._sleep(self.options.retry_delay.total_seconds())
            attempt += 1

    def _run_once(self, started_at: datetime, attempt: int) -> RunReport:
        steps: list[StepOutcome] = []
        prices: dict[str, Decimal] | None = None
        prices_stale = False
        updated = 0

        snapshots: list[AccountSnapshot] = []
        contexts: list[TradingContext] = []
        try:
            snapshots = self.ledger.list_account_snapshots()
            contexts = [snapshot.context for snapshot in snapshots]
            symbols = {holding.symbol for snapshot in snapshots for holding in snapshot.holdings}
            lookup = self.gateway.lookup_prices(symbols)
            prices = lookup.prices
            prices_stale = lookup.stale
            steps.append(
                StepOutcome(
                    "fetch_prices",
                    ok=True,
                    detail=f"{len(prices)} of {len(symbols)} symbols priced" + (" (stale)" if lookup.stale else ""),
                )
            )
        except Exception as exc:
            logger.exception("Fetching prices failed")
            steps.append(StepOutcome("fetch_prices", ok=False, error=str(exc)))

        if prices is None:
            steps.append(StepOutcome("update_prices", ok=True, skipped=True, detail="no prices fetched"))
        else:
            priced = [
                snapshot.context
                for snapshot in snapshots
                if any(holding.symbol in prices for holding in snapshot.holdings)
            ]
            results, failures = self._fan_out(lambda context: self.ledger.update_current_prices(context, prices), priced)
            updated = sum(results)
            steps.append(self._outcome("update_prices", f"{updated} holdings in {len(priced)} contexts", failures))

        try:
            if not contexts:
                contexts = self.ledger.list_contexts()
            _, failures = self._fan_out(self.ledger.refresh_aggregates, contexts)
            steps.append(self._outcome("refresh_aggregates", f"{len(contexts)} contexts", failures))
        except Exception as exc:
            logger.exception("Refreshing aggregates failed")
            steps.append(StepOutcome("refresh_aggregates", ok=False, error=str(exc)))

        steps.append(self._refresh_leaderboard())
        steps.append(self._cleanup())

        return RunReport(
            started_at=started_at,
            finished_at=self._clock(),
            attempts=attempt,
            steps=steps,
            prices_stale=prices_stale,
            updated_holdings=updated,
        )

    def _fan_out(
        self, fn: Callable[[TradingContext], T], contexts: Iterable[TradingContext]
    ) -> tuple[list[T], list[str]]:
        results: list[T] = []
        failures: list[str] = []
        contexts = list(contexts)
        if not contexts:
            return results, failures
        with ThreadPoolExecutor(
            max_workers=self.options.max_concurrent_updates, thread_name_prefix="reconcile"
        ) as pool:
            futures = {pool.submit(fn, context): context for context in contexts}
            for future in as_completed(futures):
                context = futures[future]
                try:
                    results.append(future.result())
                except Exception as exc:
                    logger.error("Reconciling %s failed: %s", context.context_id, exc)
                    failures.append(f"{context.context_id}: {exc}")
        return results, failures

    def _refresh_leaderboard(self) -> StepOutcome:
        now = self._clock()
        if self._last_leaderboard_at is not None and now - self._last_leaderboard_at < self.options.leaderboard_cooldown:
            return StepOutcome("leaderboard", ok=True, skipped=True, detail="cooldown")
        try:
            ranked = self.ranker.recompute()
        except Exception as exc:
            logger.exception("Leaderboard recompute failed")
            return StepOutcome("leaderboard", ok=False, error=str(exc))
        self._last_leaderboard_at = now
        return StepOutcome("leaderboard", ok=True, detail=f"{sum(ranked.values())} entries")

    def _cleanup(self) -> StepOutcome:
        store = self.ledger.store
        try:
            invalid = store.delete_invalid_holdings()
            orphans = store.delete_orphans()
        except Exception as exc:
            logger.exception("Cleanup failed")
            return StepOutcome("cleanup", ok=False, error=str(exc))
        removed = invalid + orphans.total
        if removed:
            logger.warning(
                "Cleanup removed %d invalid holdings, %d orphaned holdings, %d accounts, %d transactions, %d rankings",
                invalid,
                orphans.orphaned_holdings,
                orphans.orphaned_accounts,
                orphans.orphaned_transactions,
                orphans.orphaned_rankings,
            )
        return StepOutcome("cleanup", ok=True, detail=f"{removed} rows removed")

    def _record(self, report: RunReport) -> None:
        with self._state_lock:
            self._last_report = report
            self._sync_count += 1
            if report.ok:
                self._last_sync_at = report.finished_at
                self._last_error = None
                self._consecutive_failures = 0
            else:
                self._last_error = report.error
                self._error_count += 1
                self._consecutive_failures += 1

    @staticmethod
    def _outcome(name: str, detail: str, failures: list[str]) -> StepOutcome:
        if failures:
            return StepOutcome(name, ok=False, detail=detail, error="; ".join(failures))
        return StepOutcome(name, ok=True, detail=detail)


__all__ = [
    "ReconciliationScheduler",
    "RunReport",
    "SchedulerOptions",
    "StepOutcome",
    "SyncState",
    "SyncStatus",
]
