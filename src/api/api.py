import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from time import perf_counter
from typing import Annotated, AsyncGenerator, Awaitable, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.dependencies import get_executor, get_gateway, get_ledger, get_ranker, get_scheduler
from config import config
from domain.context import ContextSelector, TradingContext
from domain.errors import (
    ContextNotFoundError,
    DataUnavailableError,
    InsufficientBalanceError,
    InsufficientHoldingsError,
    PaperTradingError,
    RateLimitedError,
    StoreConflictError,
)
from domain.holdings import AccountSnapshot, CombinedPnL
from domain.leaderboard import LeaderboardEntry, LeaderboardPeriod
from domain.trading import TradeOrder, Transaction
from services.account_ledger import AccountLedger
from services.engine import TradingEngine, build_engine
from services.leaderboard import LeaderboardRanker, LeaderboardStats
from services.market_data import MarketDataGateway
from services.reconciliation import ReconciliationScheduler, RunReport, SyncStatus
from services.trade_executor import TradeExecutor

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[PaperTradingError], int] = {
    InsufficientBalanceError: 422,
    InsufficientHoldingsError: 422,
    ContextNotFoundError: 404,
    DataUnavailableError: 503,
    RateLimitedError: 429,
    StoreConflictError: 409,
}


class TradeRequest(BaseModel):
    order: TradeOrder
    context: ContextSelector = ContextSelector()


class ResetResult(BaseModel):
    contexts_reset: int


def _context(user_id: str, collection_id: str | None) -> TradingContext:
    if collection_id:
        return TradingContext.collection(user_id, collection_id)
    return TradingContext.individual(user_id)


def create_app(engine: TradingEngine | None = None, *, start_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
        current = engine
        if current is None:
            settings = config()
            logging.basicConfig(
                level=settings.log_level.upper(),
                format="%(asctime)s %(levelname)s %(name)s %(message)s",
            )
            current = build_engine(settings)
        fastapi_app.state.engine = current
        if start_scheduler:
            current.scheduler.start()
        yield
        current.close()

    fastapi_app = FastAPI(title="Paper trading ledger", lifespan=lifespan)

    @fastapi_app.middleware("http")
    async def log_process_time(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        start_time = perf_counter()
        response = await call_next(request)
        process_time = perf_counter() - start_time
        logger.debug("Request time: %s %s: %.4fs", request.method, request.url, process_time)
        return response

    @fastapi_app.exception_handler(PaperTradingError)
    async def paper_trading_error(request: Request, exc: PaperTradingError) -> JSONResponse:
        status_code = _ERROR_STATUS.get(type(exc), 400)
        return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "message": exc.user_message})

    @fastapi_app.post("/users/{user_id}/trades")
    def execute_trade(
        user_id: str, trade: TradeRequest, executor: Annotated[TradeExecutor, Depends(get_executor)]
    ) -> Transaction:
        return executor.execute_trade(trade.order, trade.context, user_id)

    @fastapi_app.get("/users/{user_id}/snapshot")
    def get_snapshot(
        user_id: str,
        ledger: Annotated[AccountLedger, Depends(get_ledger)],
        collection_id: str | None = None,
    ) -> AccountSnapshot:
        return ledger.get_snapshot(_context(user_id, collection_id))

    @fastapi_app.get("/users/{user_id}/transactions")
    def list_transactions(
        user_id: str,
        ledger: Annotated[AccountLedger, Depends(get_ledger)],
        collection_id: str | None = None,
        symbol: str | None = None,
        limit: Annotated[int, Query(ge=1, le=500)] = 50,
    ) -> list[Transaction]:
        return ledger.list_transactions(_context(user_id, collection_id), symbol=symbol, limit=limit)

    @fastapi_app.get("/users/{user_id}/pnl")
    def get_combined_pnl(user_id: str, ledger: Annotated[AccountLedger, Depends(get_ledger)]) -> CombinedPnL:
        return ledger.combined_pnl(user_id)

    @fastapi_app.delete("/users/{user_id}/data")
    def reset_data(
        user_id: str,
        ledger: Annotated[AccountLedger, Depends(get_ledger)],
        collection_id: str | None = None,
    ) -> ResetResult:
        if collection_id:
            ledger.reset_context(TradingContext.collection(user_id, collection_id))
            return ResetResult(contexts_reset=1)
        return ResetResult(contexts_reset=ledger.reset_user(user_id))

    @fastapi_app.get("/leaderboard")
    def get_leaderboard(
        ranker: Annotated[LeaderboardRanker, Depends(get_ranker)],
        period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME,
        collection_id: str | None = None,
        limit: Annotated[int, Query(ge=1, le=500)] = 100,
    ) -> list[LeaderboardEntry]:
        return ranker.get_leaderboard(period, collection_id=collection_id, limit=limit)

    @fastapi_app.get("/leaderboard/stats")
    def get_leaderboard_stats(
        ranker: Annotated[LeaderboardRanker, Depends(get_ranker)],
        period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME,
        collection_id: str | None = None,
    ) -> LeaderboardStats:
        return ranker.get_stats(period, collection_id=collection_id)

    @fastapi_app.get("/leaderboard/users/{user_id}")
    def get_user_rank(
        user_id: str,
        ranker: Annotated[LeaderboardRanker, Depends(get_ranker)],
        period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME,
        collection_id: str | None = None,
    ) -> LeaderboardEntry:
        entry = ranker.get_user_rank(user_id, period, collection_id=collection_id)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"User {user_id} is not ranked")
        return entry

    @fastapi_app.get("/sync/status")
    def get_sync_status(scheduler: Annotated[ReconciliationScheduler, Depends(get_scheduler)]) -> SyncStatus:
        return scheduler.status()

    @fastapi_app.post("/sync")
    def trigger_sync(scheduler: Annotated[ReconciliationScheduler, Depends(get_scheduler)]) -> RunReport:
        report = scheduler.trigger()
        if report is None:
            raise HTTPException(status_code=409, detail="A reconciliation pass is already running")
        return report

    @fastapi_app.get("/market/prices")
    def get_prices(
        gateway: Annotated[MarketDataGateway, Depends(get_gateway)],
        symbols: Annotated[str, Query(min_length=1)],
    ) -> dict[str, Decimal]:
        return gateway.get_prices(symbol for symbol in symbols.split(",") if symbol.strip())

    return fastapi_app


app = create_app()
