from typing import Annotated

from fastapi import Depends, Request

from services.account_ledger import AccountLedger
from services.engine import TradingEngine
from services.leaderboard import LeaderboardRanker
from services.market_data import MarketDataGateway
from services.reconciliation import ReconciliationScheduler
from services.trade_executor import TradeExecutor


def get_engine(request: Request) -> TradingEngine:
    return request.app.state.engine


def get_ledger(engine: Annotated[TradingEngine, Depends(get_engine)]) -> AccountLedger:
    return engine.ledger


def get_executor(engine: Annotated[TradingEngine, Depends(get_engine)]) -> TradeExecutor:
    return engine.executor


def get_ranker(engine: Annotated[TradingEngine, Depends(get_engine)]) -> LeaderboardRanker:
    return engine.ranker


def get_scheduler(engine: Annotated[TradingEngine, Depends(get_engine)]) -> ReconciliationScheduler:
    return engine.scheduler


def get_gateway(engine: Annotated[TradingEngine, Depends(get_engine)]) -> MarketDataGateway:
    return engine.gateway
