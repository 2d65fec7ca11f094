from __future__ import annotations

import argparse
import logging
from decimal import Decimal
from typing import Sequence

from config import AppSettings, config
from domain.context import TradingContext
from domain.errors import PaperTradingError
from domain.leaderboard import LeaderboardPeriod
from domain.trading import OrderType, TradeOrder, TradeType
from services.engine import TradingEngine, build_engine
from utils.formatting import format_currency, format_percentage, format_pnl
from utils.portfolio_summary import format_leaderboard, format_snapshot, format_transactions, render

logger = logging.getLogger(__name__)


def _context(args: argparse.Namespace) -> TradingContext:
    if args.collection:
        return TradingContext.collection(args.user, args.collection)
    return TradingContext.individual(args.user)


def run_trade(engine: TradingEngine, args: argparse.Namespace) -> None:
    order = TradeOrder(
        type=TradeType(args.side.upper()),
        symbol=args.symbol,
        quantity=args.quantity,
        price=args.price,
        fee=args.fee,
        order_type=OrderType(args.order_type.upper()),
    )
    transaction = engine.executor.execute_trade(order, _context(args), args.user)
    print(
        f"{transaction.type} {transaction.quantity} {transaction.symbol} @ {format_currency(transaction.price)}"
        f" -> USDT {format_currency(transaction.balance_before)} -> {format_currency(transaction.balance_after)}"
    )
    render(format_snapshot(engine.ledger.get_snapshot(transaction.context)))


def run_snapshot(engine: TradingEngine, args: argparse.Namespace) -> None:
    if args.combined:
        combined = engine.ledger.combined_pnl(args.user)
        for snapshot in [combined.individual, *combined.collections]:
            render(format_snapshot(snapshot))
        print(f"Combined P&L: {format_pnl(combined.total_pnl)} ({format_percentage(combined.total_pnl_percentage)})")
        return
    render(format_snapshot(engine.ledger.get_snapshot(_context(args))))


def run_history(engine: TradingEngine, args: argparse.Namespace) -> None:
    render(format_transactions(engine.ledger.list_transactions(_context(args), symbol=args.symbol, limit=args.limit)))


def run_sync(engine: TradingEngine, args: argparse.Namespace) -> None:
    report = engine.scheduler.trigger()
    if report is None:
        print("A reconciliation pass is already running")
        return
    for step in report.steps:
        state = "skipped" if step.skipped else ("ok" if step.ok else "FAILED")
        print(f"  {step.name:<20} {state:<8} {step.error or step.detail}")
    print(f"Reconciliation {report.state} after {report.attempts} attempt(s)")


def run_leaderboard(engine: TradingEngine, args: argparse.Namespace) -> None:
    if args.recompute:
        engine.ranker.recompute()
    period = LeaderboardPeriod(args.period.upper())
    render(format_leaderboard(engine.ranker.get_leaderboard(period, collection_id=args.collection, limit=args.limit)))


def run_reset(engine: TradingEngine, args: argparse.Namespace) -> None:
    if args.collection:
        engine.ledger.reset_context(_context(args))
        print(f"Reset {_context(args).context_id}")
        return
    count = engine.ledger.reset_user(args.user)
    print(f"Reset {count} account(s) of {args.user}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Paper trading ledger with market price reconciliation.")
    parser.add_argument("--database-url", help="SQLAlchemy URL, overrides DATABASE_URL")
    parser.add_argument("--log-level", help="Root log level, overrides LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    def with_user(subparser: argparse.ArgumentParser) -> argparse.ArgumentParser:
        subparser.add_argument("--user", required=True)
        subparser.add_argument("--collection", help="Collection id; omit for the individual account")
        return subparser

    trade = with_user(commands.add_parser("trade", help="Execute a buy or sell order"))
    trade.add_argument("side", choices=["buy", "sell", "BUY", "SELL"])
    trade.add_argument("symbol")
    trade.add_argument("quantity", type=Decimal)
    trade.add_argument("price", type=Decimal)
    trade.add_argument("--fee", type=Decimal, default=Decimal(0))
    trade.add_argument("--order-type", default="market", choices=["market", "limit", "MARKET", "LIMIT"])
    trade.set_defaults(handler=run_trade)

    snapshot = with_user(commands.add_parser("snapshot", help="Show balances and holdings"))
    snapshot.add_argument("--combined", action="store_true", help="Show every account of the user with combined P&L")
    snapshot.set_defaults(handler=run_snapshot)

    history = with_user(commands.add_parser("history", help="List recent transactions"))
    history.add_argument("--symbol")
    history.add_argument("--limit", type=int, default=50)
    history.set_defaults(handler=run_history)

    sync = commands.add_parser("sync", help="Run one reconciliation pass now")
    sync.set_defaults(handler=run_sync)

    leaderboard = commands.add_parser("leaderboard", help="Show rankings")
    leaderboard.add_argument("--period", default=LeaderboardPeriod.ALL_TIME.value, choices=[p.value for p in LeaderboardPeriod])
    leaderboard.add_argument("--collection")
    leaderboard.add_argument("--limit", type=int, default=20)
    leaderboard.add_argument("--recompute", action="store_true")
    leaderboard.set_defaults(handler=run_leaderboard)

    reset = with_user(commands.add_parser("reset", help="Delete accounts, holdings and transactions"))
    reset.set_defaults(handler=run_reset)
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings: AppSettings = config()
    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        settings = settings.model_copy(update=overrides)

    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    engine = build_engine(settings)
    try:
        args.handler(engine, args)
    except PaperTradingError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        raise SystemExit(f"Error: {exc.user_message}") from exc
    finally:
        engine.close()


if __name__ == "__main__":
    main()
