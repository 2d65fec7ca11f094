from __future__ import annotations

from typing import Sequence

from domain.holdings import AccountSnapshot
from domain.leaderboard import LeaderboardEntry
from domain.trading import Transaction

from .formatting import format_currency, format_percentage, format_pnl, format_quantity


def _table(headers: Sequence[str], rows: Sequence[Sequence[str]], *, left_columns: int = 1) -> list[str]:
    widths = [max(len(header), max((len(row[index]) for row in rows), default=0)) for index, header in enumerate(headers)]

    def line(cells: Sequence[str]) -> str:
        return " ".join(
            f"{cell:<{width}}" if index < left_columns else f"{cell:>{width}}"
            for index, (cell, width) in enumerate(zip(cells, widths))
        )

    header = line(headers)
    return [header, "-" * len(header), *(line(row) for row in rows)]


def format_snapshot(snapshot: AccountSnapshot) -> list[str]:
    lines = [
        f"Account {snapshot.context.context_id}",
        f"  USDT balance:    {format_currency(snapshot.usdt_balance)}",
        f"  Portfolio value: {format_currency(snapshot.total_portfolio_value)}",
        f"  Total P&L:       {format_pnl(snapshot.total_pnl)} ({format_percentage(snapshot.total_pnl_percentage)})",
    ]
    if not snapshot.holdings:
        lines.append("  (no holdings)")
        return lines

    rows = [
        (
            holding.symbol,
            format_quantity(holding.amount),
            format_currency(holding.average_buy_price),
            format_currency(holding.current_price),
            format_currency(holding.value_in_usd),
            format_pnl(holding.profit_loss),
        )
        for holding in snapshot.holdings
    ]
    lines.extend(_table(("Symbol", "Amount", "Avg cost", "Price", "Value USD", "P&L"), rows))
    return lines


def format_transactions(transactions: Sequence[Transaction]) -> list[str]:
    if not transactions:
        return ["(no transactions)"]
    rows = [
        (
            transaction.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            transaction.type.value,
            transaction.symbol,
            format_quantity(transaction.quantity),
            format_currency(transaction.price),
            format_currency(transaction.total_value),
            format_currency(transaction.balance_after),
        )
        for transaction in transactions
    ]
    return _table(("Time", "Type", "Symbol", "Quantity", "Price", "Total", "Balance"), rows, left_columns=3)


def format_leaderboard(entries: Sequence[LeaderboardEntry]) -> list[str]:
    if not entries:
        return ["(no ranked accounts)"]
    rows = [
        (
            str(entry.rank),
            entry.user_id,
            format_currency(entry.total_portfolio_value),
            format_pnl(entry.total_pnl),
            format_percentage(entry.total_pnl_percentage),
        )
        for entry in entries
    ]
    return _table(("Rank", "User", "Value USD", "P&L", "P&L %"), rows, left_columns=2)


def render(lines: Sequence[str]) -> None:
    for line in lines:
        print(line)
