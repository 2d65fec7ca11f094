from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def format_quantity(value: Decimal) -> str:
    """Plain notation with trailing zeros removed, so 0.50000000 prints as 0.5."""
    text = format(value.normalize(), "f")
    return "0" if text in {"-0", "0"} else text


def format_currency(value: Decimal) -> str:
    return f"{value.quantize(CENT, rounding=ROUND_HALF_UP):.2f}"


def format_pnl(value: Decimal) -> str:
    rounded = value.quantize(CENT, rounding=ROUND_HALF_UP)
    if rounded.is_zero():
        return "0.00"
    return f"{rounded:+.2f}"


def format_percentage(value: Decimal) -> str:
    return f"{format_pnl(value)}%"
