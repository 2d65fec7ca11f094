from decimal import Decimal

import pytest

from utils.formatting import format_currency, format_percentage, format_pnl, format_quantity


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (Decimal("0.50000000"), "0.5"),
        (Decimal("1E+2"), "100"),
        (Decimal("-0"), "0"),
        (Decimal("0.00000001"), "0.00000001"),
    ],
)
def test_format_quantity(value: Decimal, expected: str) -> None:
    assert format_quantity(value) == expected


def test_format_currency_rounds_half_up() -> None:
    assert format_currency(Decimal("10.005")) == "10.01"
    assert format_currency(Decimal("100000")) == "100000.00"


def test_format_pnl_is_signed_except_zero() -> None:
    assert format_pnl(Decimal("12.3")) == "+12.30"
    assert format_pnl(Decimal("-0.5")) == "-0.50"
    assert format_pnl(Decimal("0.001")) == "0.00"
    assert format_percentage(Decimal("-2.345")) == "-2.35%"
