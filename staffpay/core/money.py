"""
Integer minor-unit arithmetic. Amounts are paisa everywhere inside the
engine; Decimal is used only for intermediate products with rates and
fractional days, then rounded half-up back to an int.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[int, Decimal]


def to_minor(value: Number) -> int:
    """Round a Decimal amount of paisa half-up to a whole paisa."""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def prorate(amount: int, numerator: Number, denominator: Number) -> int:
    """amount * numerator / denominator, rounded half-up."""
    if Decimal(denominator) == 0:
        return 0
    return to_minor(Decimal(amount) * Decimal(numerator) / Decimal(denominator))


def apply_rate(amount: int, rate: Number) -> int:
    return to_minor(Decimal(amount) * Decimal(rate))


def format_minor(amount: int, symbol: str = "₹") -> str:
    """Presentation-only formatting, e.g. 270833 -> '₹2,708.33'."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(int(amount)), 100)
    return f"{sign}{symbol}{major:,}.{minor:02d}"
