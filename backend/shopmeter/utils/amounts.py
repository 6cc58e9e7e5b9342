"""Decimal helpers for money and credit amounts"""
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional, Union

Number = Union[int, float, str, Decimal]

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value: Optional[Number]) -> Decimal:
    """None-safe conversion; floats go through str to avoid binary noise"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def floor2(value: Number) -> Decimal:
    """Truncate to two decimal places"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_DOWN)


def money(value: Number) -> Decimal:
    """Round a currency amount to cents"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percentage(used: Number, total: Number) -> Decimal:
    """Share of total already used, in percent (0 when nothing was granted)"""
    total = to_decimal(total)
    if total <= ZERO:
        return ZERO
    return (to_decimal(used) * 100 / total).quantize(CENT, rounding=ROUND_HALF_UP)


def as_number(value: Optional[Decimal]):
    """JSON-friendly number: ints stay ints, other decimals become floats"""
    if value is None:
        return None
    value = to_decimal(value)
    if value == value.to_integral_value():
        return int(value)
    return float(value)
