from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Quantize to two decimal places; floats go through str to avoid binary noise."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value: Number) -> int:
    """Amount in the smallest currency unit, as the gateway expects it."""
    return int((to_money(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return to_money(Decimal(value) / 100)


def payable_amount(total: Number, shipping: Number, discount: Number) -> Decimal:
    """max(0, total + shipping - discount)"""
    return max(ZERO, to_money(total) + to_money(shipping) - to_money(discount))
