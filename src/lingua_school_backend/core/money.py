'''
Decimal helpers for monetary amounts.
'''
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Quantizes any number to 0.01, rounding half away from zero."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values) -> Decimal:
    return to_money(sum(values, ZERO))


def percent_of(amount: Decimal, percent: int) -> Decimal:
    return to_money(Decimal(amount) * Decimal(percent) / Decimal(100))
