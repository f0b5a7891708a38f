"""
Money and calendar helpers.

Amounts are integer minor units (cents) everywhere in storage. Decimal is used
for percentages and for display; binary floats never touch a price.
"""
import calendar
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
HUNDRED = Decimal(100)


def apply_discount(base_cents: int, discount_percent: Union[Decimal, int]) -> int:
    """
    Final price in cents for a percentage discount, rounded half away from zero.
    Prices are never negative, so ROUND_HALF_UP is half-away-from-zero here.
    """
    pct = Decimal(discount_percent)
    final = Decimal(base_cents) * (HUNDRED - pct) / HUNDRED
    return int(final.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / HUNDRED).quantize(CENT)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)
