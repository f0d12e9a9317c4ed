"""Credit-card billing cycles and installment date spreading.

A cycle for month M runs from the day after the closing day of M-1 through the
closing day of M. Purchases made after the closing day belong to the next
month's cycle.
"""

from datetime import date
from typing import Optional

from periods import add_months, clamp_day, days_in_month, next_month


def billing_cycle_dates(closing_day: int, year: int, month: int) -> tuple[date, date]:
    end = clamp_day(year, month, closing_day)
    prev_year, prev_month = add_months(year, month, -1)
    prev_close = clamp_day(prev_year, prev_month, closing_day)
    if prev_close.day >= days_in_month(prev_year, prev_month):
        start = date(year, month, 1)
    else:
        start = date(prev_year, prev_month, prev_close.day + 1)
    return start, end


def billing_month_for(purchase_date: date, closing_day: int) -> tuple[int, int]:
    effective_close = clamp_day(purchase_date.year, purchase_date.month, closing_day)
    if purchase_date.day > effective_close.day:
        return next_month(purchase_date.year, purchase_date.month)
    return purchase_date.year, purchase_date.month


def installment_dates(
    purchase_date: date, total: int, closing_day: Optional[int] = None
) -> list[date]:
    if closing_day:
        year, month = billing_month_for(purchase_date, closing_day)
        day = closing_day
    else:
        year, month = purchase_date.year, purchase_date.month
        day = purchase_date.day
    dates: list[date] = []
    for offset in range(total):
        y, m = add_months(year, month, offset)
        dates.append(clamp_day(y, m, day))
    return dates


def split_installments(amount_cents: int, total: int) -> int:
    """Per-installment amount, rounded half up."""
    return (2 * amount_cents + total) // (2 * total)
