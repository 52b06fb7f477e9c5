"""Day count conventions.

A convention turns an installment period into the fraction of a year whose
interest the period accrues:

* ``periodic``: every monthly period is exactly 1/12 of a year, whatever
  the calendar says;
* ``30E/360``: European 30/360, day 31 counts as day 30;
* ``ACT/360`` and ``ACT/365``: actual calendar days over a 360 or 365 day
  year.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from .data_models import ACT_360, ACT_365, E30_360, PERIODIC

TWELFTH = Decimal(1) / Decimal(12)


def days_30e_360(start: date, end: date) -> int:
    d1 = min(start.day, 30)
    d2 = min(end.day, 30)
    return 360 * (end.year - start.year) + 30 * (end.month - start.month) + (d2 - d1)


def year_fraction(start: date, end: date, convention: str) -> Decimal:
    """Return the fraction of a year between ``start`` and ``end``.

    Raises
    ------
    ValueError
        If ``convention`` is unknown.
    """
    if convention == PERIODIC:
        return TWELFTH
    if convention == E30_360:
        return Decimal(days_30e_360(start, end)) / Decimal(360)
    if convention == ACT_360:
        return Decimal((end - start).days) / Decimal(360)
    if convention == ACT_365:
        return Decimal((end - start).days) / Decimal(365)
    raise ValueError(f"Unknown day count convention: {convention}")


def period_interest(balance: Decimal, annual_rate: Decimal, start: date, end: date, convention: str) -> Decimal:
    """Unrounded interest accrued on ``balance`` from ``start`` to ``end``."""
    if convention == PERIODIC:
        return balance * ((Decimal(annual_rate) / Decimal(100)) / Decimal(12))
    return balance * (Decimal(annual_rate) / Decimal(100)) * year_fraction(start, end, convention)
