"""Utility functions for the loan engine.

This module provides helpers for parsing user input into Python data types,
for rounding money to the minor currency unit and for handling dates,
including adding months to a date. It uses Python's ``datetime`` module to
calculate month offsets.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, getcontext
from typing import Union

getcontext().prec = 28  # increase decimal precision to avoid rounding errors

CENT = Decimal("0.01")
ZERO = Decimal("0")


def round_money(value: Decimal) -> Decimal:
    """Round a monetary amount to cents, half up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` or ``YYYY-MM`` string into a ``date``.

    When the day is omitted the first day of the month is used.

    Raises
    ------
    ValueError
        If the string is not a valid date.
    """
    try:
        parts = value.strip().split("-")
        if len(parts) == 2:
            return date(int(parts[0]), int(parts[1]), 1)
        if len(parts) == 3:
            return date(int(parts[0]), int(parts[1]), int(parts[2][:2]))
        raise ValueError
    except Exception as exc:
        raise ValueError(f"Invalid date string: {value}") from exc


def parse_datetime(value: str) -> datetime:
    """Parse an ISO timestamp; a bare date means midnight of that day."""
    text = value.strip()
    try:
        if len(text) <= 10:
            return datetime.combine(parse_date(text), time.min)
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value}") from exc


def as_datetime(value: Union[date, datetime]) -> datetime:
    """Return ``value`` as a ``datetime`` (dates become midnight)."""
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def add_months(dt: date, months: int) -> date:
    """Return a new date a number of months after ``dt``.

    The day of the month is clamped to the last valid day if needed (e.g.,
    adding one month to Jan 31 yields Feb 28 or 29).
    """
    year = dt.year + (dt.month - 1 + months) // 12
    month = (dt.month - 1 + months) % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def decimal_from_str(value: str) -> Decimal:
    """Convert a numeric string into a ``Decimal``.

    The function strips any commas and handles both integer and float-like
    strings. It raises ``ValueError`` if conversion fails.
    """
    try:
        cleaned = str(value).replace(",", "").strip()
        return Decimal(cleaned)
    except Exception as exc:
        raise ValueError(f"Invalid numeric value: {value}") from exc
