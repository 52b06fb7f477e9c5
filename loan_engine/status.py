"""Installment status classification.

Status is derived, never stored: it is recomputed from the due date, the
paid-at timestamp and the caller's reference time on every read.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Optional

from .data_models import OVERDUE, PAID, PENDING, Schedule, ScheduleEntry


def classify(due_date: date, paid_at: Optional[datetime], now: datetime) -> str:
    """Return ``"paid"``, ``"overdue"`` or ``"pending"``.

    An installment is paid once its paid-at timestamp is not in the future,
    overdue when it is unpaid and its due date lies before ``now`` (by
    calendar day), and pending otherwise.
    """
    if paid_at is not None and paid_at <= now:
        return PAID
    if due_date < now.date():
        return OVERDUE
    return PENDING


def entry_status(entry: ScheduleEntry, now: datetime) -> str:
    return classify(entry.due_date, entry.paid_at, now)


def refresh_statuses(schedule: Schedule, now: datetime) -> Schedule:
    """Return a copy of ``schedule`` with every status computed for ``now``."""
    entries = tuple(replace(e, status=entry_status(e, now)) for e in schedule)
    return replace(schedule, entries=entries)
