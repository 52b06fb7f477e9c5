"""Read-only aggregates over a schedule at a reference time."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from .data_models import OVERDUE, PAID, Schedule, ScheduleEntry
from .status import entry_status
from .utils import CENT, ZERO


def next_due_entry(schedule: Schedule, now: datetime) -> Optional[ScheduleEntry]:
    """Return the first installment that is not paid at ``now``."""
    for entry in schedule:
        if entry_status(entry, now) != PAID:
            return entry
    return None


def overdue_entries(schedule: Schedule, now: datetime) -> List[ScheduleEntry]:
    return [e for e in schedule if entry_status(e, now) == OVERDUE]


def remaining_principal(schedule: Schedule, now: datetime) -> Decimal:
    """Principal still to be repaid through unpaid installments."""
    return sum((e.principal_due for e in schedule if entry_status(e, now) != PAID), ZERO)


def remaining_total_due(schedule: Schedule, now: datetime) -> Decimal:
    return sum((e.total_due for e in schedule if entry_status(e, now) != PAID), ZERO)


def loan_metrics(schedule: Schedule, principal: Decimal, now: datetime) -> Dict[str, object]:
    """Summarize the state of a loan at ``now``.

    Lump sums count as repaid principal in the progress figure, since they
    are paid when they are recorded.
    """
    statuses = [entry_status(e, now) for e in schedule]
    paid = [e for e, s in zip(schedule, statuses) if s == PAID]
    upcoming = next_due_entry(schedule, now)
    outstanding = remaining_principal(schedule, now)
    progress = ((principal - outstanding) / principal * 100).quantize(CENT)
    return {
        "installments": len(schedule),
        "paid": len(paid),
        "overdue": statuses.count(OVERDUE),
        "pending": len(schedule) - len(paid) - statuses.count(OVERDUE),
        "next_due": None if upcoming is None else {
            "installment_no": upcoming.installment_no,
            "due_date": upcoming.due_date.isoformat(),
            "total_due": str(upcoming.total_due),
        },
        "remaining_principal": str(outstanding),
        "remaining_total_due": str(remaining_total_due(schedule, now)),
        "interest_paid": str(sum((e.interest_due for e in paid), ZERO)),
        "fees_paid": str(sum((e.fee_due for e in paid), ZERO)),
        "progress_pct": str(progress),
    }
