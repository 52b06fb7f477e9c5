"""Percentage-of-principal-repaid checkpoints.

A milestone is reached by the first installment that brings the remaining
balance down to ``principal * (1 - pct / 100)``. It is only reported as
achieved once that installment is actually paid; until then the
installment's due date is the expected date.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from .data_models import PAID, Schedule
from .status import entry_status
from .utils import CENT, ZERO

CHECKPOINTS = (25, 50, 75, 100)


@dataclass(frozen=True)
class Milestone:
    percentage: int
    target_balance: Decimal
    installment_no: Optional[int]
    achieved: bool
    achieved_date: Optional[date] = None
    expected_date: Optional[date] = None


def project_milestones(schedule: Schedule, principal: Decimal, now: datetime) -> List[Milestone]:
    """Return one :class:`Milestone` per checkpoint, in ascending order."""
    milestones = []
    for pct in CHECKPOINTS:
        target = (principal * (100 - pct) / 100).quantize(CENT)
        entry = next((e for e in schedule if e.balance_after <= target), None)
        if entry is None:
            milestones.append(Milestone(pct, target, None, False))
        elif entry_status(entry, now) == PAID:
            milestones.append(Milestone(pct, target, entry.installment_no, True, achieved_date=entry.due_date))
        else:
            milestones.append(Milestone(pct, target, entry.installment_no, False, expected_date=entry.due_date))
    return milestones


def repaid_percentage(schedule: Schedule, principal: Decimal, now: datetime) -> Decimal:
    """Share of the principal repaid by paid installments and lump sums."""
    repaid = sum((e.principal_due for e in schedule if entry_status(e, now) == PAID), ZERO)
    repaid += schedule.total_prepaid
    return min((repaid / principal * 100).quantize(CENT), Decimal(100))
