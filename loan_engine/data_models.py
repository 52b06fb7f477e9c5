"""Data models for the loan engine.

This module defines dataclasses representing the entities the engine works
with: fee definitions, prepayments (lump sums), the loan itself, individual
schedule entries and the schedule that groups them. All of them are frozen;
every operation of the engine returns new instances instead of patching
existing ones, and ``dataclasses.replace`` is the way to derive a modified
copy.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Tuple

ANNUITY = "annuity"
FIXED_PRINCIPAL = "fixed_principal"
INTEREST_ONLY = "interest_only"
STYLES = (ANNUITY, FIXED_PRINCIPAL, INTEREST_ONLY)

RATE_KNOWN = "rate_known"  # rate and term known, payment derived
SOLVE_RATE = "solve_rate"  # term and payment known
SOLVE_TERM = "solve_term"  # rate and payment known
CALCULATION_MODES = (RATE_KNOWN, SOLVE_RATE, SOLVE_TERM)

REDUCE_TERM = "reduce_term"
RECALCULATE_PAYMENT = "recalculate_payment"
STRATEGIES = (REDUCE_TERM, RECALCULATE_PAYMENT)

PENDING = "pending"
PAID = "paid"
OVERDUE = "overdue"

PERIODIC = "periodic"  # every installment accrues annual_rate / 12
E30_360 = "30E/360"
ACT_360 = "ACT/360"
ACT_365 = "ACT/365"
DAY_COUNTS = (PERIODIC, E30_360, ACT_360, ACT_365)


@dataclass(frozen=True)
class Fee:
    """A fee charged on top of principal and interest.

    Attributes
    ----------
    name: str
        Label shown to the user, e.g. ``"setup"`` or ``"insurance"``.
    amount: Decimal
        Amount charged each time the fee applies.
    recurring: bool
        ``True`` charges the fee with every installment; ``False`` charges
        it once, with the first installment.
    """

    name: str
    amount: Decimal
    recurring: bool = False


@dataclass(frozen=True)
class Prepayment:
    """An unscheduled extra principal payment (lump sum).

    Attributes
    ----------
    effective_date: date
        The day the money is paid. It reduces the balance before the first
        installment due after this date.
    amount: Decimal
        Extra principal paid.
    strategy: str
        ``"reduce_term"`` keeps the installment and shortens the loan.
        ``"recalculate_payment"`` keeps the remaining term and lowers the
        installment.
    """

    effective_date: date
    amount: Decimal
    strategy: str = REDUCE_TERM


@dataclass(frozen=True)
class Loan:
    """Contractual facts of a loan.

    Exactly which of ``annual_rate``, ``term`` and ``payment`` must be given
    depends on ``calculation_mode``; the missing one is solved when the
    schedule is generated. ``payment`` is the periodic installment the
    borrower pays, recurring fees included (for fixed-principal loans it is
    the first installment).

    ``balloon`` is principal left for the final installment of an annuity
    or fixed-principal loan; the level installments amortize only the rest.
    ``day_count`` decides how much of the annual rate each installment
    period accrues.
    """

    id: str
    principal: Decimal
    start_date: date  # disbursement date, installment k is due k months later
    annual_rate: Optional[Decimal] = None  # nominal annual rate in percent
    term: Optional[int] = None  # number of monthly installments
    payment: Optional[Decimal] = None
    calculation_mode: str = RATE_KNOWN
    style: str = ANNUITY
    fees: Tuple[Fee, ...] = ()
    prepayments: Tuple[Prepayment, ...] = ()
    early_repayment_penalty_pct: Decimal = Decimal("0")
    balloon: Decimal = Decimal("0")
    day_count: str = PERIODIC
    version: int = 1

    @property
    def recurring_fees(self) -> Decimal:
        return sum((f.amount for f in self.fees if f.recurring), Decimal("0"))

    @property
    def one_time_fees(self) -> Decimal:
        return sum((f.amount for f in self.fees if not f.recurring), Decimal("0"))


@dataclass(frozen=True)
class ScheduleEntry:
    """One installment of the amortization schedule.

    ``total_due`` is always ``principal_due + interest_due + fee_due``.
    ``prepayment`` is a lump sum applied just before this installment; it
    lowers the balance the installment's interest is charged on but is not
    part of ``total_due``.

    ``delta_applied``/``delta_target`` remember how much principal an over-
    or underpayment of this installment moved from/to which later
    installment, and ``carried_delta`` is the matching amount on the
    receiving side, so the adjustment can be undone. ``carried_from`` lists
    the installments whose adjustments landed here. ``prepaid_from_payment``
    is the part of an overpayment that was applied as a lump sum and is
    therefore recorded on the loan instead of in the schedule.

    ``level_payment`` is the scheduled principal+interest level the entry
    was generated with (annuity) or its constant principal part (fixed
    principal); regenerating the rest of a schedule continues from it.
    """

    installment_no: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    fee_due: Decimal
    total_due: Decimal
    balance_after: Decimal
    prepayment: Decimal = Decimal("0")
    level_payment: Decimal = Decimal("0")
    status: str = PENDING
    paid_at: Optional[datetime] = None
    paid_amount: Optional[Decimal] = None
    delta_applied: Decimal = Decimal("0")
    delta_target: Optional[int] = None
    carried_delta: Decimal = Decimal("0")
    carried_from: Tuple[int, ...] = ()
    prepaid_from_payment: Decimal = Decimal("0")

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None


@dataclass(frozen=True)
class Schedule:
    """The complete installment schedule of one loan generation."""

    loan_id: str
    version: int
    entries: Tuple[ScheduleEntry, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def entry(self, installment_no: int) -> Optional[ScheduleEntry]:
        """Return the entry with the given installment number, if any."""
        index = installment_no - 1
        if 0 <= index < len(self.entries) and self.entries[index].installment_no == installment_no:
            return self.entries[index]
        for e in self.entries:
            if e.installment_no == installment_no:
                return e
        return None

    @property
    def total_principal(self) -> Decimal:
        return sum((e.principal_due for e in self.entries), Decimal("0"))

    @property
    def total_prepaid(self) -> Decimal:
        return sum((e.prepayment for e in self.entries), Decimal("0"))

    @property
    def total_interest(self) -> Decimal:
        return sum((e.interest_due for e in self.entries), Decimal("0"))

    @property
    def total_fees(self) -> Decimal:
        return sum((e.fee_due for e in self.entries), Decimal("0"))

    @property
    def total_due(self) -> Decimal:
        return sum((e.total_due for e in self.entries), Decimal("0"))
