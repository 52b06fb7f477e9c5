"""Reconcile real payments against a generated schedule.

Every function here takes an immutable ``Schedule`` and returns a new one.
Entry-level operations (:func:`mark_paid`, :func:`change_paid_date`,
:func:`remove_payment`) are idempotent so that a repeated or concurrent call
converges on the same state. Operations that change the contract
(:func:`apply_lump_sum`, :func:`amend_loan`) regenerate the unpaid tail of
the schedule wholesale and bump the loan's generation version.

When an installment is paid with a different amount than scheduled, the
difference moves principal between the paid installment and the next unpaid
one only. Whatever the next installment cannot absorb is reported back to
the caller instead of being spread over the schedule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from .data_models import STRATEGIES, Loan, Prepayment, Schedule, ScheduleEntry
from .engine import amortize_tail, generate_schedule, level_payment
from .errors import InvalidLoanError, ScheduleConflictError
from .rate_solver import resolve_loan
from .status import classify
from .utils import ZERO, as_datetime, round_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of recording a payment.

    Attributes
    ----------
    schedule: Schedule
        The reconciled schedule.
    delta: Decimal
        Amount paid minus amount scheduled.
    surplus: Decimal
        Part of an overpayment the next installment could not absorb; the
        caller should apply it as a lump sum.
    under_collateralized: bool
        ``True`` when an underpayment could not be moved to a later
        installment, so the schedule no longer repays the principal.
    shortfall: Decimal
        The underpayment left uncovered when ``under_collateralized``.
    loan: Loan
        The amended loan, when the payment changed the contract.
    """

    schedule: Schedule
    delta: Decimal = ZERO
    surplus: Decimal = ZERO
    under_collateralized: bool = False
    shortfall: Decimal = ZERO
    loan: Optional[Loan] = None


@dataclass(frozen=True)
class LumpSumResult:
    loan: Loan
    schedule: Schedule
    applied: Decimal
    penalty: Decimal
    surplus: Decimal
    outstanding_before: Decimal
    outstanding_after: Decimal


def _index(schedule: Schedule, installment_no: int) -> int:
    for index, entry in enumerate(schedule.entries):
        if entry.installment_no == installment_no:
            return index
    raise InvalidLoanError(f"Installment {installment_no} does not exist")


def _with_entries(schedule: Schedule, updates: Dict[int, ScheduleEntry]) -> Schedule:
    entries = tuple(updates.get(i, e) for i, e in enumerate(schedule.entries))
    return replace(schedule, entries=entries)


def _holds_lump_sum(loan: Loan, entry: ScheduleEntry) -> bool:
    """Whether ``loan`` still carries the lump sum taken from ``entry``'s payment."""
    if not entry.prepaid_from_payment:
        return False
    paid_on = entry.paid_at.date()
    return any(p.amount == entry.prepaid_from_payment and p.effective_date >= paid_on for p in loan.prepayments)


def _next_unpaid(schedule: Schedule, index: int) -> Optional[int]:
    for later in range(index + 1, len(schedule.entries)):
        if not schedule.entries[later].is_paid:
            return later
    return None


def _move_principal(schedule: Schedule, source: int, target: int, amount: Decimal) -> Dict[int, ScheduleEntry]:
    """Shift ``amount`` of principal from entry ``target`` to entry ``source``.

    A negative amount moves principal the other way. Balances of the
    entries in between are adjusted so the schedule still adds up.
    """
    entries = schedule.entries
    updates = {}
    paid = entries[source]
    updates[source] = replace(
        paid,
        principal_due=paid.principal_due + amount,
        total_due=paid.total_due + amount,
        balance_after=paid.balance_after - amount,
    )
    for between in range(source + 1, target):
        entry = entries[between]
        updates[between] = replace(entry, balance_after=entry.balance_after - amount)
    receiving = entries[target]
    updates[target] = replace(
        receiving,
        principal_due=receiving.principal_due - amount,
        total_due=receiving.total_due - amount,
        carried_delta=receiving.carried_delta - amount,
    )
    return updates


def _settled(schedule: Schedule, entry: ScheduleEntry) -> PaymentResult:
    # Result describing an entry that is already paid
    delta = entry.paid_amount - (entry.total_due - entry.delta_applied)
    surplus = delta - entry.delta_applied - entry.prepaid_from_payment if delta > 0 else ZERO
    shortfall = entry.delta_applied - delta if delta < 0 else ZERO
    return PaymentResult(
        schedule,
        delta=delta,
        surplus=surplus,
        under_collateralized=shortfall > 0,
        shortfall=shortfall,
    )


def mark_paid(
    schedule: Schedule,
    installment_no: int,
    paid_at: datetime,
    now: datetime,
    actual_amount: Optional[Decimal] = None,
    loan: Optional[Loan] = None,
    lump_sum_strategy: Optional[str] = None,
) -> PaymentResult:
    """Record the payment of installment ``installment_no``.

    Parameters
    ----------
    schedule: Schedule
        The freshest schedule of the loan.
    installment_no: int
        Installment being paid.
    paid_at: datetime
        When the money was paid; may not lie after ``now``.
    now: datetime
        Reference time for status classification.
    actual_amount: Decimal, optional
        Amount actually paid. Defaults to the scheduled amount.
    loan: Loan, optional
        Required together with ``lump_sum_strategy``.
    lump_sum_strategy: str, optional
        When given, an overpayment is applied as a lump sum with this
        strategy, regenerating the unpaid tail, instead of being moved to
        the next installment. The amended loan is returned in the result.

    Calling the function again with the same arguments returns the same
    schedule. Calling it with a different amount replaces the earlier
    payment (last write wins).

    Raises
    ------
    InvalidLoanError
        If ``paid_at`` is in the future, the amount is not positive, or an
        underpayment does not even cover the interest and fees.
    """
    if paid_at > now:
        raise InvalidLoanError("A payment cannot be recorded in the future")
    if actual_amount is not None and actual_amount <= 0:
        raise InvalidLoanError("Paid amount must be positive")
    index = _index(schedule, installment_no)
    entry = schedule.entries[index]

    if entry.is_paid:
        scheduled = entry.total_due - entry.delta_applied
        amount = scheduled if actual_amount is None else round_money(actual_amount)
        if amount == entry.paid_amount:
            if paid_at != entry.paid_at:
                schedule = change_paid_date(schedule, installment_no, paid_at, now)
            return _settled(schedule, schedule.entries[index])
        logger.info("Replacing payment of installment %d of loan %s", installment_no, schedule.loan_id)
        schedule = remove_payment(schedule, installment_no, now)
        entry = schedule.entries[index]

    amount = entry.total_due if actual_amount is None else round_money(actual_amount)
    delta = amount - entry.total_due
    paid = replace(entry, paid_at=paid_at, paid_amount=amount, status=classify(entry.due_date, paid_at, now))
    schedule = _with_entries(schedule, {index: paid})
    logger.info(
        "Installment %d of loan %s paid at %s (delta %s)",
        installment_no, schedule.loan_id, paid_at.isoformat(), delta,
    )
    if delta == 0:
        return PaymentResult(schedule)

    if delta > 0 and lump_sum_strategy is not None:
        if loan is None:
            raise InvalidLoanError("The loan is required to apply an overpayment as a lump sum")
        result = apply_lump_sum(loan, schedule, delta, lump_sum_strategy, paid_at.date())
        marked = replace(result.schedule.entries[index], prepaid_from_payment=result.applied)
        schedule = _with_entries(result.schedule, {index: marked})
        return PaymentResult(schedule, delta=delta, surplus=result.surplus, loan=result.loan)

    if delta < 0 and -delta > entry.principal_due:
        raise InvalidLoanError(
            f"Payment of {amount} does not cover the interest and fees of installment {installment_no}"
        )
    target = _next_unpaid(schedule, index)
    if target is None:
        if delta > 0:
            return PaymentResult(schedule, delta=delta, surplus=delta)
        logger.warning("Loan %s is under-collateralized by %s", schedule.loan_id, -delta)
        return PaymentResult(schedule, delta=delta, under_collateralized=True, shortfall=-delta)

    receiving = schedule.entries[target]
    applied = min(delta, receiving.principal_due) if delta > 0 else delta
    if applied == 0:
        return PaymentResult(schedule, delta=delta, surplus=delta)
    updates = _move_principal(schedule, index, target, applied)
    updates[index] = replace(updates[index], delta_applied=applied, delta_target=receiving.installment_no)
    updates[target] = replace(updates[target], carried_from=receiving.carried_from + (installment_no,))
    schedule = _with_entries(schedule, updates)
    return PaymentResult(schedule, delta=delta, surplus=delta - applied if delta > 0 else ZERO)


def change_paid_date(schedule: Schedule, installment_no: int, paid_at: datetime, now: datetime) -> Schedule:
    """Move the paid-at timestamp of an already paid installment."""
    if paid_at > now:
        raise InvalidLoanError("A payment cannot be recorded in the future")
    index = _index(schedule, installment_no)
    entry = schedule.entries[index]
    if not entry.is_paid:
        raise InvalidLoanError(f"Installment {installment_no} is not paid")
    if entry.paid_at == paid_at:
        return schedule
    changed = replace(entry, paid_at=paid_at, status=classify(entry.due_date, paid_at, now))
    return _with_entries(schedule, {index: changed})


def remove_payment(schedule: Schedule, installment_no: int, now: datetime) -> Schedule:
    """Mark installment ``installment_no`` unpaid again.

    Any principal moved by an over- or underpayment is moved back, and the
    status becomes whatever :func:`~loan_engine.status.classify` says for
    ``now``. Removing the payment of an unpaid installment changes nothing.

    Raises
    ------
    ScheduleConflictError
        If the installment that received the adjustment has been paid or
        regenerated since, so the adjustment can no longer be undone, or if
        part of the payment was applied as a lump sum. That lump sum is
        part of the contract and has to be amended away first.
    """
    index = _index(schedule, installment_no)
    entry = schedule.entries[index]
    if not entry.is_paid:
        return schedule
    if entry.prepaid_from_payment:
        raise ScheduleConflictError(
            f"{entry.prepaid_from_payment} of the payment of installment {installment_no} was applied "
            "as a lump sum; amend the loan to remove that lump sum first"
        )

    updates: Dict[int, ScheduleEntry] = {}
    if entry.delta_applied != 0:
        target = next(
            (i for i, e in enumerate(schedule.entries) if e.installment_no == entry.delta_target),
            None,
        )
        receiving = schedule.entries[target] if target is not None else None
        if receiving is None or receiving.is_paid or installment_no not in receiving.carried_from:
            raise ScheduleConflictError(
                f"The adjustment of installment {installment_no} can no longer be undone; "
                f"installment {entry.delta_target} changed since"
            )
        updates = _move_principal(schedule, index, target, -entry.delta_applied)
        updates[target] = replace(
            updates[target],
            carried_from=tuple(n for n in receiving.carried_from if n != installment_no),
        )
    unpaid = replace(
        updates.get(index, entry),
        paid_at=None,
        paid_amount=None,
        delta_applied=ZERO,
        delta_target=None,
        status=classify(entry.due_date, None, now),
    )
    updates[index] = unpaid
    logger.info("Removed payment of installment %d of loan %s", installment_no, schedule.loan_id)
    return _with_entries(schedule, updates)


def mark_paid_through(schedule: Schedule, through: date, now: datetime) -> Schedule:
    """Mark every unpaid installment due on or before ``through`` as paid.

    Each installment is paid with its scheduled amount at midnight of its
    due date.
    """
    if through > now.date():
        raise InvalidLoanError("Cannot mark installments paid in the future")
    for entry in schedule.entries:
        if entry.due_date <= through and not entry.is_paid:
            schedule = mark_paid(schedule, entry.installment_no, as_datetime(entry.due_date), now).schedule
    return schedule


def pay_next(schedule: Schedule, amount: Decimal, paid_at: datetime, now: datetime) -> PaymentResult:
    """Apply ``amount`` to the first unpaid installment."""
    for entry in schedule.entries:
        if not entry.is_paid:
            return mark_paid(schedule, entry.installment_no, paid_at, now, actual_amount=amount)
    return PaymentResult(schedule, delta=amount, surplus=amount)


def ensure_current(loan: Loan, schedule: Schedule) -> None:
    """Reject a schedule that does not belong to the current loan version.

    Raises
    ------
    ScheduleConflictError
        If the schedule was generated for another loan or version, or its
        shape no longer matches the loan.
    """
    if schedule.loan_id != loan.id:
        raise ScheduleConflictError(f"Schedule belongs to loan {schedule.loan_id}, not {loan.id}")
    if schedule.version != loan.version:
        raise ScheduleConflictError(
            f"Schedule version {schedule.version} is stale; loan {loan.id} is at version {loan.version}"
        )
    numbers = [e.installment_no for e in schedule.entries]
    if not numbers or numbers != list(range(1, len(numbers) + 1)):
        raise ScheduleConflictError("Schedule installments are not numbered 1..n without gaps")
    if schedule.total_principal + schedule.total_prepaid != loan.principal:
        raise ScheduleConflictError("Schedule does not repay the loan principal")
    if schedule.entries[-1].balance_after != 0:
        raise ScheduleConflictError("Schedule does not end with a zero balance")


def split_index(schedule: Schedule, effective_date: date) -> int:
    """Count the leading entries kept when the tail is regenerated.

    Everything up to the last installment that is paid or due on or before
    ``effective_date`` is history.
    """
    split = 0
    for index, entry in enumerate(schedule.entries):
        if entry.due_date <= effective_date or entry.is_paid:
            split = index + 1
    return split


def apply_lump_sum(
    loan: Loan,
    schedule: Schedule,
    amount: Decimal,
    strategy: str,
    effective_date: date,
) -> LumpSumResult:
    """Apply an unscheduled principal payment and regenerate the tail.

    Installments that are paid or due on or before ``effective_date`` are
    kept unchanged; the rest of the schedule is regenerated from the
    lowered balance. With ``"reduce_term"`` the installment stays the same
    and the loan ends earlier; with ``"recalculate_payment"`` the remaining
    term stays the same and the installment drops. A lump sum covering the
    whole balance closes the loan with a single closing installment.

    The lump sum is recorded on the returned loan, whose version is bumped,
    so that generating the amended loan from scratch yields the same tail.

    Raises
    ------
    ScheduleConflictError
        If ``schedule`` is not the current schedule of ``loan``.
    InvalidLoanError
        If the amount or strategy is invalid, or nothing is left to repay
        after ``effective_date``.
    """
    ensure_current(loan, schedule)
    if amount <= 0:
        raise InvalidLoanError("Lump sum must be positive")
    if strategy not in STRATEGIES:
        raise InvalidLoanError(f"Unknown prepayment strategy: {strategy}")
    resolved = resolve_loan(loan)
    split = split_index(schedule, effective_date)
    if split >= len(schedule.entries):
        raise InvalidLoanError(f"Nothing is left to repay after {effective_date.isoformat()}")

    head = schedule.entries[:split]
    if head:
        last = head[-1]
        outstanding = last.balance_after
        level = last.level_payment
        recorded_date = max(effective_date, last.due_date)
        carried = [p for p in resolved.prepayments if p.effective_date >= last.due_date]
    else:
        outstanding = resolved.principal
        level = level_payment(resolved)
        recorded_date = effective_date
        carried = list(resolved.prepayments)

    applied = min(round_money(amount), outstanding)
    prepayment = Prepayment(effective_date=recorded_date, amount=applied, strategy=strategy)
    tail = amortize_tail(resolved, outstanding, split + 1, resolved.term - split, level, carried + [prepayment])
    amended = replace(loan, prepayments=tuple(loan.prepayments) + (prepayment,), version=loan.version + 1)
    new_schedule = Schedule(loan_id=loan.id, version=amended.version, entries=tuple(head) + tuple(tail))
    penalty = round_money(applied * loan.early_repayment_penalty_pct / Decimal(100))
    logger.info(
        "Applied lump sum of %s to loan %s (%s), %d installments remain",
        applied, loan.id, strategy, len(tail),
    )
    return LumpSumResult(
        loan=amended,
        schedule=new_schedule,
        applied=applied,
        penalty=penalty,
        surplus=round_money(amount) - applied,
        outstanding_before=outstanding,
        outstanding_after=outstanding - applied,
    )


def amend_loan(loan: Loan, schedule: Schedule, now: datetime, **changes) -> PaymentResult:
    """Change contractual parameters and regenerate the whole schedule.

    ``changes`` are ``Loan`` fields (rate, term, payment, fees, ...). The
    new schedule replaces the old one wholesale; payments already recorded
    are replayed onto the installments with the same numbers. The part of
    a payment that was applied as a lump sum is already among the loan's
    prepayments, so only the rest of it is replayed. If ``changes`` drop
    that prepayment, the whole payment is replayed as an ordinary one and
    can then be removed with :func:`remove_payment`.

    Raises
    ------
    ScheduleConflictError
        If ``schedule`` is stale, or the amended contract has fewer
        installments than are already paid.
    """
    ensure_current(loan, schedule)
    forbidden = {"id", "version"} & set(changes)
    if forbidden:
        raise InvalidLoanError(f"Cannot amend {', '.join(sorted(forbidden))}")
    amended = replace(loan, version=loan.version + 1, **changes)
    regenerated = generate_schedule(amended)
    paid: List[ScheduleEntry] = [e for e in schedule.entries if e.is_paid]
    if paid and paid[-1].installment_no > len(regenerated):
        raise ScheduleConflictError(
            f"Installment {paid[-1].installment_no} is paid but the amended loan has "
            f"only {len(regenerated)} installments"
        )
    result = PaymentResult(regenerated, loan=amended)
    for entry in paid:
        kept = entry.prepaid_from_payment if _holds_lump_sum(amended, entry) else ZERO
        replay = mark_paid(result.schedule, entry.installment_no, entry.paid_at, now,
                           actual_amount=entry.paid_amount - kept)
        schedule = replay.schedule
        if kept:
            index = _index(schedule, entry.installment_no)
            restored = replace(schedule.entries[index], paid_amount=entry.paid_amount, prepaid_from_payment=kept)
            schedule = _with_entries(schedule, {index: restored})
        result = replace(replay, schedule=schedule, loan=amended)
    logger.info("Amended loan %s to version %d", loan.id, amended.version)
    return result
