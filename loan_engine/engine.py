"""Core calculation engine for the loan engine.

This module builds amortization schedules for annuity (equal installment),
fixed-principal (decreasing installment) and interest-only loans. It
supports one-time and recurring fees and prepayments (lump sums) that
either shorten the loan or lower the installments. Results are returned as
an immutable ``Schedule`` along with a summary dictionary.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from .data_models import (
    ANNUITY,
    FIXED_PRINCIPAL,
    RECALCULATE_PAYMENT,
    SOLVE_TERM,
    Loan,
    Prepayment,
    Schedule,
    ScheduleEntry,
)
from .day_count import period_interest
from .effective_rate import effective_annual_rate, flat_cost_rate
from .rate_solver import annuity_payment, periodic_rate, resolve_loan
from .utils import ZERO, add_months, round_money

logger = logging.getLogger(__name__)


def level_payment(loan: Loan) -> Decimal:
    """Return the level amount the schedule of a resolved loan starts with.

    For annuities this is the installment without recurring fees, for
    fixed-principal loans the constant principal part and for
    interest-only loans zero (nothing is amortized before the balloon).
    """
    if loan.style == ANNUITY:
        return round_money(loan.payment - loan.recurring_fees)
    if loan.style == FIXED_PRINCIPAL:
        if loan.calculation_mode == SOLVE_TERM:
            interest = loan.principal * periodic_rate(loan.annual_rate)
            return round_money(loan.payment - loan.recurring_fees - interest)
        return round_money((loan.principal - loan.balloon) / Decimal(loan.term))
    return ZERO


def relevel_payment(loan: Loan, balance: Decimal, remaining: int, level: Decimal) -> Decimal:
    """Re-amortize ``balance`` over ``remaining`` installments.

    The balloon stays due with the last installment unless ``balance`` has
    dropped below it. Interest-only loans keep ``level``.
    """
    balloon = min(loan.balloon, balance)
    if loan.style == ANNUITY:
        return round_money(annuity_payment(balance, periodic_rate(loan.annual_rate), remaining, balloon))
    if loan.style == FIXED_PRINCIPAL:
        return round_money((balance - balloon) / Decimal(remaining))
    return level


def _fee_due(loan: Loan, installment_no: int) -> Decimal:
    fee = loan.recurring_fees
    if installment_no == 1:
        fee += loan.one_time_fees
    return fee


def amortize_tail(
    loan: Loan,
    balance: Decimal,
    first_installment: int,
    periods: int,
    level: Decimal,
    prepayments: Iterable[Prepayment] = (),
) -> List[ScheduleEntry]:
    """Amortize ``balance`` starting with installment ``first_installment``.

    Parameters
    ----------
    loan: Loan
        A resolved loan; its rate, style, fees and start date are used.
    balance: Decimal
        Principal outstanding before ``first_installment``.
    first_installment: int
        Number of the first installment to produce.
    periods: int
        Installments left in the contract. Fewer entries are produced when
        the balance is repaid early.
    level: Decimal
        Level principal+interest (annuity) or principal part (fixed
        principal) to continue with.
    prepayments: Iterable[Prepayment]
        Lump sums to apply; each one lowers the balance before the first
        installment due after its effective date.

    Returns
    -------
    List[ScheduleEntry]
        Pending entries. The last one always leaves a zero balance.
    """
    pending = sorted(prepayments, key=lambda p: p.effective_date)
    entries: List[ScheduleEntry] = []
    last_installment = first_installment + periods - 1
    installment_no = first_installment
    while balance > 0 and installment_no <= last_installment:
        due_date = add_months(loan.start_date, installment_no)
        remaining = last_installment - installment_no + 1

        # Lump sums paid since the previous installment
        prepaid = ZERO
        while pending and pending[0].effective_date < due_date:
            prepayment = pending.pop(0)
            applied = min(prepayment.amount, balance)
            balance -= applied
            prepaid += applied
            if prepayment.strategy == RECALCULATE_PAYMENT and balance > 0:
                level = relevel_payment(loan, balance, remaining, level)
        fee = _fee_due(loan, installment_no)
        if prepaid and balance == 0:
            # Closing entry: the lump sum repaid the loan in full
            entries.append(ScheduleEntry(
                installment_no=installment_no,
                due_date=due_date,
                principal_due=ZERO,
                interest_due=ZERO,
                fee_due=fee if installment_no == 1 else ZERO,
                total_due=fee if installment_no == 1 else ZERO,
                balance_after=ZERO,
                prepayment=prepaid,
                level_payment=level,
            ))
            break

        period_start = add_months(loan.start_date, installment_no - 1)
        interest = round_money(period_interest(balance, loan.annual_rate, period_start, due_date, loan.day_count))
        if remaining <= 1:
            principal = balance
        elif loan.style == ANNUITY:
            principal = min(max(level - interest, ZERO), balance)
        elif loan.style == FIXED_PRINCIPAL:
            principal = min(level, balance)
        else:
            principal = ZERO
        balance -= principal
        entries.append(ScheduleEntry(
            installment_no=installment_no,
            due_date=due_date,
            principal_due=principal,
            interest_due=interest,
            fee_due=fee,
            total_due=principal + interest + fee,
            balance_after=balance,
            prepayment=prepaid,
            level_payment=level,
        ))
        installment_no += 1
    return entries


def generate_schedule(loan: Loan) -> Schedule:
    """Generate the complete schedule of ``loan``.

    Missing variables are solved first. Every invariant of a schedule holds
    for the result: installments are numbered from 1 without gaps, the
    balance never increases and ends at exactly zero, and the principal
    parts plus the lump sums add up to the principal.
    """
    resolved = resolve_loan(loan)
    entries = amortize_tail(
        resolved,
        resolved.principal,
        1,
        resolved.term,
        level_payment(resolved),
        resolved.prepayments,
    )
    logger.debug("Generated %d installments for loan %s", len(entries), loan.id)
    return Schedule(loan_id=loan.id, version=loan.version, entries=tuple(entries))


def compute_schedule(loan: Loan) -> Tuple[Schedule, Dict[str, object]]:
    """Compute the amortization schedule and summary for a loan.

    Returns
    -------
    schedule: Schedule
        The generated schedule.
    summary: Dict[str, object]
        Aggregate metrics including the solved variables, total interest,
        fees and lump sums, total cost, effective and flat cost rates,
        original end date, new end date and number of installments.
    """
    resolved = resolve_loan(loan)
    schedule = generate_schedule(resolved)
    original_end_date: date = add_months(resolved.start_date, resolved.term)
    new_end_date = schedule.entries[-1].due_date if schedule.entries else resolved.start_date
    total_paid = schedule.total_due + schedule.total_prepaid
    try:
        max_payment = max(float(e.total_due) for e in schedule if e.total_due > 0)
    except ValueError:
        max_payment = 0.0

    summary = {
        "principal": float(resolved.principal),
        "annual_rate": float(resolved.annual_rate),
        "term_months": resolved.term,
        "payment": float(resolved.payment),
        "total_interest": float(schedule.total_interest),
        "total_fees": float(schedule.total_fees),
        "total_prepaid": float(schedule.total_prepaid),
        "total_cost": float(total_paid),
        "effective_rate": float(effective_annual_rate(schedule, resolved.principal)),
        "flat_rate": float(flat_cost_rate(schedule, resolved.principal)),
        "original_end_date": original_end_date.strftime("%Y-%m"),
        "new_end_date": new_end_date.strftime("%Y-%m"),
        "installments": len(schedule),
        "max_payment": max_payment,
    }
    return schedule, summary
