"""What-if previews for early repayment, refinancing and payment plans.

Nothing here changes the loan or schedule it is given: every preview is
computed on a hypothetical copy and diffed against the unmodified baseline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .data_models import RATE_KNOWN, REDUCE_TERM, Loan, Prepayment, Schedule
from .engine import amortize_tail, generate_schedule, relevel_payment
from .errors import InvalidLoanError
from .rate_solver import resolve_loan
from .reconciler import apply_lump_sum, ensure_current, split_index
from .utils import ZERO, add_months, round_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScenarioTotals:
    total_interest: Decimal
    total_fees: Decimal
    total_paid: Decimal
    installments: int
    end_date: Optional[date]


def totals(schedule: Schedule) -> ScenarioTotals:
    """Aggregate what the borrower pays over ``schedule``, lump sums included."""
    return ScenarioTotals(
        total_interest=schedule.total_interest,
        total_fees=schedule.total_fees,
        total_paid=schedule.total_due + schedule.total_prepaid,
        installments=len(schedule),
        end_date=schedule.entries[-1].due_date if schedule.entries else None,
    )


@dataclass(frozen=True)
class RepaymentPreview:
    """Continue-as-is versus apply-the-lump-sum-now.

    ``term_change`` is negative when the loan gets shorter.
    ``net_savings`` is the interest and fees saved minus the early
    repayment penalty.
    """

    baseline: ScenarioTotals
    adjusted: ScenarioTotals
    interest_saved: Decimal
    term_change: int
    penalty: Decimal
    net_savings: Decimal
    surplus: Decimal
    schedule: Schedule


@dataclass(frozen=True)
class RefinancePreview:
    baseline: ScenarioTotals
    adjusted: ScenarioTotals
    interest_saved: Decimal
    fee: Decimal
    net_savings: Decimal
    new_payment: Decimal
    schedule: Schedule


def _cost(t: ScenarioTotals) -> Decimal:
    return t.total_interest + t.total_fees


def preview_early_repayment(
    loan: Loan,
    schedule: Schedule,
    lump_sum: Decimal,
    strategy: str,
    effective_date: date,
) -> RepaymentPreview:
    """Preview applying ``lump_sum`` on ``effective_date``.

    A lump sum at least as large as the outstanding balance closes the loan
    with one final installment; the unused part is returned as ``surplus``.
    """
    result = apply_lump_sum(loan, schedule, lump_sum, strategy, effective_date)
    baseline = totals(schedule)
    adjusted = totals(result.schedule)
    return RepaymentPreview(
        baseline=baseline,
        adjusted=adjusted,
        interest_saved=baseline.total_interest - adjusted.total_interest,
        term_change=adjusted.installments - baseline.installments,
        penalty=result.penalty,
        net_savings=_cost(baseline) - _cost(adjusted) - result.penalty,
        surplus=result.surplus,
        schedule=result.schedule,
    )


def preview_refinance(
    loan: Loan,
    schedule: Schedule,
    new_annual_rate: Decimal,
    effective_date: date,
    fee: Decimal = ZERO,
) -> RefinancePreview:
    """Preview moving the unpaid part of the loan to ``new_annual_rate``.

    The installments left after ``effective_date`` keep their number; the
    installment is recalculated for the new rate. ``fee`` is the one-off
    cost of refinancing and is subtracted from the savings.
    """
    ensure_current(loan, schedule)
    if new_annual_rate < 0:
        raise InvalidLoanError("Annual rate cannot be negative")
    if fee < 0:
        raise InvalidLoanError("Refinancing fee cannot be negative")
    resolved = resolve_loan(loan)
    split = split_index(schedule, effective_date)
    if split >= len(schedule.entries):
        raise InvalidLoanError(f"Nothing is left to refinance after {effective_date.isoformat()}")

    head = schedule.entries[:split]
    if head:
        outstanding = head[-1].balance_after
        level = head[-1].level_payment
        carried = [p for p in resolved.prepayments if p.effective_date >= head[-1].due_date]
    else:
        outstanding = resolved.principal
        level = ZERO
        carried = list(resolved.prepayments)
    remaining = len(schedule.entries) - split
    refinanced = replace(resolved, annual_rate=Decimal(new_annual_rate))
    level = relevel_payment(refinanced, outstanding, remaining, level)
    tail = amortize_tail(refinanced, outstanding, split + 1, remaining, level, carried)
    new_schedule = Schedule(loan_id=loan.id, version=loan.version, entries=tuple(head) + tuple(tail))

    baseline = totals(schedule)
    adjusted = totals(new_schedule)
    adjusted = replace(adjusted, total_fees=adjusted.total_fees + fee, total_paid=adjusted.total_paid + fee)
    return RefinancePreview(
        baseline=baseline,
        adjusted=adjusted,
        interest_saved=baseline.total_interest - adjusted.total_interest,
        fee=fee,
        net_savings=_cost(baseline) - _cost(adjusted),
        new_payment=tail[0].total_due if tail else ZERO,
        schedule=new_schedule,
    )


@dataclass(frozen=True)
class Scenario:
    """A repayment plan to compare against the contract.

    Attributes
    ----------
    name: str
        Label of the scenario.
    extra_monthly: Decimal
        Paid on top of every installment, shortening the loan.
    lump_sums: Tuple[Prepayment, ...]
        One-off lump sums.
    annual_rate: Decimal, optional
        Rate to use instead of the contractual one.
    """

    name: str
    extra_monthly: Decimal = ZERO
    lump_sums: Tuple[Prepayment, ...] = ()
    annual_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class ScenarioResult:
    name: str
    totals: ScenarioTotals
    months_saved: int
    interest_saved: Decimal
    total_saved: Decimal


@dataclass(frozen=True)
class ScenarioComparison:
    baseline: ScenarioTotals
    results: List[ScenarioResult]
    best: Optional[str]


def _scenario_loan(resolved: Loan, scenario: Scenario) -> Loan:
    if scenario.extra_monthly < 0:
        raise InvalidLoanError("Extra monthly payment cannot be negative")
    prepayments = list(resolved.prepayments)
    if scenario.extra_monthly > 0:
        extra = round_money(scenario.extra_monthly)
        prepayments += [
            Prepayment(add_months(resolved.start_date, k), extra, REDUCE_TERM)
            for k in range(1, resolved.term)
        ]
    prepayments += list(scenario.lump_sums)
    changed = replace(resolved, prepayments=tuple(prepayments))
    if scenario.annual_rate is not None:
        changed = replace(changed, annual_rate=Decimal(scenario.annual_rate), payment=None,
                          calculation_mode=RATE_KNOWN)
    return changed


def compare_scenarios(loan: Loan, scenarios: Sequence[Scenario]) -> ScenarioComparison:
    """Run every scenario and pick the one with the lowest total paid."""
    resolved = resolve_loan(loan)
    baseline = totals(generate_schedule(resolved))
    results = []
    for scenario in scenarios:
        outcome = totals(generate_schedule(_scenario_loan(resolved, scenario)))
        results.append(ScenarioResult(
            name=scenario.name,
            totals=outcome,
            months_saved=baseline.installments - outcome.installments,
            interest_saved=baseline.total_interest - outcome.total_interest,
            total_saved=baseline.total_paid - outcome.total_paid,
        ))
        logger.debug("Scenario %s: %s paid in %d installments", scenario.name, outcome.total_paid,
                     outcome.installments)
    best = min(results, key=lambda r: r.totals.total_paid).name if results else None
    return ScenarioComparison(baseline=baseline, results=results, best=best)
