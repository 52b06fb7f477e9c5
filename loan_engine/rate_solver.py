"""Solve the unknown variable of a loan.

A monthly loan is described by three variables: the nominal annual rate,
the number of installments (term) and the periodic installment (payment).
Given any two of them this module computes the third:

* the payment has a closed form for every amortization style;
* the term has a closed (logarithmic) form for annuities and a simple one
  for fixed-principal loans;
* the rate of an annuity has no closed form and is found iteratively with
  :func:`find_root`, a Newton-Raphson search that falls back to bisection
  whenever a Newton step would leave the bracketing interval.

Known payments include recurring fees; they are netted out before solving.
A balloon is principal left for the final installment; the level payments
amortize only the rest. The solver always works with the periodic rate
(annual rate / 12); schedules using another day count convention absorb the
difference in their final installment.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from .data_models import (
    ANNUITY,
    CALCULATION_MODES,
    DAY_COUNTS,
    FIXED_PRINCIPAL,
    INTEREST_ONLY,
    RATE_KNOWN,
    SOLVE_RATE,
    SOLVE_TERM,
    STRATEGIES,
    STYLES,
    Loan,
)
from .errors import ConvergenceError, InvalidLoanError
from .utils import CENT, ZERO, round_money

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("1e-8")  # relative, on the periodic rate
MAX_ITERATIONS = 100
MAX_ANNUAL_RATE = Decimal("100")  # upper end of the rate search, in percent
MAX_TERM = 600  # longest term solve_term will produce, 50 years


def periodic_rate(annual_rate: Decimal) -> Decimal:
    """Convert a nominal annual rate in percent to a monthly decimal rate."""
    return (Decimal(annual_rate) / Decimal(100)) / Decimal(12)


def annuity_payment(principal: Decimal, rate_per_month: Decimal, term: int, balloon: Decimal = ZERO) -> Decimal:
    """Return the annuity (equal installment) monthly payment for a loan.

    The formula is:

        payment = (P - B / (1 + i)^n) * (i * (1 + i)^n) / ((1 + i)^n - 1)

    where ``P`` is the principal, ``B`` the balloon left for the last
    installment, ``i`` is the monthly interest rate and ``n`` is the number
    of payments. When the interest rate is zero, the payment simplifies to
    ``(P - B) / n``.
    """
    if term <= 0:
        raise InvalidLoanError("Term must be positive")
    if rate_per_month == 0:
        return (principal - balloon) / Decimal(term)
    factor = (1 + rate_per_month) ** term
    return (principal - balloon / factor) * (rate_per_month * factor) / (factor - 1)


def _annuity_payment_derivative(
    principal: Decimal, rate_per_month: Decimal, term: int, balloon: Decimal = ZERO
) -> Decimal:
    # d/di of (P*q^n - B)*i/(q^n-1) with q = 1+i; zero signals "use bisection"
    if rate_per_month == 0:
        return ZERO
    q = 1 + rate_per_month
    qn = q ** term
    growth = rate_per_month * term * q ** (term - 1)
    return (principal * (qn * (qn - 1) - growth) - balloon * (qn - 1 - growth)) / (qn - 1) ** 2


def installment_payment(
    style: str, principal: Decimal, rate_per_month: Decimal, term: int, balloon: Decimal = ZERO
) -> Decimal:
    """Return the unrounded first installment (without fees) of a loan.

    For fixed-principal loans this is the largest installment; for
    interest-only loans it is the interest charged each period before the
    final balloon. A single-installment loan repays ``P * (1 + i)`` in
    every style.
    """
    if term <= 0:
        raise InvalidLoanError("Term must be positive")
    if term == 1:
        return principal * (1 + rate_per_month)
    if style == ANNUITY:
        return annuity_payment(principal, rate_per_month, term, balloon)
    if style == FIXED_PRINCIPAL:
        return (principal - balloon) / Decimal(term) + principal * rate_per_month
    if style == INTEREST_ONLY:
        return principal * rate_per_month
    raise InvalidLoanError(f"Unknown amortization style: {style}")


def find_root(
    f: Callable[[Decimal], Decimal],
    df: Optional[Callable[[Decimal], Decimal]],
    low: Decimal,
    high: Decimal,
    tolerance: Decimal = TOLERANCE,
    max_iterations: int = MAX_ITERATIONS,
) -> Decimal:
    """Find ``x`` in ``[low, high]`` with ``f(x) == 0``.

    ``f`` must change sign over the interval. Each iteration takes a Newton
    step when ``df`` is given and the step stays strictly inside the
    current bracket, and bisects otherwise, so the search always
    terminates. Convergence is reached when successive estimates differ by
    less than ``tolerance`` relative to the estimate.

    Raises
    ------
    ConvergenceError
        If the interval does not bracket a root or the iteration budget is
        exhausted.
    """
    f_low = f(low)
    f_high = f(high)
    if f_low == 0:
        return low
    if f_high == 0:
        return high
    if (f_low > 0) == (f_high > 0):
        raise ConvergenceError(f"No root between {low} and {high}")
    x = (low + high) / 2
    for iteration in range(1, max_iterations + 1):
        fx = f(x)
        if fx == 0:
            return x
        # Keep the bracket around the sign change
        if (fx > 0) == (f_low > 0):
            low, f_low = x, fx
        else:
            high = x
        candidate = None
        slope = df(x) if df is not None else ZERO
        if slope != 0:
            newton = x - fx / slope
            if low < newton < high:
                candidate = newton
        if candidate is None:
            candidate = (low + high) / 2
        logger.debug("root search iteration %d: x=%s f(x)=%s", iteration, x, fx)
        if abs(candidate - x) <= tolerance * (abs(candidate) + tolerance):
            return candidate
        x = candidate
    raise ConvergenceError(f"Root search did not converge within {max_iterations} iterations")


def _whole_periods(exact: Decimal, per_period: Decimal) -> int:
    """Round a fractional term to whole installments.

    The fraction is rounded up (the last installment is then smaller),
    unless it is worth no more than the one-cent drift per installment that
    comes from rounding the payment, in which case the nearest whole term
    is used.
    """
    nearest = exact.quantize(Decimal(1), rounding=ROUND_HALF_UP)
    if nearest >= 1 and abs(exact - nearest) * per_period <= nearest * CENT:
        return int(nearest)
    return max(1, int(exact.quantize(Decimal(1), rounding=ROUND_CEILING)))


def solve_payment(
    principal: Decimal, annual_rate: Decimal, term: int, style: str = ANNUITY, balloon: Decimal = ZERO
) -> Decimal:
    """Return the periodic installment (without fees), rounded to cents."""
    return round_money(installment_payment(style, principal, periodic_rate(annual_rate), term, balloon))


def solve_rate(
    principal: Decimal, term: int, payment: Decimal, style: str = ANNUITY, balloon: Decimal = ZERO
) -> Decimal:
    """Return the nominal annual rate (percent) matching a known installment.

    ``payment`` excludes fees.

    Raises
    ------
    ConvergenceError
        If only a negative rate or a rate above the search range would
        produce the payment, or if the search does not converge.
    """
    if term == 1 or style != ANNUITY:
        if term == 1:
            rate = payment / principal - 1
        elif style == FIXED_PRINCIPAL:
            rate = (payment - (principal - balloon) / Decimal(term)) / principal
        else:
            rate = payment / principal
        annual = rate * Decimal(1200)
        if annual < 0:
            raise ConvergenceError("The payment implies a negative interest rate")
        if annual > MAX_ANNUAL_RATE:
            raise ConvergenceError(f"The payment implies a rate above {MAX_ANNUAL_RATE}%")
        return annual

    def f(rate: Decimal) -> Decimal:
        return annuity_payment(principal, rate, term, balloon) - payment

    def df(rate: Decimal) -> Decimal:
        return _annuity_payment_derivative(principal, rate, term, balloon)

    high = periodic_rate(MAX_ANNUAL_RATE)
    if f(ZERO) > 0:
        raise ConvergenceError(
            f"Payment {payment} does not repay {principal} in {term} installments "
            "at any non-negative rate"
        )
    if f(high) < 0:
        raise ConvergenceError(f"The payment implies a rate above {MAX_ANNUAL_RATE}%")
    rate = find_root(f, df, ZERO, high)
    return rate * Decimal(1200)


def solve_term(
    principal: Decimal, annual_rate: Decimal, payment: Decimal, style: str = ANNUITY, balloon: Decimal = ZERO
) -> int:
    """Return the number of installments needed to repay ``principal``.

    ``payment`` excludes fees; for fixed-principal loans it is the first
    installment. With a balloon the level payments only have to bring the
    balance down to ``balloon``.

    Raises
    ------
    InvalidLoanError
        If the payment does not exceed one period's interest (the term
        would be infinite), the loan is interest-only, or the term would
        exceed :data:`MAX_TERM` installments.
    """
    if style == INTEREST_ONLY:
        raise InvalidLoanError("The term of an interest-only loan cannot be solved from its payment")
    rate = periodic_rate(annual_rate)
    interest = principal * rate
    if payment <= interest:
        raise InvalidLoanError(
            f"Payment {payment} does not exceed the interest of {round_money(interest)} "
            "per period; the loan would never be repaid"
        )
    amortized = principal - balloon
    if style == FIXED_PRINCIPAL:
        exact = amortized / (payment - interest)
        per_period = amortized / exact
    elif rate == 0:
        exact = amortized / payment
        per_period = payment
    elif balloon:
        exact = ((payment - balloon * rate) / (payment - interest)).ln() / (1 + rate).ln()
        per_period = payment
    else:
        exact = -(1 - interest / payment).ln() / (1 + rate).ln()
        per_period = payment
    term = _whole_periods(exact, per_period)
    if term > MAX_TERM:
        raise InvalidLoanError(f"The loan would need {term} installments, more than {MAX_TERM}")
    return term


def infer_mode(annual_rate, term, payment) -> str:
    """Guess the calculation mode from which variables are present."""
    if annual_rate is not None and term is not None:
        return RATE_KNOWN
    if term is not None and payment is not None:
        return SOLVE_RATE
    if annual_rate is not None and payment is not None:
        return SOLVE_TERM
    raise InvalidLoanError("Two of rate, term and payment are required")


def solve(
    mode: str,
    principal: Decimal,
    term: Optional[int] = None,
    annual_rate: Optional[Decimal] = None,
    payment: Optional[Decimal] = None,
    style: str = ANNUITY,
    recurring_fees: Decimal = ZERO,
    balloon: Decimal = ZERO,
):
    """Resolve the unknown variable for ``mode``.

    Returns the installment including recurring fees for ``rate_known``,
    the annual rate in percent for ``solve_rate`` and the integer term for
    ``solve_term``.
    """
    if mode == RATE_KNOWN:
        return solve_payment(principal, annual_rate, term, style, balloon) + recurring_fees
    net = payment - recurring_fees
    if net <= 0:
        raise InvalidLoanError("Payment must exceed the recurring fees")
    if mode == SOLVE_RATE:
        return solve_rate(principal, term, net, style, balloon)
    if mode == SOLVE_TERM:
        return solve_term(principal, annual_rate, net, style, balloon)
    raise InvalidLoanError(f"Unknown calculation mode: {mode}")


def _require(value, name: str, mode: str) -> None:
    if value is None:
        raise InvalidLoanError(f"{name} is required in {mode} mode")


def validate_loan(loan: Loan) -> None:
    """Reject loans that cannot produce a schedule.

    Invalid values are never clamped; every problem raises
    :class:`InvalidLoanError` before any schedule is generated.
    """
    if loan.principal is None or loan.principal <= 0:
        raise InvalidLoanError("Principal must be positive")
    if loan.principal != round_money(loan.principal):
        raise InvalidLoanError("Principal must be a whole number of cents")
    if loan.style not in STYLES:
        raise InvalidLoanError(f"Unknown amortization style: {loan.style}")
    if loan.calculation_mode not in CALCULATION_MODES:
        raise InvalidLoanError(f"Unknown calculation mode: {loan.calculation_mode}")
    if loan.calculation_mode in (RATE_KNOWN, SOLVE_TERM):
        _require(loan.annual_rate, "annual_rate", loan.calculation_mode)
    if loan.calculation_mode in (RATE_KNOWN, SOLVE_RATE):
        _require(loan.term, "term", loan.calculation_mode)
    if loan.calculation_mode in (SOLVE_RATE, SOLVE_TERM):
        _require(loan.payment, "payment", loan.calculation_mode)
    if loan.annual_rate is not None:
        if loan.annual_rate < 0:
            raise InvalidLoanError("Annual rate cannot be negative")
        if loan.annual_rate > MAX_ANNUAL_RATE:
            logger.warning("Loan %s has an annual rate of %s%%", loan.id, loan.annual_rate)
    if loan.term is not None:
        if isinstance(loan.term, bool) or not isinstance(loan.term, int):
            raise InvalidLoanError("Term must be a whole number of months")
        if loan.term < 1:
            raise InvalidLoanError("Term must be at least one month")
    if loan.payment is not None and loan.payment <= 0:
        raise InvalidLoanError("Payment must be positive")
    if loan.day_count not in DAY_COUNTS:
        raise InvalidLoanError(f"Unknown day count convention: {loan.day_count}")
    if loan.balloon:
        if loan.balloon < 0 or loan.balloon >= loan.principal:
            raise InvalidLoanError("Balloon must lie between zero and the principal")
        if loan.balloon != round_money(loan.balloon):
            raise InvalidLoanError("Balloon must be a whole number of cents")
        if loan.style == INTEREST_ONLY:
            raise InvalidLoanError("An interest-only loan already repays its whole principal at maturity")
    for fee in loan.fees:
        if fee.amount < 0:
            raise InvalidLoanError(f"Fee {fee.name!r} cannot be negative")
    for prepayment in loan.prepayments:
        if prepayment.amount <= 0:
            raise InvalidLoanError("Prepayment amounts must be positive")
        if prepayment.strategy not in STRATEGIES:
            raise InvalidLoanError(f"Unknown prepayment strategy: {prepayment.strategy}")
    if loan.early_repayment_penalty_pct < 0:
        raise InvalidLoanError("Early repayment penalty cannot be negative")


def resolve_loan(loan: Loan) -> Loan:
    """Validate ``loan`` and return a copy with rate, term and payment set."""
    validate_loan(loan)
    mode = loan.calculation_mode
    fees = loan.recurring_fees
    if mode == RATE_KNOWN:
        payment = solve(mode, loan.principal, term=loan.term, annual_rate=loan.annual_rate,
                        style=loan.style, recurring_fees=fees, balloon=loan.balloon)
        return replace(loan, payment=payment)
    if mode == SOLVE_RATE:
        rate = solve(mode, loan.principal, term=loan.term, payment=loan.payment,
                     style=loan.style, recurring_fees=fees, balloon=loan.balloon)
        logger.debug("Solved rate of loan %s: %s%%", loan.id, rate)
        return replace(loan, annual_rate=rate)
    term = solve(mode, loan.principal, annual_rate=loan.annual_rate, payment=loan.payment,
                 style=loan.style, recurring_fees=fees, balloon=loan.balloon)
    logger.debug("Solved term of loan %s: %d", loan.id, term)
    return replace(loan, term=term)
