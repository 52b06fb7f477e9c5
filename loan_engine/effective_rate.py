"""Annualized cost of credit (RPMN).

The nominal rate ignores fees, so two loans with the same rate but
different fees look equally expensive. The effective rate is the annual
rate at which the money received (the principal) equals the present value
of everything paid back: installments, fees and lump sums.
"""

from __future__ import annotations

from decimal import Decimal

from .data_models import Schedule
from .rate_solver import find_root
from .utils import CENT, ZERO

MAX_MONTHLY_RATE = Decimal("10")


def _cash_flows(schedule: Schedule):
    return [(e.installment_no, e.total_due + e.prepayment) for e in schedule]


def effective_annual_rate(schedule: Schedule, principal: Decimal) -> Decimal:
    """Return the effective annual rate of ``schedule`` in percent.

    The monthly internal rate of return ``i`` of the cash flows is found
    with :func:`~loan_engine.rate_solver.find_root` and annualized as
    ``(1 + i) ** 12 - 1``. The result is rounded to hundredths of a percent.
    A schedule that costs nothing beyond the principal has a zero rate.
    """
    flows = _cash_flows(schedule)
    if not flows or sum(amount for _, amount in flows) <= principal:
        return ZERO

    def npv(rate: Decimal) -> Decimal:
        return sum((amount / (1 + rate) ** k for k, amount in flows), -principal)

    def npv_slope(rate: Decimal) -> Decimal:
        return sum((-k * amount / (1 + rate) ** (k + 1) for k, amount in flows), ZERO)

    monthly = find_root(npv, npv_slope, ZERO, MAX_MONTHLY_RATE)
    annual = ((1 + monthly) ** 12 - 1) * 100
    return annual.quantize(CENT)


def flat_cost_rate(schedule: Schedule, principal: Decimal) -> Decimal:
    """Return interest plus fees per year as a percentage of the principal."""
    if not len(schedule):
        return ZERO
    years = Decimal(len(schedule)) / Decimal(12)
    cost = schedule.total_interest + schedule.total_fees
    return (cost / principal / years * 100).quantize(CENT)
