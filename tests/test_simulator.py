from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from loan_engine.data_models import RECALCULATE_PAYMENT, REDUCE_TERM, Prepayment
from loan_engine.errors import InvalidLoanError
from loan_engine.simulator import (
    Scenario,
    compare_scenarios,
    preview_early_repayment,
    preview_refinance,
    totals,
)

LUMP_DATE = date(2024, 7, 20)


def test_totals(base_schedule):
    result = totals(base_schedule)
    assert result.total_interest == Decimal("272.89")
    assert result.total_paid == Decimal("10272.89")
    assert result.installments == 12
    assert result.end_date == date(2025, 1, 15)


def test_preview_reduce_term(base_loan, base_schedule):
    preview = preview_early_repayment(base_loan, base_schedule, Decimal("2000"), REDUCE_TERM, LUMP_DATE)
    assert preview.baseline.total_interest == Decimal("272.89")
    assert preview.adjusted.total_interest == Decimal("228.72")
    assert preview.interest_saved == Decimal("44.17")
    assert preview.term_change == -2
    assert preview.net_savings == Decimal("44.17")
    assert preview.penalty == 0
    assert preview.adjusted.end_date == date(2024, 11, 15)


def test_preview_recalculate_payment(base_loan, base_schedule):
    preview = preview_early_repayment(base_loan, base_schedule, Decimal("2000"), RECALCULATE_PAYMENT, LUMP_DATE)
    assert preview.interest_saved == Decimal("29.25")
    assert preview.term_change == 0
    assert preview.schedule.entry(7).total_due == Decimal("517.87")


def test_preview_leaves_inputs_alone(base_loan, base_schedule):
    before = base_schedule
    preview_early_repayment(base_loan, base_schedule, Decimal("2000"), REDUCE_TERM, LUMP_DATE)
    assert base_schedule is before
    assert base_loan.prepayments == ()
    assert base_loan.version == 1


def test_preview_penalty_reduces_net_savings(base_loan, base_schedule):
    loan = replace(base_loan, early_repayment_penalty_pct=Decimal("2"))
    preview = preview_early_repayment(loan, base_schedule, Decimal("2000"), REDUCE_TERM, LUMP_DATE)
    assert preview.penalty == Decimal("40.00")
    assert preview.net_savings == Decimal("4.17")


def test_preview_full_repayment_reports_surplus(base_loan, base_schedule):
    preview = preview_early_repayment(base_loan, base_schedule, Decimal("6000"), REDUCE_TERM, LUMP_DATE)
    assert preview.surplus == Decimal("937.60")
    assert preview.adjusted.installments == 7


def test_preview_refinance_to_lower_rate(base_loan, base_schedule):
    preview = preview_refinance(base_loan, base_schedule, Decimal("3"), LUMP_DATE, Decimal("10"))
    assert preview.interest_saved > 0
    assert preview.new_payment < Decimal("856.07")
    assert preview.net_savings == preview.interest_saved - Decimal("10")
    assert preview.adjusted.installments == 12
    assert preview.schedule.entries[:6] == base_schedule.entries[:6]
    assert preview.schedule.total_principal == Decimal("10000.00")


def test_preview_refinance_rejects_negative_rate(base_loan, base_schedule):
    with pytest.raises(InvalidLoanError):
        preview_refinance(base_loan, base_schedule, Decimal("-1"), LUMP_DATE)


def test_preview_refinance_after_last_installment(base_loan, base_schedule):
    with pytest.raises(InvalidLoanError):
        preview_refinance(base_loan, base_schedule, Decimal("3"), date(2025, 3, 1))


def test_compare_scenarios(base_loan):
    comparison = compare_scenarios(base_loan, [
        Scenario("as-is"),
        Scenario("extra", extra_monthly=Decimal("200")),
        Scenario("cheaper", annual_rate=Decimal("3")),
        Scenario("lump", lump_sums=(Prepayment(LUMP_DATE, Decimal("2000"), REDUCE_TERM),)),
    ])
    results = {r.name: r for r in comparison.results}
    assert comparison.baseline.total_interest == Decimal("272.89")

    assert results["as-is"].months_saved == 0
    assert results["as-is"].interest_saved == 0

    assert results["extra"].months_saved > 0
    assert results["extra"].interest_saved > 0

    assert results["cheaper"].months_saved == 0
    assert results["cheaper"].interest_saved > 0

    assert results["lump"].months_saved == 2
    assert results["lump"].interest_saved == Decimal("44.17")

    cheapest = min(comparison.results, key=lambda r: r.totals.total_paid)
    assert comparison.best == cheapest.name


def test_compare_scenarios_rejects_negative_extra(base_loan):
    with pytest.raises(InvalidLoanError):
        compare_scenarios(base_loan, [Scenario("bad", extra_monthly=Decimal("-5"))])


def test_compare_without_scenarios(base_loan):
    comparison = compare_scenarios(base_loan, [])
    assert comparison.results == []
    assert comparison.best is None
