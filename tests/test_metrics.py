from datetime import date, datetime
from decimal import Decimal

from loan_engine.metrics import loan_metrics, next_due_entry, overdue_entries, remaining_principal
from loan_engine.reconciler import mark_paid_through


def test_metrics_mid_loan(base_loan, base_schedule):
    now = datetime(2024, 5, 20)
    schedule = mark_paid_through(base_schedule, date(2024, 4, 15), now)
    metrics = loan_metrics(schedule, base_loan.principal, now)
    assert metrics["installments"] == 12
    assert metrics["paid"] == 3
    assert metrics["overdue"] == 1
    assert metrics["pending"] == 8
    assert metrics["next_due"]["installment_no"] == 4
    assert metrics["next_due"]["due_date"] == "2024-05-15"
    assert Decimal(metrics["remaining_principal"]) == Decimal("7546.60")
    assert Decimal(metrics["interest_paid"]) == Decimal("114.81")
    assert Decimal(metrics["fees_paid"]) == 0
    assert metrics["progress_pct"] == "24.53"


def test_metrics_of_repaid_loan(base_loan, base_schedule, now):
    schedule = mark_paid_through(base_schedule, date(2025, 1, 15), now)
    metrics = loan_metrics(schedule, base_loan.principal, now)
    assert metrics["next_due"] is None
    assert metrics["paid"] == 12
    assert Decimal(metrics["remaining_principal"]) == 0
    assert metrics["progress_pct"] == "100.00"


def test_overdue_and_next_due(base_schedule):
    now = datetime(2024, 4, 1)
    assert [e.installment_no for e in overdue_entries(base_schedule, now)] == [1, 2]
    assert next_due_entry(base_schedule, now).installment_no == 1
    assert remaining_principal(base_schedule, now) == Decimal("10000.00")
