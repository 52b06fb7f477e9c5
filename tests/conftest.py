"""Shared fixtures for loan engine tests."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from loan_engine.data_models import Loan
from loan_engine.engine import generate_schedule


@pytest.fixture
def base_loan():
    """10 000 at 5 % over 12 monthly annuity installments."""
    return Loan(
        id="loan-1",
        principal=Decimal("10000.00"),
        start_date=date(2024, 1, 15),
        annual_rate=Decimal("5"),
        term=12,
    )


@pytest.fixture
def base_schedule(base_loan):
    return generate_schedule(base_loan)


@pytest.fixture
def now():
    """Reference time after the whole base schedule has fallen due."""
    return datetime(2025, 6, 1, 12, 0)


@pytest.fixture
def check_invariants():
    """Return a checker for the structural invariants of a schedule."""

    def check(schedule, principal):
        numbers = [e.installment_no for e in schedule]
        assert numbers == list(range(1, len(numbers) + 1))
        assert schedule.total_principal + schedule.total_prepaid == principal
        assert schedule.entries[-1].balance_after == 0
        previous = principal
        for entry in schedule:
            assert entry.total_due == entry.principal_due + entry.interest_due + entry.fee_due
            assert entry.balance_after <= previous
            assert entry.balance_after >= 0
            previous = entry.balance_after
        dates = [e.due_date for e in schedule]
        assert dates == sorted(dates)

    return check


@pytest.fixture
def client(tmp_path):
    from loan_engine_web.app import create_app

    app = create_app(f"sqlite:///{tmp_path / 'loans.sqlite3'}")
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client
