from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

import pytest

from loan_engine.data_models import OVERDUE, PAID, RECALCULATE_PAYMENT, REDUCE_TERM, Prepayment
from loan_engine.engine import generate_schedule
from loan_engine.errors import InvalidLoanError, ScheduleConflictError
from loan_engine.reconciler import (
    amend_loan,
    apply_lump_sum,
    change_paid_date,
    ensure_current,
    mark_paid,
    mark_paid_through,
    pay_next,
    remove_payment,
    split_index,
)
from loan_engine.status import refresh_statuses

PAID_AT = datetime(2024, 2, 15, 9, 30)


def test_mark_paid_with_scheduled_amount(base_schedule, now):
    result = mark_paid(base_schedule, 1, PAID_AT, now)
    entry = result.schedule.entry(1)
    assert entry.status == PAID
    assert entry.paid_at == PAID_AT
    assert entry.paid_amount == Decimal("856.07")
    assert result.delta == 0
    assert result.surplus == 0
    assert not result.under_collateralized
    # Nothing else moves
    assert result.schedule.entries[1:] == base_schedule.entries[1:]


def test_mark_paid_is_idempotent(base_schedule, now):
    once = mark_paid(base_schedule, 1, PAID_AT, now, Decimal("1000")).schedule
    twice = mark_paid(once, 1, PAID_AT, now, Decimal("1000")).schedule
    assert twice == once


def test_mark_paid_rejects_future_timestamp(base_schedule):
    with pytest.raises(InvalidLoanError):
        mark_paid(base_schedule, 1, datetime(2024, 3, 1), datetime(2024, 2, 20))


def test_mark_paid_rejects_non_positive_amount(base_schedule, now):
    with pytest.raises(InvalidLoanError):
        mark_paid(base_schedule, 1, PAID_AT, now, Decimal("0"))


def test_mark_paid_unknown_installment(base_schedule, now):
    with pytest.raises(InvalidLoanError):
        mark_paid(base_schedule, 13, PAID_AT, now)


def test_overpayment_moves_principal_to_next_installment(base_loan, base_schedule, now, check_invariants):
    result = mark_paid(base_schedule, 1, PAID_AT, now, Decimal("1000"))
    schedule = result.schedule
    check_invariants(schedule, base_loan.principal)
    assert result.delta == Decimal("143.93")
    assert result.surplus == 0

    paid = schedule.entry(1)
    assert paid.principal_due == Decimal("958.33")
    assert paid.total_due == Decimal("1000.00")
    assert paid.balance_after == Decimal("9041.67")
    assert paid.delta_applied == Decimal("143.93")
    assert paid.delta_target == 2

    receiving = schedule.entry(2)
    assert receiving.principal_due == Decimal("673.87")
    assert receiving.balance_after == base_schedule.entry(2).balance_after
    assert receiving.carried_from == (1,)
    assert receiving.carried_delta == Decimal("-143.93")
    # Installments after the next one are untouched
    assert schedule.entries[2:] == base_schedule.entries[2:]


def test_overpayment_beyond_next_installment_reports_surplus(base_loan, base_schedule, now, check_invariants):
    result = mark_paid(base_schedule, 11, PAID_AT, now, Decimal("1856.07"))
    check_invariants(result.schedule, base_loan.principal)
    assert result.delta == Decimal("1000.00")
    assert result.surplus == Decimal("147.43")
    assert result.schedule.entry(12).principal_due == 0
    assert result.schedule.entry(11).balance_after == 0


def test_overpayment_of_last_installment_is_all_surplus(base_schedule, now):
    result = mark_paid(base_schedule, 12, PAID_AT, now, Decimal("900"))
    assert result.surplus == result.delta == Decimal("43.88")
    assert result.schedule.entries[:11] == base_schedule.entries[:11]


def test_underpayment_moves_principal_to_next_installment(base_loan, base_schedule, now, check_invariants):
    result = mark_paid(base_schedule, 1, PAID_AT, now, Decimal("800"))
    check_invariants(result.schedule, base_loan.principal)
    assert result.delta == Decimal("-56.07")
    assert not result.under_collateralized
    assert result.schedule.entry(1).principal_due == Decimal("758.33")
    assert result.schedule.entry(1).balance_after == Decimal("9241.67")
    assert result.schedule.entry(2).principal_due == Decimal("873.87")


def test_underpayment_of_last_installment_is_under_collateralized(base_schedule, now):
    result = mark_paid(base_schedule, 12, PAID_AT, now, Decimal("800"))
    assert result.under_collateralized
    assert result.shortfall == Decimal("56.12")
    assert result.schedule.entry(12).principal_due == Decimal("852.57")


def test_underpayment_below_interest_is_rejected(base_schedule, now):
    with pytest.raises(InvalidLoanError):
        mark_paid(base_schedule, 1, PAID_AT, now, Decimal("30"))


def test_paying_again_with_other_amount_replaces_payment(base_schedule, now):
    """Last write wins."""
    first = mark_paid(base_schedule, 1, PAID_AT, now, Decimal("1000")).schedule
    replaced = mark_paid(first, 1, PAID_AT, now, Decimal("900"))
    fresh = mark_paid(base_schedule, 1, PAID_AT, now, Decimal("900"))
    assert replaced.schedule == fresh.schedule
    assert replaced.delta == Decimal("43.93")


def test_paying_again_with_other_date_only_moves_date(base_schedule, now):
    first = mark_paid(base_schedule, 1, PAID_AT, now, Decimal("1000")).schedule
    later = datetime(2024, 2, 20)
    result = mark_paid(first, 1, later, now, Decimal("1000"))
    assert result.schedule.entry(1).paid_at == later
    assert result.schedule.entry(2) == first.entry(2)


def test_change_paid_date(base_schedule, now):
    paid = mark_paid(base_schedule, 1, PAID_AT, now).schedule
    changed = change_paid_date(paid, 1, datetime(2024, 2, 1), now)
    assert changed.entry(1).paid_at == datetime(2024, 2, 1)
    assert changed.entry(1).paid_amount == paid.entry(1).paid_amount
    assert change_paid_date(changed, 1, datetime(2024, 2, 1), now) == changed


def test_change_paid_date_of_unpaid_installment(base_schedule, now):
    with pytest.raises(InvalidLoanError):
        change_paid_date(base_schedule, 1, PAID_AT, now)


def test_remove_payment_restores_schedule(base_schedule, now):
    paid = mark_paid(base_schedule, 1, PAID_AT, now, Decimal("1000")).schedule
    removed = remove_payment(paid, 1, now)
    assert removed.entry(1).status == OVERDUE
    assert refresh_statuses(removed, now) == refresh_statuses(base_schedule, now)


def test_remove_payment_of_unpaid_installment_is_noop(base_schedule, now):
    assert remove_payment(base_schedule, 3, now) == base_schedule


def test_remove_payment_after_target_was_paid(base_schedule, now):
    schedule = mark_paid(base_schedule, 1, PAID_AT, now, Decimal("1000")).schedule
    schedule = mark_paid(schedule, 2, datetime(2024, 3, 15), now).schedule
    with pytest.raises(ScheduleConflictError):
        remove_payment(schedule, 1, now)


def test_mark_paid_through(base_schedule, now):
    schedule = mark_paid_through(base_schedule, date(2024, 6, 30), now)
    paid = [e for e in schedule if e.is_paid]
    assert [e.installment_no for e in paid] == [1, 2, 3, 4, 5]
    assert paid[0].paid_at == datetime(2024, 2, 15)
    assert all(e.paid_amount == e.total_due for e in paid)
    assert mark_paid_through(schedule, date(2024, 6, 30), now) == schedule


def test_mark_paid_through_future_date(base_schedule):
    with pytest.raises(InvalidLoanError):
        mark_paid_through(base_schedule, date(2024, 6, 30), datetime(2024, 6, 1))


def test_pay_next(base_schedule, now):
    first = pay_next(base_schedule, Decimal("856.07"), PAID_AT, now)
    second = pay_next(first.schedule, Decimal("856.07"), datetime(2024, 3, 15), now)
    assert [e.installment_no for e in second.schedule if e.is_paid] == [1, 2]


def test_ensure_current_accepts_fresh_schedule(base_loan, base_schedule):
    ensure_current(base_loan, base_schedule)


def test_ensure_current_rejects_stale_version(base_loan, base_schedule):
    with pytest.raises(ScheduleConflictError):
        ensure_current(replace(base_loan, version=2), base_schedule)


def test_ensure_current_rejects_other_loan(base_loan, base_schedule):
    with pytest.raises(ScheduleConflictError):
        ensure_current(replace(base_loan, id="other"), base_schedule)


def test_ensure_current_rejects_broken_schedule(base_loan, base_schedule):
    broken = replace(base_schedule, entries=base_schedule.entries[:-1])
    with pytest.raises(ScheduleConflictError):
        ensure_current(base_loan, broken)


def test_split_index(base_schedule, now):
    assert split_index(base_schedule, date(2024, 1, 20)) == 0
    assert split_index(base_schedule, date(2024, 7, 15)) == 6
    paid = mark_paid(base_schedule, 8, PAID_AT, now).schedule
    assert split_index(paid, date(2024, 1, 20)) == 8


def test_apply_lump_sum_reduce_term(base_loan, base_schedule, now, check_invariants):
    history = mark_paid_through(base_schedule, date(2024, 7, 15), now)
    result = apply_lump_sum(base_loan, history, Decimal("2000"), REDUCE_TERM, date(2024, 7, 20))
    check_invariants(result.schedule, base_loan.principal)
    assert len(result.schedule) == 10
    assert result.schedule.total_interest == Decimal("228.72")
    assert result.applied == Decimal("2000.00")
    assert result.outstanding_before == Decimal("5062.40")
    assert result.outstanding_after == Decimal("3062.40")
    assert result.surplus == 0
    # Paid history is kept as is
    assert result.schedule.entries[:6] == history.entries[:6]


def test_apply_lump_sum_bumps_version_and_records_prepayment(base_loan, base_schedule):
    result = apply_lump_sum(base_loan, base_schedule, Decimal("2000"), REDUCE_TERM, date(2024, 7, 20))
    assert result.loan.version == 2
    assert result.schedule.version == 2
    assert result.loan.prepayments == (Prepayment(date(2024, 7, 20), Decimal("2000.00"), REDUCE_TERM),)
    ensure_current(result.loan, result.schedule)
    with pytest.raises(ScheduleConflictError):
        ensure_current(base_loan, result.schedule)


def test_apply_lump_sum_matches_regeneration(base_loan, base_schedule):
    """Regenerating the amended loan from scratch yields the same schedule."""
    result = apply_lump_sum(base_loan, base_schedule, Decimal("2000"), RECALCULATE_PAYMENT, date(2024, 7, 20))
    regenerated = generate_schedule(result.loan)
    assert regenerated == result.schedule
    assert result.schedule.entry(7).total_due == Decimal("517.87")
    assert result.schedule.total_interest == Decimal("243.64")


def test_apply_lump_sum_larger_than_balance_closes_loan(base_loan, base_schedule, check_invariants):
    result = apply_lump_sum(base_loan, base_schedule, Decimal("10000"), REDUCE_TERM, date(2024, 7, 20))
    check_invariants(result.schedule, base_loan.principal)
    assert len(result.schedule) == 7
    assert result.applied == Decimal("5062.40")
    assert result.surplus == Decimal("4937.60")
    assert result.outstanding_after == 0


def test_apply_lump_sum_penalty(base_loan, base_schedule):
    loan = replace(base_loan, early_repayment_penalty_pct=Decimal("1"))
    result = apply_lump_sum(loan, base_schedule, Decimal("2000"), REDUCE_TERM, date(2024, 7, 20))
    assert result.penalty == Decimal("20.00")


def test_apply_lump_sum_after_last_installment(base_loan, base_schedule):
    with pytest.raises(InvalidLoanError):
        apply_lump_sum(base_loan, base_schedule, Decimal("2000"), REDUCE_TERM, date(2025, 2, 1))


def test_apply_lump_sum_rejects_stale_schedule(base_loan, base_schedule):
    with pytest.raises(ScheduleConflictError):
        apply_lump_sum(replace(base_loan, version=3), base_schedule, Decimal("2000"), REDUCE_TERM,
                       date(2024, 7, 20))


def test_apply_lump_sum_rejects_unknown_strategy(base_loan, base_schedule):
    with pytest.raises(InvalidLoanError):
        apply_lump_sum(base_loan, base_schedule, Decimal("2000"), "skip_payment", date(2024, 7, 20))


def test_overpayment_applied_as_lump_sum(base_loan, base_schedule, now, check_invariants):
    paid_at = datetime(2024, 2, 15)
    result = mark_paid(base_schedule, 1, paid_at, now, Decimal("1856.07"), loan=base_loan,
                       lump_sum_strategy=REDUCE_TERM)
    assert result.delta == Decimal("1000.00")
    assert result.loan.version == 2
    assert result.loan.prepayments == (Prepayment(date(2024, 2, 15), Decimal("1000.00"), REDUCE_TERM),)
    check_invariants(result.schedule, base_loan.principal)
    assert len(result.schedule) == 11
    assert result.schedule.entry(1).paid_amount == Decimal("1856.07")
    assert result.schedule.entry(2).prepayment == Decimal("1000.00")
    assert result.schedule.entry(1).prepaid_from_payment == Decimal("1000.00")
    ensure_current(result.loan, result.schedule)


@pytest.fixture
def lump_sum_payment(base_loan, base_schedule, now):
    return mark_paid(base_schedule, 1, datetime(2024, 2, 15), now, Decimal("1856.07"), loan=base_loan,
                     lump_sum_strategy=REDUCE_TERM)


def test_repeated_lump_sum_payment_reports_no_surplus(lump_sum_payment, now):
    again = mark_paid(lump_sum_payment.schedule, 1, datetime(2024, 2, 15), now, Decimal("1856.07"),
                      loan=lump_sum_payment.loan, lump_sum_strategy=REDUCE_TERM)
    assert again.schedule == lump_sum_payment.schedule
    assert again.delta == Decimal("1000.00")
    assert again.surplus == 0


def test_amend_loan_counts_lump_sum_payment_once(lump_sum_payment, now, check_invariants):
    """The prepaid part of a payment is replayed through the loan, not the next installment."""
    loan, schedule = lump_sum_payment.loan, lump_sum_payment.schedule
    result = amend_loan(loan, schedule, now, annual_rate=Decimal("5"))
    assert result.loan.prepayments == loan.prepayments
    assert result.schedule.entries == schedule.entries
    assert result.schedule.entry(1).principal_due == Decimal("814.40")
    assert result.schedule.entry(2).principal_due == schedule.entry(2).principal_due
    assert result.schedule.entry(1).paid_amount == Decimal("1856.07")
    assert result.schedule.entry(1).prepaid_from_payment == Decimal("1000.00")
    check_invariants(result.schedule, loan.principal)


def test_amend_loan_after_lump_sum_payment_with_new_rate(lump_sum_payment, now, check_invariants):
    loan, schedule = lump_sum_payment.loan, lump_sum_payment.schedule
    result = amend_loan(loan, schedule, now, annual_rate=Decimal("6"))
    assert result.schedule.total_prepaid == Decimal("1000.00")
    entry = result.schedule.entry(1)
    assert entry.paid_amount == Decimal("1856.07")
    # The regular part of the payment is short of the 6 % installment
    assert entry.delta_applied < 0
    assert entry.total_due + entry.prepaid_from_payment == entry.paid_amount
    check_invariants(result.schedule, loan.principal)


def test_remove_payment_applied_as_lump_sum_is_rejected(lump_sum_payment, now):
    schedule = lump_sum_payment.schedule
    with pytest.raises(ScheduleConflictError, match="amend the loan"):
        remove_payment(schedule, 1, now)
    with pytest.raises(ScheduleConflictError):
        mark_paid(schedule, 1, datetime(2024, 2, 15), now, Decimal("856.07"))


def test_payment_can_be_removed_once_its_lump_sum_is_amended_away(lump_sum_payment, base_schedule, now,
                                                                   check_invariants):
    loan, schedule = lump_sum_payment.loan, lump_sum_payment.schedule
    amended = amend_loan(loan, schedule, now, prepayments=())
    check_invariants(amended.schedule, loan.principal)
    assert len(amended.schedule) == 12
    first = amended.schedule.entry(1)
    assert first.paid_amount == Decimal("1856.07")
    assert first.prepaid_from_payment == 0
    assert first.delta_applied == Decimal("817.80")
    assert amended.surplus == Decimal("182.20")

    removed = remove_payment(amended.schedule, 1, now)
    assert removed.entry(1).paid_at is None
    assert removed.entry(2).principal_due == base_schedule.entry(2).principal_due


def test_overpayment_as_lump_sum_needs_loan(base_schedule, now):
    with pytest.raises(InvalidLoanError):
        mark_paid(base_schedule, 1, PAID_AT, now, Decimal("1856.07"), lump_sum_strategy=REDUCE_TERM)


def test_amend_loan_regenerates_and_replays_payments(base_loan, base_schedule, now, check_invariants):
    history = mark_paid_through(base_schedule, date(2024, 4, 15), now)
    result = amend_loan(base_loan, history, now, annual_rate=Decimal("6"))
    assert result.loan.version == 2
    assert result.loan.annual_rate == Decimal("6")
    assert result.schedule.version == 2
    check_invariants(result.schedule, base_loan.principal)
    paid = [e for e in result.schedule if e.is_paid]
    assert [e.installment_no for e in paid] == [1, 2, 3]
    assert [e.paid_amount for e in paid] == [Decimal("856.07")] * 3
    assert result.schedule.entry(4).interest_due > base_schedule.entry(4).interest_due


def test_amend_loan_cannot_drop_paid_installments(base_loan, base_schedule, now):
    history = mark_paid_through(base_schedule, date(2024, 7, 15), now)
    with pytest.raises(ScheduleConflictError):
        amend_loan(base_loan, history, now, term=4)


def test_amend_loan_cannot_change_identity(base_loan, base_schedule, now):
    with pytest.raises(InvalidLoanError):
        amend_loan(base_loan, base_schedule, now, id="other")
