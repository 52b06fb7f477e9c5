"""Output helpers for the loan engine.

This module provides simple functions to render schedules, summaries and
previews in a tabular text format using built-in printing and string
formatting.
"""

from __future__ import annotations

from typing import Dict, Iterable, List

from .data_models import ScheduleEntry
from .milestones import Milestone
from .simulator import RefinancePreview, RepaymentPreview, ScenarioComparison


def print_summary(summary: Dict[str, object]) -> None:
    """Print a summary of loan metrics in a human-readable format."""
    print("Summary")
    print("-" * 72)
    print(f"Principal          : {summary['principal']:.2f}")
    print(f"Annual rate        : {summary['annual_rate']:.4f}%")
    print(f"Term               : {summary['term_months']} months")
    print(f"Installment        : {summary['payment']:.2f}")
    print(f"Total interest     : {summary['total_interest']:.2f}")
    if summary.get('total_fees'):
        print(f"Total fees         : {summary['total_fees']:.2f}")
    if summary.get('total_prepaid'):
        print(f"Total prepaid      : {summary['total_prepaid']:.2f}")
    print(f"Total cost         : {summary['total_cost']:.2f}")
    print(f"Effective rate     : {summary['effective_rate']:.2f}%")
    print(f"Flat cost rate     : {summary['flat_rate']:.2f}%")
    print(f"Original end date  : {summary['original_end_date']}")
    print(f"New end date       : {summary['new_end_date']}")
    print(f"Installments       : {summary['installments']}")
    if summary.get('max_payment'):
        print(f"Highest payment    : {summary['max_payment']:.2f}")
    print("-" * 72)


def print_schedule(schedule: Iterable[ScheduleEntry], show_status: bool = False) -> None:
    """Print the amortization schedule as a simple table.

    Parameters
    ----------
    schedule: Iterable[ScheduleEntry]
        The schedule entries to print.
    show_status: bool
        Whether to include the ``Status`` column. Statuses only mean
        something for schedules that track payments.
    """
    headers = [
        "No",
        "Date",
        "Principal",
        "Interest",
        "Fee",
        "Total",
        "Prepaid",
        "Balance",
    ]
    if show_status:
        headers.append("Status")
    print("\t".join(headers))
    for entry in schedule:
        row = [
            str(entry.installment_no),
            entry.due_date.isoformat(),
            f"{entry.principal_due:.2f}",
            f"{entry.interest_due:.2f}",
            f"{entry.fee_due:.2f}",
            f"{entry.total_due:.2f}",
            f"{entry.prepayment:.2f}",
            f"{entry.balance_after:.2f}",
        ]
        if show_status:
            row.append(entry.status)
        print("\t".join(row))


def print_preview(preview: RepaymentPreview) -> None:
    """Print an early repayment preview next to the baseline."""
    print("Early repayment preview")
    print("=" * 72)
    print(f"{'Metric':20s} {'Baseline':>15s} {'With lump sum':>15s} {'Difference':>15s}")
    for key in ("total_interest", "total_fees", "total_paid"):
        v1 = getattr(preview.baseline, key)
        v2 = getattr(preview.adjusted, key)
        print(f"{key:20s} {v1:15.2f} {v2:15.2f} {v2 - v1:15.2f}")
    v1, v2 = preview.baseline.installments, preview.adjusted.installments
    print(f"{'installments':20s} {v1:15d} {v2:15d} {v2 - v1:15d}")
    print("=" * 72)
    print(f"Interest saved     : {preview.interest_saved:.2f}")
    if preview.penalty:
        print(f"Penalty            : {preview.penalty:.2f}")
    print(f"Net savings        : {preview.net_savings:.2f}")
    if preview.surplus:
        print(f"Not needed         : {preview.surplus:.2f}")


def print_refinance(preview: RefinancePreview) -> None:
    print("Refinancing preview")
    print("=" * 72)
    print(f"New installment    : {preview.new_payment:.2f}")
    print(f"Interest saved     : {preview.interest_saved:.2f}")
    print(f"Refinancing fee    : {preview.fee:.2f}")
    print(f"Net savings        : {preview.net_savings:.2f}")
    print("=" * 72)


def print_milestones(milestones: List[Milestone]) -> None:
    print(f"{'Repaid':>8s} {'Balance':>15s} {'No':>5s}  {'Date':10s}  State")
    for m in milestones:
        when = m.achieved_date or m.expected_date
        number = str(m.installment_no) if m.installment_no is not None else "-"
        state = "achieved" if m.achieved else "expected"
        print(f"{m.percentage:7d}% {m.target_balance:15.2f} {number:>5s}  "
              f"{when.isoformat() if when else '-':10s}  {state}")


def print_scenarios(comparison: ScenarioComparison) -> None:
    """Print every scenario against the contract, marking the cheapest."""
    print("Scenarios")
    print("=" * 72)
    print(f"{'Scenario':20s} {'Total paid':>15s} {'Interest':>12s} {'Months':>7s} {'Saved':>12s}")
    base = comparison.baseline
    print(f"{'(contract)':20s} {base.total_paid:15.2f} {base.total_interest:12.2f} "
          f"{base.installments:7d} {0:12.2f}")
    for result in comparison.results:
        marker = " *" if result.name == comparison.best else ""
        t = result.totals
        print(f"{result.name[:20]:20s} {t.total_paid:15.2f} {t.total_interest:12.2f} "
              f"{t.installments:7d} {result.total_saved:12.2f}{marker}")
    print("=" * 72)
