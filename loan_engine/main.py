"""Command-line interface for the loan engine.

This module uses the ``click`` library to implement a multi-command
interface. Users can compute full amortization schedules, view summaries,
solve the unknown loan variable, preview early repayments and refinancing,
project milestones or compare repayment plans. Schedules can be printed to
the terminal or exported to JSON/CSV files.
"""

from __future__ import annotations

import csv
import json
import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from .data_models import (
    ANNUITY,
    DAY_COUNTS,
    PERIODIC,
    RECALCULATE_PAYMENT,
    REDUCE_TERM,
    STRATEGIES,
    STYLES,
    Fee,
    Loan,
    Prepayment,
    Schedule,
)
from .engine import compute_schedule, generate_schedule
from .errors import LoanEngineError
from .formatter import (
    print_milestones,
    print_preview,
    print_refinance,
    print_scenarios,
    print_schedule,
    print_summary,
)
from .milestones import project_milestones
from .rate_solver import infer_mode, resolve_loan
from .reconciler import mark_paid_through
from .serialization import schedule_to_dict, to_jsonable
from .simulator import Scenario, compare_scenarios, preview_early_repayment, preview_refinance
from .status import refresh_statuses
from .utils import as_datetime, decimal_from_str, parse_date

STRATEGY_ALIASES = {"term": REDUCE_TERM, "payment": RECALCULATE_PAYMENT}


def parse_amount(value: str) -> Decimal:
    """Parse a numeric string with optional suffixes.

    Accepts plain numbers ("500000") and shorthand with ``k``/``m``
    suffixes (e.g., "500k" meaning 500_000). Returns a ``Decimal``.
    """
    value = value.strip().lower()
    value = value.replace(",", "")
    factor = Decimal(1)
    if value.endswith("k"):
        factor = Decimal(1_000)
        value = value[:-1]
    elif value.endswith("m"):
        factor = Decimal(1_000_000)
        value = value[:-1]
    try:
        return decimal_from_str(value) * factor
    except ValueError:
        raise click.BadParameter(f"Invalid amount: {value}")


def parse_rate(value: str) -> Decimal:
    """Parse a percentage such as "4.5" or "4.5%"."""
    try:
        return decimal_from_str(value.strip().rstrip("%"))
    except ValueError:
        raise click.BadParameter(f"Invalid percentage: {value}")


def parse_date_option(value: str) -> date:
    try:
        return parse_date(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc))


def parse_strategy(value: str) -> str:
    value = value.strip().lower()
    value = STRATEGY_ALIASES.get(value, value)
    if value not in STRATEGIES:
        raise click.BadParameter(f"Strategy must be 'term' or 'payment'; got {value}")
    return value


def parse_fee_strings(values: Tuple[str, ...]) -> List[Fee]:
    fees: List[Fee] = []
    for item in values:
        parts = item.split(":")
        if len(parts) not in (2, 3):
            raise click.BadParameter(f"Fee must be in NAME:AMOUNT[:monthly|once] format; got {item}")
        kind = parts[2].lower() if len(parts) == 3 else "once"
        if kind not in ("monthly", "once"):
            raise click.BadParameter(f"Fee kind must be 'monthly' or 'once'; got {kind}")
        fees.append(Fee(name=parts[0], amount=parse_amount(parts[1]), recurring=kind == "monthly"))
    return fees


def parse_prepayment_strings(values: Tuple[str, ...]) -> List[Prepayment]:
    prepayments: List[Prepayment] = []
    for item in values:
        parts = item.split(":")
        if len(parts) != 3:
            raise click.BadParameter(
                f"Prepayment must be in YYYY-MM-DD:AMOUNT:TYPE format; got {item}"
            )
        when, amount, typ = parts
        prepayments.append(Prepayment(parse_date_option(when), parse_amount(amount), parse_strategy(typ)))
    return prepayments


def build_loan_from_options(
    principal: str,
    rate: Optional[str],
    term: Optional[int],
    payment: Optional[str],
    style: str,
    start_date: str,
    fee: Tuple[str, ...],
    prepayment: Tuple[str, ...],
    penalty: Optional[str],
    balloon: Optional[str] = None,
    day_count: str = PERIODIC,
) -> Loan:
    annual_rate = parse_rate(rate) if rate is not None else None
    payment_value = parse_amount(payment) if payment else None
    try:
        mode = infer_mode(annual_rate, term, payment_value)
    except LoanEngineError as exc:
        raise click.UsageError(str(exc))
    return Loan(
        id="cli",
        principal=parse_amount(principal),
        start_date=parse_date_option(start_date),
        annual_rate=annual_rate,
        term=term,
        payment=payment_value,
        calculation_mode=mode,
        style=style,
        fees=tuple(parse_fee_strings(fee)),
        prepayments=tuple(parse_prepayment_strings(prepayment)),
        early_repayment_penalty_pct=parse_rate(penalty) if penalty else Decimal("0"),
        balloon=parse_amount(balloon) if balloon else Decimal("0"),
        day_count=day_count,
    )


def loan_options(func):
    """Attach the options describing a loan to a command."""
    options = [
        click.option("--principal", "-p", "principal", required=True, help="Loan amount, e.g. 250k"),
        click.option("--rate", "-r", "rate", help="Nominal annual interest rate (percent)"),
        click.option("--term", "-t", "term", type=int, help="Loan term in months"),
        click.option("--payment", "payment", help="Monthly installment including recurring fees"),
        click.option("--type", "style", type=click.Choice(list(STYLES)), default=ANNUITY,
                     help="Amortization style"),
        click.option("--start-date", "-s", "start_date", required=True,
                     help="Disbursement date (YYYY-MM-DD); installment k is due k months later"),
        click.option("--fee", "fee", multiple=True, help="Fee in NAME:AMOUNT[:monthly|once] format"),
        click.option("--prepayment", "prepayment", multiple=True,
                     help="Lump sum in YYYY-MM-DD:AMOUNT:term|payment format"),
        click.option("--penalty", "penalty", help="Early repayment penalty (percent of the lump sum)"),
        click.option("--balloon", "balloon", help="Principal left for the final installment"),
        click.option("--day-count", "day_count", type=click.Choice(list(DAY_COUNTS)), default=PERIODIC,
                     help="How much interest each installment period accrues"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@contextmanager
def engine_errors():
    """Report engine errors as click errors instead of tracebacks."""
    try:
        yield
    except LoanEngineError as exc:
        raise click.ClickException(str(exc))


def export_to_json(path: Path, schedule: Schedule, summary: Dict[str, Any]) -> None:
    """Export schedule and summary to a JSON file."""
    data = {"summary": summary, "schedule": schedule_to_dict(schedule)}
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def export_to_csv(path: Path, schedule: Schedule) -> None:
    """Export schedule to a CSV file."""
    header = [
        "Installment",
        "Due_Date",
        "Principal",
        "Interest",
        "Fee",
        "Total",
        "Prepayment",
        "Balance",
        "Status",
    ]
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for e in schedule:
            writer.writerow(
                [
                    e.installment_no,
                    e.due_date.isoformat(),
                    str(e.principal_due),
                    str(e.interest_due),
                    str(e.fee_due),
                    str(e.total_due),
                    str(e.prepayment),
                    str(e.balance_after),
                    e.status,
                ]
            )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log solver and reconciliation details")
def cli(verbose: bool) -> None:
    """A command-line loan amortization engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@loan_options
@click.option("--output", "output", type=str, help="Output file path (.json or .csv)")
def schedule(output: Optional[str], **options) -> None:
    """Compute and print the full amortization schedule."""
    loan = build_loan_from_options(**options)
    with engine_errors():
        schedule_data, summary = compute_schedule(loan)
    if output:
        path = Path(output)
        if path.suffix.lower() == ".json":
            export_to_json(path, schedule_data, summary)
            click.echo(f"Schedule exported to {path}")
        elif path.suffix.lower() == ".csv":
            export_to_csv(path, schedule_data)
            click.echo(f"Schedule exported to {path}")
        else:
            raise click.BadParameter("Unsupported output format; use .json or .csv")
    else:
        print_summary(summary)
        # Limit schedule length printed to avoid flooding the terminal
        max_rows = 120
        if len(schedule_data) > max_rows:
            click.echo(f"Schedule has {len(schedule_data)} rows; showing first {max_rows} rows.")
            print_schedule(schedule_data.entries[:max_rows])
        else:
            print_schedule(schedule_data)


@cli.command()
@loan_options
@click.option("--output", "output", type=str, help="Output file path (.json)")
def summary(output: Optional[str], **options) -> None:
    """Compute and print only the summary metrics for a loan."""
    loan = build_loan_from_options(**options)
    with engine_errors():
        _, summary_data = compute_schedule(loan)
    if output:
        path = Path(output)
        if path.suffix.lower() != ".json":
            raise click.BadParameter("Summary export must use .json extension")
        with path.open("w", encoding="utf-8") as f:
            json.dump({"summary": summary_data}, f, indent=2)
        click.echo(f"Summary exported to {path}")
    else:
        print_summary(summary_data)


@cli.command()
@loan_options
def solve(**options) -> None:
    """Solve the missing one of rate, term and payment.

    Give exactly two of ``--rate``, ``--term`` and ``--payment``.
    """
    loan = build_loan_from_options(**options)
    with engine_errors():
        resolved = resolve_loan(loan)
    click.echo(f"Mode        : {resolved.calculation_mode}")
    click.echo(f"Annual rate : {resolved.annual_rate:.6f}%")
    click.echo(f"Term        : {resolved.term} months")
    click.echo(f"Installment : {resolved.payment:.2f}")


@cli.command()
@loan_options
@click.option("--lump-sum", "lump_sum", required=True, help="Amount repaid early")
@click.option("--strategy", "strategy", default="term", help="'term' (shorten) or 'payment' (lower installment)")
@click.option("--effective-date", "effective_date", required=True, help="Date of the early repayment")
def preview(lump_sum: str, strategy: str, effective_date: str, **options) -> None:
    """Compare continuing as-is with repaying a lump sum early."""
    loan = build_loan_from_options(**options)
    with engine_errors():
        result = preview_early_repayment(
            loan,
            generate_schedule(loan),
            parse_amount(lump_sum),
            parse_strategy(strategy),
            parse_date_option(effective_date),
        )
    print_preview(result)


@cli.command()
@loan_options
@click.option("--new-rate", "new_rate", required=True, help="Annual rate after refinancing (percent)")
@click.option("--effective-date", "effective_date", required=True, help="Date the new rate applies from")
@click.option("--refinance-fee", "refinance_fee", default="0", help="One-off cost of refinancing")
def refinance(new_rate: str, effective_date: str, refinance_fee: str, **options) -> None:
    """Preview moving the rest of the loan to another rate."""
    loan = build_loan_from_options(**options)
    with engine_errors():
        result = preview_refinance(
            loan,
            generate_schedule(loan),
            parse_rate(new_rate),
            parse_date_option(effective_date),
            parse_amount(refinance_fee),
        )
    print_refinance(result)


@cli.command()
@loan_options
@click.option("--paid-through", "paid_through", help="Treat installments due up to this date as paid")
@click.option("--today", "today", help="Reference date (defaults to today)")
def milestones(paid_through: Optional[str], today: Optional[str], **options) -> None:
    """Show when 25/50/75/100 % of the principal is repaid.

    With ``--paid-through`` the schedule is printed too, with the status
    of every installment.
    """
    loan = build_loan_from_options(**options)
    now = as_datetime(parse_date_option(today)) if today else datetime.now()
    with engine_errors():
        schedule_data = generate_schedule(loan)
        if paid_through:
            schedule_data = mark_paid_through(schedule_data, parse_date_option(paid_through), now)
        projected = project_milestones(schedule_data, loan.principal, now)
    print_milestones(projected)
    if paid_through:
        click.echo()
        print_schedule(refresh_statuses(schedule_data, now), show_status=True)


def parse_scenario_string(value: str) -> Scenario:
    """Parse ``NAME:key=value[,key=value...]``.

    Keys are ``extra`` (monthly extra payment), ``rate`` (annual rate) and
    ``lump`` (``YYYY-MM-DD/AMOUNT``, may repeat).
    """
    name, _, options = value.partition(":")
    if not name or not options:
        raise click.BadParameter(f"Scenario must be in NAME:key=value format; got {value}")
    extra = Decimal("0")
    rate = None
    lumps: List[Prepayment] = []
    for part in options.split(","):
        key, _, raw = part.partition("=")
        key = key.strip().lower()
        if key == "extra":
            extra = parse_amount(raw)
        elif key == "rate":
            rate = parse_rate(raw)
        elif key == "lump":
            when, _, amount = raw.partition("/")
            lumps.append(Prepayment(parse_date_option(when), parse_amount(amount), REDUCE_TERM))
        else:
            raise click.BadParameter(f"Unknown scenario key: {key}")
    return Scenario(name=name, extra_monthly=extra, lump_sums=tuple(lumps), annual_rate=rate)


@cli.command()
@loan_options
@click.option("--scenario", "scenario", multiple=True, required=True,
              help="Scenario in NAME:key=value format, e.g. extra200:extra=200")
@click.option("--output", "output", type=str, help="Output file path (.json)")
def compare(scenario: Tuple[str, ...], output: Optional[str], **options) -> None:
    """Compare repayment plans against the contract.

    Example:

        loan-engine compare -p 200k -r 4.5 -t 360 -s 2024-01-15 \\
            --scenario "extra:extra=200" --scenario "refi:rate=3.9"
    """
    loan = build_loan_from_options(**options)
    scenarios = [parse_scenario_string(s) for s in scenario]
    with engine_errors():
        comparison = compare_scenarios(loan, scenarios)
    if output:
        path = Path(output)
        if path.suffix.lower() != ".json":
            raise click.BadParameter("Comparison export must use .json extension")
        data = {
            "baseline": to_jsonable(vars(comparison.baseline)),
            "results": [
                to_jsonable({**vars(r), "totals": vars(r.totals)}) for r in comparison.results
            ],
            "best": comparison.best,
        }
        with path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        click.echo(f"Comparison exported to {path}")
    else:
        print_scenarios(comparison)


if __name__ == "__main__":
    cli()
