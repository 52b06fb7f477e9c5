"""Plain-dict codecs for loans and schedules.

Decimals are written as strings so that no precision is lost, dates and
timestamps in ISO 8601. The dicts are what the CLI exports, the store
persists and the web service returns.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from .data_models import (
    ANNUITY,
    PERIODIC,
    RATE_KNOWN,
    REDUCE_TERM,
    Fee,
    Loan,
    Prepayment,
    Schedule,
    ScheduleEntry,
)
from .errors import InvalidLoanError
from .utils import decimal_from_str, parse_date, parse_datetime


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _opt_dec(value) -> Optional[Decimal]:
    return None if value is None else decimal_from_str(value)


def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "principal": str(loan.principal),
        "start_date": loan.start_date.isoformat(),
        "annual_rate": _dec(loan.annual_rate),
        "term": loan.term,
        "payment": _dec(loan.payment),
        "calculation_mode": loan.calculation_mode,
        "style": loan.style,
        "fees": [
            {"name": f.name, "amount": str(f.amount), "recurring": f.recurring}
            for f in loan.fees
        ],
        "prepayments": [
            {
                "effective_date": p.effective_date.isoformat(),
                "amount": str(p.amount),
                "strategy": p.strategy,
            }
            for p in loan.prepayments
        ],
        "early_repayment_penalty_pct": str(loan.early_repayment_penalty_pct),
        "balloon": str(loan.balloon),
        "day_count": loan.day_count,
        "version": loan.version,
    }


def loan_from_dict(data: Dict[str, Any]) -> Loan:
    """Build a ``Loan`` from a dict produced by :func:`loan_to_dict`.

    Also accepts hand-written input: optional keys may be omitted and
    numbers may be given as JSON numbers or strings.

    Raises
    ------
    InvalidLoanError
        If a required key is missing or a value cannot be parsed.
    """
    try:
        term = data.get("term")
        return Loan(
            id=str(data["id"]),
            principal=decimal_from_str(data["principal"]),
            start_date=parse_date(data["start_date"]),
            annual_rate=_opt_dec(data.get("annual_rate")),
            term=None if term is None else int(term),
            payment=_opt_dec(data.get("payment")),
            calculation_mode=data.get("calculation_mode") or RATE_KNOWN,
            style=data.get("style") or ANNUITY,
            fees=tuple(
                Fee(str(f["name"]), decimal_from_str(f["amount"]), bool(f.get("recurring", False)))
                for f in data.get("fees") or ()
            ),
            prepayments=tuple(
                Prepayment(
                    parse_date(p["effective_date"]),
                    decimal_from_str(p["amount"]),
                    p.get("strategy") or REDUCE_TERM,
                )
                for p in data.get("prepayments") or ()
            ),
            early_repayment_penalty_pct=decimal_from_str(data.get("early_repayment_penalty_pct") or "0"),
            balloon=decimal_from_str(data.get("balloon") or "0"),
            day_count=data.get("day_count") or PERIODIC,
            version=int(data.get("version") or 1),
        )
    except KeyError as exc:
        raise InvalidLoanError(f"Missing loan field: {exc.args[0]}") from exc
    except (TypeError, ValueError) as exc:
        raise InvalidLoanError(f"Invalid loan data: {exc}") from exc


def entry_to_dict(entry: ScheduleEntry) -> Dict[str, Any]:
    return {
        "installment_no": entry.installment_no,
        "due_date": entry.due_date.isoformat(),
        "principal_due": str(entry.principal_due),
        "interest_due": str(entry.interest_due),
        "fee_due": str(entry.fee_due),
        "total_due": str(entry.total_due),
        "balance_after": str(entry.balance_after),
        "prepayment": str(entry.prepayment),
        "level_payment": str(entry.level_payment),
        "status": entry.status,
        "paid_at": entry.paid_at.isoformat() if entry.paid_at else None,
        "paid_amount": _dec(entry.paid_amount),
        "delta_applied": str(entry.delta_applied),
        "delta_target": entry.delta_target,
        "carried_delta": str(entry.carried_delta),
        "carried_from": list(entry.carried_from),
        "prepaid_from_payment": str(entry.prepaid_from_payment),
    }


def entry_from_dict(data: Dict[str, Any]) -> ScheduleEntry:
    paid_at = data.get("paid_at")
    return ScheduleEntry(
        installment_no=int(data["installment_no"]),
        due_date=date.fromisoformat(data["due_date"]),
        principal_due=Decimal(data["principal_due"]),
        interest_due=Decimal(data["interest_due"]),
        fee_due=Decimal(data["fee_due"]),
        total_due=Decimal(data["total_due"]),
        balance_after=Decimal(data["balance_after"]),
        prepayment=Decimal(data.get("prepayment", "0")),
        level_payment=Decimal(data.get("level_payment", "0")),
        status=data.get("status", "pending"),
        paid_at=parse_datetime(paid_at) if paid_at else None,
        paid_amount=_opt_dec(data.get("paid_amount")),
        delta_applied=Decimal(data.get("delta_applied", "0")),
        delta_target=data.get("delta_target"),
        carried_delta=Decimal(data.get("carried_delta", "0")),
        carried_from=tuple(data.get("carried_from", ())),
        prepaid_from_payment=Decimal(data.get("prepaid_from_payment", "0")),
    )


def schedule_to_dict(schedule: Schedule) -> Dict[str, Any]:
    return {
        "loan_id": schedule.loan_id,
        "version": schedule.version,
        "entries": [entry_to_dict(e) for e in schedule],
    }


def schedule_from_dict(data: Dict[str, Any]) -> Schedule:
    return Schedule(
        loan_id=data["loan_id"],
        version=int(data["version"]),
        entries=tuple(entry_from_dict(e) for e in data["entries"]),
    )


def to_jsonable(value: Any) -> Any:
    """Recursively convert decimals, dates and dataclass dicts for JSON."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
