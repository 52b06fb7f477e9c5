"""JSON web service around the loan engine.

Loans and their schedules live in a :class:`ScheduleStore`. Installment
operations (mark paid, remove payment, ...) always work on the freshest
stored schedule and are retried on a concurrent write, which is safe
because they are idempotent. Operations that change the contract (early
repayment, amendment) must name the loan version the client saw and fail
with 409 if it is no longer current.
"""

import logging
import os
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Tuple
from uuid import uuid4

from flask import Blueprint, Flask, abort, current_app, jsonify, request

from loan_engine.data_models import REDUCE_TERM, Loan, Prepayment, Schedule
from loan_engine.effective_rate import effective_annual_rate, flat_cost_rate
from loan_engine.engine import generate_schedule
from loan_engine.errors import ConvergenceError, InvalidLoanError, LoanEngineError, ScheduleConflictError
from loan_engine.metrics import loan_metrics
from loan_engine.milestones import project_milestones, repaid_percentage
from loan_engine.rate_solver import resolve_loan
from loan_engine.reconciler import (
    amend_loan,
    apply_lump_sum,
    change_paid_date,
    mark_paid,
    mark_paid_through,
    pay_next,
    remove_payment,
)
from loan_engine.serialization import loan_from_dict, loan_to_dict, schedule_to_dict, to_jsonable
from loan_engine.simulator import Scenario, compare_scenarios, preview_early_repayment, preview_refinance
from loan_engine.status import refresh_statuses
from loan_engine.utils import decimal_from_str, parse_date, parse_datetime
from loan_engine_web.logging_setup import setup_logging
from loan_engine_web.schedule_store import LoanRecord, ScheduleStore, create_store_from_env

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3
AMENDABLE_FIELDS = ("principal", "annual_rate", "term", "payment", "calculation_mode", "style",
                    "fees", "prepayments", "start_date", "early_repayment_penalty_pct", "balloon", "day_count")

loans = Blueprint("loans", __name__)


def _store() -> ScheduleStore:
    return current_app.extensions["schedule_store"]


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidLoanError("Request body must be a JSON object")
    return data


def _now() -> datetime:
    """Reference time from the body or query string, else the server clock."""
    value = _body().get("now") or request.args.get("now")
    if not value:
        return datetime.now()
    return _parse(parse_datetime, value, "now")


def _parse(parser: Callable, value, name: str):
    try:
        return parser(value)
    except (TypeError, ValueError) as exc:
        raise InvalidLoanError(f"Invalid {name}: {value}") from exc


def _decimal(data: dict, key: str, default: Optional[str] = None, required: bool = False) -> Optional[Decimal]:
    value = data.get(key, default)
    if value is None:
        if required:
            raise InvalidLoanError(f"{key} is required")
        return None
    return _parse(lambda v: decimal_from_str(str(v)), value, key)


def _load(loan_id: str) -> LoanRecord:
    record = _store().load(loan_id)
    if record is None:
        abort(404, description=f"Loan {loan_id} not found")
    return record


def _write(loan_id: str, operation: Callable[[LoanRecord], Tuple[Loan, Schedule, dict]]) -> dict:
    """Apply ``operation`` to the freshest stored state and save the result.

    The operation is re-run on a fresh read when another writer saved in
    between; installment operations are idempotent so replaying them is
    safe.
    """
    for attempt in range(1, WRITE_ATTEMPTS + 1):
        record = _load(loan_id)
        loan, schedule, payload = operation(record)
        try:
            _store().save(loan, schedule, record.revision)
        except ScheduleConflictError:
            if attempt == WRITE_ATTEMPTS:
                raise
            logger.info("Concurrent write on loan %s, retrying (attempt %d)", loan_id, attempt)
            continue
        payload.setdefault("schedule", schedule_to_dict(schedule))
        payload.setdefault("version", loan.version)
        return payload


def _require_version(loan: Loan, data: dict) -> None:
    if "version" not in data:
        raise InvalidLoanError("The loan version the change is based on is required")
    if _parse(int, data["version"], "version") != loan.version:
        raise ScheduleConflictError(
            f"Loan {loan.id} is at version {loan.version}, not {data['version']}; reload it"
        )


def _preview_to_dict(preview) -> dict:
    data = asdict(preview)
    data.pop("schedule")
    data = to_jsonable(data)
    data["schedule"] = schedule_to_dict(preview.schedule)
    return data


@loans.post("/loans")
def create_loan():
    data = _body()
    data.setdefault("id", uuid4().hex)
    loan = loan_from_dict(data)
    schedule = generate_schedule(loan)
    _store().create(loan, schedule)
    return jsonify({
        "loan": loan_to_dict(resolve_loan(loan)),
        "schedule": schedule_to_dict(schedule),
    }), 201


@loans.get("/loans")
def list_loans():
    return jsonify({"loans": _store().list_ids()})


@loans.get("/loans/<loan_id>")
def get_loan(loan_id: str):
    record = _load(loan_id)
    return jsonify({"loan": loan_to_dict(resolve_loan(record.loan)), "revision": record.revision})


@loans.put("/loans/<loan_id>")
def amend(loan_id: str):
    data = _body()
    now = _now()
    changes_data = {k: v for k, v in data.items() if k in AMENDABLE_FIELDS}
    if not changes_data:
        raise InvalidLoanError(f"Nothing to amend; allowed fields: {', '.join(AMENDABLE_FIELDS)}")

    def operation(record: LoanRecord):
        _require_version(record.loan, data)
        # Parse the changes through the regular loan codec
        merged = loan_from_dict({**loan_to_dict(record.loan), **changes_data})
        changes = {name: getattr(merged, name) for name in changes_data}
        result = amend_loan(record.loan, record.schedule, now, **changes)
        return result.loan, result.schedule, {"loan": loan_to_dict(resolve_loan(result.loan))}

    return jsonify(_write(loan_id, operation))


@loans.delete("/loans/<loan_id>")
def delete_loan(loan_id: str):
    if not _store().delete(loan_id):
        abort(404, description=f"Loan {loan_id} not found")
    return "", 204


@loans.get("/loans/<loan_id>/schedule")
def get_schedule(loan_id: str):
    record = _load(loan_id)
    schedule = refresh_statuses(record.schedule, _now())
    return jsonify(schedule_to_dict(schedule))


@loans.get("/loans/<loan_id>/metrics")
def get_metrics(loan_id: str):
    record = _load(loan_id)
    metrics = loan_metrics(record.schedule, record.loan.principal, _now())
    metrics["effective_rate"] = str(effective_annual_rate(record.schedule, record.loan.principal))
    metrics["flat_rate"] = str(flat_cost_rate(record.schedule, record.loan.principal))
    return jsonify(metrics)


@loans.get("/loans/<loan_id>/milestones")
def get_milestones(loan_id: str):
    record = _load(loan_id)
    now = _now()
    milestones = project_milestones(record.schedule, record.loan.principal, now)
    return jsonify({
        "repaid_pct": str(repaid_percentage(record.schedule, record.loan.principal, now)),
        "milestones": [to_jsonable(asdict(m)) for m in milestones],
    })


@loans.post("/loans/<loan_id>/installments/<int:installment_no>/mark-paid")
def mark_installment_paid(loan_id: str, installment_no: int):
    data = _body()
    now = _now()
    paid_at = _parse(parse_datetime, data["paid_at"], "paid_at") if data.get("paid_at") else now
    amount = _decimal(data, "amount")
    strategy = data.get("lump_sum_strategy")

    def operation(record: LoanRecord):
        if record.schedule.entry(installment_no) is None:
            abort(404, description=f"Installment {installment_no} not found")
        result = mark_paid(record.schedule, installment_no, paid_at, now, amount,
                           loan=record.loan, lump_sum_strategy=strategy)
        payload = {
            "delta": str(result.delta),
            "surplus": str(result.surplus),
            "under_collateralized": result.under_collateralized,
            "shortfall": str(result.shortfall),
        }
        return result.loan or record.loan, refresh_statuses(result.schedule, now), payload

    return jsonify(_write(loan_id, operation))


@loans.post("/loans/<loan_id>/installments/<int:installment_no>/change-paid-date")
def change_installment_paid_date(loan_id: str, installment_no: int):
    data = _body()
    now = _now()
    if not data.get("paid_at"):
        raise InvalidLoanError("paid_at is required")
    paid_at = _parse(parse_datetime, data["paid_at"], "paid_at")

    def operation(record: LoanRecord):
        if record.schedule.entry(installment_no) is None:
            abort(404, description=f"Installment {installment_no} not found")
        schedule = change_paid_date(record.schedule, installment_no, paid_at, now)
        return record.loan, refresh_statuses(schedule, now), {}

    return jsonify(_write(loan_id, operation))


@loans.post("/loans/<loan_id>/installments/<int:installment_no>/remove-payment")
def remove_installment_payment(loan_id: str, installment_no: int):
    now = _now()

    def operation(record: LoanRecord):
        if record.schedule.entry(installment_no) is None:
            abort(404, description=f"Installment {installment_no} not found")
        schedule = remove_payment(record.schedule, installment_no, now)
        return record.loan, refresh_statuses(schedule, now), {}

    return jsonify(_write(loan_id, operation))


@loans.post("/loans/<loan_id>/pay")
def pay(loan_id: str):
    data = _body()
    now = _now()
    amount = _decimal(data, "amount", required=True)
    paid_at = _parse(parse_datetime, data["paid_at"], "paid_at") if data.get("paid_at") else now

    def operation(record: LoanRecord):
        result = pay_next(record.schedule, amount, paid_at, now)
        payload = {
            "delta": str(result.delta),
            "surplus": str(result.surplus),
            "under_collateralized": result.under_collateralized,
            "shortfall": str(result.shortfall),
        }
        return record.loan, refresh_statuses(result.schedule, now), payload

    return jsonify(_write(loan_id, operation))


@loans.post("/loans/<loan_id>/mark-paid-until-today")
def mark_paid_until_today(loan_id: str):
    now = _now()

    def operation(record: LoanRecord):
        schedule = mark_paid_through(record.schedule, now.date(), now)
        return record.loan, refresh_statuses(schedule, now), {}

    return jsonify(_write(loan_id, operation))


@loans.post("/loans/<loan_id>/early-repayment")
def early_repayment(loan_id: str):
    """Preview an early repayment, or apply it with ``"execute": true``."""
    data = _body()
    amount = _decimal(data, "amount", required=True)
    strategy = data.get("strategy") or REDUCE_TERM
    if data.get("effective_date"):
        effective_date = _parse(parse_date, data["effective_date"], "effective_date")
    else:
        effective_date = _now().date()

    if not data.get("execute"):
        record = _load(loan_id)
        preview = preview_early_repayment(record.loan, record.schedule, amount, strategy, effective_date)
        return jsonify(_preview_to_dict(preview))

    def operation(record: LoanRecord):
        _require_version(record.loan, data)
        result = apply_lump_sum(record.loan, record.schedule, amount, strategy, effective_date)
        payload = {
            "loan": loan_to_dict(result.loan),
            "applied": str(result.applied),
            "penalty": str(result.penalty),
            "surplus": str(result.surplus),
            "outstanding_after": str(result.outstanding_after),
        }
        return result.loan, result.schedule, payload

    return jsonify(_write(loan_id, operation))


@loans.post("/loans/<loan_id>/refinance")
def refinance(loan_id: str):
    data = _body()
    rate = _decimal(data, "annual_rate", required=True)
    if data.get("effective_date"):
        effective_date = _parse(parse_date, data["effective_date"], "effective_date")
    else:
        effective_date = _now().date()
    record = _load(loan_id)
    preview = preview_refinance(record.loan, record.schedule, rate, effective_date, _decimal(data, "fee", "0"))
    return jsonify(_preview_to_dict(preview))


def _scenario_from_dict(data: dict) -> Scenario:
    lump_sums = tuple(
        Prepayment(
            _parse(parse_date, item.get("effective_date"), "effective_date"),
            _decimal(item, "amount", required=True),
            item.get("strategy") or REDUCE_TERM,
        )
        for item in data.get("lump_sums") or ()
    )
    return Scenario(
        name=str(data.get("name") or "scenario"),
        extra_monthly=_decimal(data, "extra_monthly", "0"),
        lump_sums=lump_sums,
        annual_rate=_decimal(data, "annual_rate"),
    )


@loans.post("/loans/<loan_id>/simulate")
def simulate(loan_id: str):
    data = _body()
    scenarios = [_scenario_from_dict(item) for item in data.get("scenarios") or ()]
    if not scenarios:
        raise InvalidLoanError("At least one scenario is required")
    record = _load(loan_id)
    comparison = compare_scenarios(record.loan, scenarios)
    return jsonify(to_jsonable(asdict(comparison)))


def _error(status: int, exc: Exception):
    return jsonify({"error": type(exc).__name__, "message": str(exc)}), status


def create_app(database_url: Optional[str] = None) -> Flask:
    """Build the Flask application.

    ``database_url`` overrides the ``LOAN_DATABASE_URL`` environment
    variable.
    """
    app = Flask(__name__)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", "dev-secret-key")
    app.extensions["schedule_store"] = create_store_from_env(
        database_url or os.environ.get("LOAN_DATABASE_URL")
    )
    app.register_blueprint(loans)
    log_level = os.environ.get("LOG_LEVEL")
    if log_level:
        setup_logging(log_level)

    @app.errorhandler(InvalidLoanError)
    def handle_invalid(exc):
        return _error(400, exc)

    @app.errorhandler(ConvergenceError)
    def handle_convergence(exc):
        return _error(422, exc)

    @app.errorhandler(ScheduleConflictError)
    def handle_conflict(exc):
        logger.warning("Schedule conflict: %s", exc)
        return _error(409, exc)

    @app.errorhandler(LoanEngineError)
    def handle_engine_error(exc):
        return _error(400, exc)

    @app.errorhandler(404)
    def handle_not_found(exc):
        return jsonify({"error": "NotFound", "message": exc.description}), 404

    return app


if __name__ == "__main__":
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))
    print("Starting loan engine service...")
    create_app().run(host="0.0.0.0", port=8710, debug=True)
