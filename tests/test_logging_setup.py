import json
import logging

import pytest

from loan_engine_web.logging_setup import ServiceJsonFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_formatter_emits_json_with_service_fields():
    formatter = ServiceJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    record = logging.LogRecord("loan_engine.reconciler", logging.INFO, __file__, 1,
                               "Installment %d paid", (3,), None)
    data = json.loads(formatter.format(record))
    assert data["message"] == "Installment 3 paid"
    assert data["level"] == "INFO"
    assert data["service"] == "loan-engine"
    assert data["name"] == "loan_engine.reconciler"
    assert data["timestamp"]


def test_setup_logging_installs_single_json_handler(restore_root_logger):
    setup_logging("debug")
    setup_logging("warning")
    root = restore_root_logger
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, ServiceJsonFormatter)
