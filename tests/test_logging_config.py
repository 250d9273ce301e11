"""Log formatters and handler setup."""

import json
import logging
import sys

import pytest
from flask import Flask

from complaint_portal.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    configure_logging,
)


def _record(msg="Complaint escalated", exc_info=None, **extra):
    record = logging.LogRecord(
        "complaint_portal.services.escalation_engine", logging.WARNING,
        __file__, 42, msg, None, exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_entry_carries_escalation_context():
    line = JSONFormatter().format(
        _record(complaint_id="c-1", rule_id="r-9", escalation_level=2, tenant_id=3, unrelated="x")
    )
    entry = json.loads(line)

    assert entry["level"] == "WARNING"
    assert entry["msg"] == "Complaint escalated"
    assert entry["complaint_id"] == "c-1"
    assert entry["rule_id"] == "r-9"
    assert entry["escalation_level"] == 2
    assert entry["tenant_id"] == 3
    assert "unrelated" not in entry
    assert "exception" not in entry


def test_json_entry_includes_traceback():
    try:
        raise RuntimeError("store down")
    except RuntimeError:
        line = JSONFormatter().format(_record(exc_info=sys.exc_info()))

    assert "RuntimeError: store down" in json.loads(line)["exception"]


def test_readable_line_tags_complaint_and_job():
    line = ReadableFormatter().format(_record(complaint_id="c-1", job_name="escalation_check", duration_ms=12.4))

    assert "Complaint escalated" in line
    assert "(complaint=c-1, job=escalation_check)" in line
    assert line.endswith("[12ms]")


@pytest.fixture()
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _bare_app(**config):
    app = Flask("logging-check")
    app.config.update(config)
    return app


def test_configure_logging_replaces_handlers(restore_root_logger, monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    app = _bare_app(TESTING=True)

    configure_logging(app)
    configure_logging(app)

    assert len(restore_root_logger.handlers) == 1
    assert isinstance(restore_root_logger.handlers[0].formatter, ReadableFormatter)
    assert restore_root_logger.level == logging.DEBUG


def test_deployed_app_logs_json_unless_overridden(restore_root_logger, monkeypatch):
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    monkeypatch.setenv("LOG_LEVEL", "warning")

    configure_logging(_bare_app(DEBUG=False, TESTING=False))
    assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)
    assert restore_root_logger.level == logging.WARNING

    configure_logging(_bare_app(DEBUG=False, TESTING=False, LOG_FORMAT="readable"))
    assert isinstance(restore_root_logger.handlers[0].formatter, ReadableFormatter)


def test_unknown_level_falls_back_to_info(restore_root_logger, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    configure_logging(_bare_app(TESTING=True))
    assert restore_root_logger.level == logging.INFO
