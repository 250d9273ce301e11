"""
Log output for the portal.

Deployed instances emit one JSON object per line so the escalation audit
trail (complaint, rule, level) can be queried in the log store. Local runs
get a short coloured line with the complaint or job in parentheses.
``LOG_LEVEL`` picks the threshold; ``LOG_FORMAT=json|readable`` overrides
the choice made from the app mode.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# ``extra=`` attributes carried into JSON entries, in output order.
CONTEXT_FIELDS = (
    "tenant_id",
    "user_id",
    "complaint_id",
    "rule_id",
    "escalation_level",
    "job_name",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

QUIET_LOGGERS = ("sqlalchemy.engine", "werkzeug", "urllib3")


def _context(record: logging.LogRecord) -> dict:
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Terminal output while working on the portal."""

    LEVEL_COLOURS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{colour}{stamp} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"

        tags = []
        if getattr(record, "complaint_id", None):
            tags.append(f"complaint={record.complaint_id}")
        if getattr(record, "job_name", None):
            tags.append(f"job={record.job_name}")
        if tags:
            line += f" ({', '.join(tags)})"
        duration = getattr(record, "duration_ms", None)
        if isinstance(duration, (int, float)):
            line += f" [{duration:.0f}ms]"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _wants_json(app, deployed: bool) -> bool:
    choice = (app.config.get("LOG_FORMAT") or os.getenv("LOG_FORMAT") or "").lower()
    if choice in ("json", "readable"):
        return choice == "json"
    return deployed


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    Safe to call for every ``create_app``: earlier handlers are replaced,
    so the test suite does not stack duplicates.
    """
    testing = app.config.get("TESTING", False)
    deployed = not app.config.get("DEBUG", False) and not testing

    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL") or ("INFO" if deployed else "DEBUG")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    as_json = _wants_json(app, deployed)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Portal logging at %s (%s)", level_name, "json" if as_json else "readable")
