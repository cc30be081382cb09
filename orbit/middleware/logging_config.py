"""
Logging setup for Approval Orbit.

Two output shapes share one set of context fields:

    text  one line per record, context appended as ``key=value`` pairs
    json  one JSON object per record for log shipping

LOG_FORMAT picks the shape (default: json in production, text otherwise)
and LOG_LEVEL the threshold.  Inside a request every record is stamped with
the request id and caller identity by ``RequestContextFilter``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_app_context, has_request_context

# Context attributes rendered by both formatters, in output order
EXTRA_FIELDS = (
    "request_id",
    "organization_id",
    "user_id",
    "project_id",
    "asset_id",
    "stage_order",
    "event_kind",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)


def _context(record):
    return {k: getattr(record, k) for k in EXTRA_FIELDS if getattr(record, k, None) is not None}


class RequestContextFilter(logging.Filter):
    """Copy request id and caller identity from ``flask.g`` onto records."""

    _FROM_G = ("request_id", "organization_id", "user_id")

    def filter(self, record):
        if has_request_context() and has_app_context():
            for name in self._FROM_G:
                if getattr(record, name, None) is None:
                    value = g.get(name)
                    if value:
                        setattr(record, name, value)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
            "service": "approval-orbit",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Single-line developer format; errors in red, warnings in yellow."""

    _TINT = {"WARNING": "\033[33m", "ERROR": "\033[31m", "CRITICAL": "\033[31;1m"}
    _PLAIN = "\033[0m"

    def __init__(self, color=True):
        super().__init__()
        self.color = color

    def format(self, record):
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        level = record.levelname
        if self.color and level in self._TINT:
            level = f"{self._TINT[level]}{level}{self._PLAIN}"
        pairs = " ".join(
            f"{k}={v:.0f}ms" if k == "duration_ms" else f"{k}={v}"
            for k, v in _context(record).items()
            if k not in ("method", "path", "remote_addr")
        )
        line = f"{stamp} {level} [{record.name}] {record.getMessage()}"
        if pairs:
            line = f"{line} | {pairs}"
        if record.exc_info and record.exc_info[0] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for this app."""
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    fmt = os.getenv("LOG_FORMAT", "json" if production else "text").lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter(color=sys.stderr.isatty()))
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    # Tests build the app more than once
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for chatty in ("werkzeug", "sqlalchemy.engine", "tenacity"):
        logging.getLogger(chatty).setLevel(logging.WARNING)
    app.logger.setLevel(root.level)

    if not testing:
        app.logger.info("Logging ready (level=%s, format=%s)", level_name, fmt)
