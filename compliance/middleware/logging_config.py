"""
Structured logging configuration.

Services log with ``extra={...}`` carrying the record they acted on
(``capa_id``, ``audit_id``, ``plan_id``, ``entity_type``/``entity_id``) or
the job that ran (``job_name``, ``duration_ms``). Both formatters surface
those keys:

- JSON lines when DEBUG and TESTING are off (log aggregators)
- a compact coloured line in development
- level from LOG_LEVEL (config or env), DEBUG in dev, INFO otherwise

``init_request_logging`` adds one access line per API request.
"""

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

from flask import g, request

CONTEXT_FIELDS = (
    "capa_id",
    "audit_id",
    "plan_id",
    "entity_type",
    "entity_id",
    "job_name",
    "duration_ms",
    "method",
    "path",
    "status",
)

_LEVEL_COLOURS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"


def _context(record):
    return {key: getattr(record, key) for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``12:00:01 INFO     compliance.services.escalation [capa_id=4]: ...``"""

    def format(self, record: logging.LogRecord) -> str:
        colour = _LEVEL_COLOURS.get(record.levelname, "")
        stamp = time.strftime("%H:%M:%S", time.localtime(record.created))
        ctx = _context(record)
        ctx_str = ""
        if ctx:
            ctx_str = " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        line = (f"{colour}{stamp} {record.levelname:<8}{_RESET} "
                f"{record.name}{ctx_str}: {record.getMessage()}")
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger."""
    testing = app.config.get("TESTING", False)
    structured = not app.config.get("DEBUG", False) and not testing

    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL")
                  or ("INFO" if structured else "DEBUG"))
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app runs more than once per process in tests
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic.runtime"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if structured else "readable")


def init_request_logging(app):
    """Log method, path, status and duration for every ``/api/`` request."""
    access = logging.getLogger("compliance.access")

    @app.before_request
    def _start_timer():
        g.request_started = time.perf_counter()

    @app.after_request
    def _log_request(response):
        started = g.pop("request_started", None)
        if started is not None and request.path.startswith("/api/"):
            access.info(
                "%s %s %s", request.method, request.path, response.status_code,
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
        return response
