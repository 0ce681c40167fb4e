"""
Logging setup for AutoTrack.

Production writes one JSON object per line; development and tests get a
short coloured line. Records emitted inside a request are stamped with the
request id and the caller (``g.jwt_user_id``) by ``RequestContextFilter``.

``init_request_logging`` adds an access-log line per API request and echoes
``X-Request-ID`` / ``X-Request-Duration-Ms`` on the response.
"""

import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone

from flask import Flask, g, has_request_context, request

logger = logging.getLogger("autotrack.request")

# Attributes copied from ``extra={...}`` into structured output
CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "subscription_id",
    "action",
    "actor_id",
    "job",
)

SLOW_REQUEST_MS = 1000
_QUIET_PATHS = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) not in (None, "")
    }


class RequestContextFilter(logging.Filter):
    """Attach request id and caller to records logged during a request."""

    def filter(self, record):
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "user_id", None) is None:
                record.user_id = getattr(g, "jwt_user_id", None)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_context(record),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    _LEVEL_COLOURS = {
        logging.DEBUG: "\033[2m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }

    def format(self, record):
        colour = self._LEVEL_COLOURS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = " ".join(
            f"{key}={value}" for key, value in _context(record).items()
            if key in ("subscription_id", "job", "request_id")
        )
        line = f"{stamp} {colour}{record.levelname[0]}\033[0m {record.name}: {record.getMessage()}"
        if tags:
            line = f"{line}  [{tags}]"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(app: Flask):
    """Install a single stderr handler on the root logger.

    ``LOG_LEVEL`` overrides the default (INFO in production, DEBUG otherwise).
    """
    testing = app.config.get("TESTING", False)
    production = not (app.config.get("DEBUG", False) or testing)
    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ConsoleFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    # create_app runs once per test session but may run again in scripts
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)


def init_request_logging(app: Flask):
    """Log each API request with its status and duration."""

    @app.before_request
    def _begin():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish(response):
        started = getattr(g, "request_started", None)
        if started is None:
            return response
        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"

        if request.path in _QUIET_PATHS or not request.path.startswith("/api"):
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": round(elapsed, 1),
        }
        if response.status_code >= 500:
            level = logging.ERROR
        elif elapsed > SLOW_REQUEST_MS:
            level = logging.WARNING
        else:
            level = logging.DEBUG
        logger.log(level, "%s %s -> %d (%.0fms)", request.method, request.path,
                   response.status_code, elapsed, extra=extra)
        return response
