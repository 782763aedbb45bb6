"""
Logging setup for the KPI platform.

Two output shapes share one handler on the root logger:

    production            one JSON object per line (timestamp, level, logger,
                          message, source location, plus any known context
                          passed through ``extra=``)
    development / tests   short coloured line, context appended as key=value

Services attach context with ``extra={"project_id": ..., "month": ...}``;
the request timing middleware adds method/path/status/duration/request_id.
LOG_LEVEL overrides the default level (INFO in production, DEBUG elsewhere).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "user_id",
    "project_id",
    "month",
)

_QUIET_LOGGERS = ("werkzeug", "urllib3", "sqlalchemy.engine", "alembic")


def _context(record: logging.LogRecord) -> dict:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """Line-delimited JSON for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Compact coloured output for a terminal."""

    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{stamp} {record.levelname[0]}{self.RESET} {record.name}: {record.getMessage()}"
        ctx = _context(record)
        if ctx:
            line += "  " + " ".join(f"{k}={v}" for k, v in ctx.items())
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_level(is_prod: bool) -> tuple[str, int]:
    name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    return name, getattr(logging, name, logging.INFO)


def configure_logging(app):
    """Install the platform handler on the root logger for *app*."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing
    level_name, level = _resolve_level(is_prod)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.setLevel(level)

    # Tests build several apps per process; keep exactly one handler
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging ready (level=%s, json=%s)", level_name, is_prod)
