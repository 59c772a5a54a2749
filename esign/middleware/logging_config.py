"""
Structured logging configuration.

- Development: human-readable colored format
- Production: JSON format (log aggregator compatible)
- Log level: controlled via LOG_LEVEL env variable

Signing and executed-file tokens must never reach a log line.  Services
log identifiers only (as ``extra`` fields); ``TokenRedactionFilter`` also
masks any ``/signing/<token>`` or ``/executed/<token>`` path that slips
into a message, e.g. from a library logging a request URL.
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone

# Request / envelope identifiers promoted from ``extra`` into JSON output
CONTEXT_FIELDS = (
    "method",
    "path",
    "status",
    "remote_addr",
    "duration_ms",
    "request_id",
    "project_id",
    "document_id",
    "envelope_id",
    "signing_request_id",
    "event_type",
    "actor_id",
    "reason",
)

_TOKEN_PATH = re.compile(r"/(signing|executed)/[A-Za-z0-9._\-]+")


def redact_tokens(text: str) -> str:
    return _TOKEN_PATH.sub(r"/\1/<token>", text)


class TokenRedactionFilter(logging.Filter):
    """Rewrites the record's message with token paths masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_tokens(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        log_entry.update({
            key: getattr(record, key) for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        })
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Human-readable colored formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = [
            f"{label}={getattr(record, key)}"
            for key, label in (("envelope_id", "env"), ("signing_request_id", "req"))
            if getattr(record, key, None)
        ]
        tag_str = f" [{' '.join(tags)}]" if tags else ""
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}{tag_str}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    LOG_LEVEL overrides the default (DEBUG in development and tests,
    INFO in production).  Production emits JSON.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.addFilter(TokenRedactionFilter())
    handler.setLevel(level)

    # Tests call create_app more than once
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine", "smtplib"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
