"""
Structured logging configuration.

Every record carries the session context services attach through
``extra=`` (session_id, user_id, event_type) plus the request id stamped
by the timing middleware.  Access-log records from timing.py also carry
method / path / status / duration_ms.

- Production: one JSON object per line
- Development / testing: a single readable line with the context appended
- Log level: LOG_LEVEL env variable
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

CONTEXT_KEYS = ("request_id", "session_id", "user_id", "event_type")
ACCESS_KEYS = ("method", "path", "status", "duration_ms", "remote_addr")

_SHORT_NAMES = {"request_id": "req", "session_id": "session", "user_id": "user", "event_type": "event"}


class RequestContextFilter(logging.Filter):
    """Copy ``g.request_id`` onto records logged while a request is active."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class SessionLogFormatter(logging.Formatter):
    """Render a record as JSON (``as_json``) or as one readable line."""

    def __init__(self, as_json: bool = False):
        super().__init__()
        self.as_json = as_json

    def format(self, record: logging.LogRecord) -> str:
        if self.as_json:
            return self._format_json(record)
        return self._format_line(record)

    def _format_json(self, record) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_KEYS + ACCESS_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)

    def _format_line(self, record) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        context = [
            f"{_SHORT_NAMES[key]}={getattr(record, key)}"
            for key in CONTEXT_KEYS
            if getattr(record, key, None)
        ]
        if context:
            line += f" ({' '.join(context)})"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for *app*'s mode."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    # cleared first so repeated app creation in tests does not duplicate output
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(SessionLogFormatter(as_json=is_prod))
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine", "redis"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
