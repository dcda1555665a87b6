"""
Structured logging configuration.

JSON lines in production (or with LOG_FORMAT=json), plain text otherwise.
Structured context travels on a record as `extra_fields`; build it with
`log_fields(...)`:

    logger.info("Backfilled window", extra=log_fields(window="30-day", written=12))
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict
from core.config import settings


def log_fields(**fields: Any) -> Dict[str, Dict[str, Any]]:
    """Wrap keyword context for the `extra=` argument of a logging call."""
    return {"extra_fields": fields}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; `extra_fields` are merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        fields = getattr(record, "extra_fields", None)
        if isinstance(fields, dict):
            payload.update(fields)

        # UUIDs, dates and enums are stringified rather than rejected.
        return json.dumps(payload, default=str)


def setup_logging() -> logging.Logger:
    """
    Configure the root logger once for the API process or the worker.

    Safe to call more than once; existing root handlers are replaced.
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - [%(threadName)s] %(levelname)s - %(message)s"
        )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Quiet chatty dependencies
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)

    return root
