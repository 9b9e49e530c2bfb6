"""
Guardian — Structured JSON Logger

Every log entry is a single-line JSON object with:
  - timestamp (ISO 8601)
  - level
  - module / function / line
  - message
  - optional context fields (session_id, owner_id, alert_kind, etc.)
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any


class StructuredJsonFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        if hasattr(record, "context") and isinstance(record.context, dict):
            log_entry["context"] = record.context

        if record.exc_info and record.exc_info[1]:
            log_entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """
    Return a logger configured with structured JSON output.

    Usage:
        from guardian.common.logger import get_logger
        logger = get_logger(__name__)
        logger.info("Session started", extra={"context": {"session_id": "..."}})
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredJsonFormatter())
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


def configure_logging(level: str = "INFO") -> None:
    """Route the whole `guardian` logger tree through the JSON formatter."""
    root = get_logger("guardian", level)
    root.propagate = False
    # Quieten chatty client libraries
    for noisy in ("urllib3", "botocore", "boto3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
