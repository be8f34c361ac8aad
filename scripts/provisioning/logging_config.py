"""Structured JSON logging for the provisioning logger tree."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

# Extra attributes callers attach via ``logger.x(..., extra={...})``
EXTRA_FIELDS = (
    "subject_id",
    "event_type",
    "context",
    "run_id",
    "records",
    "duration_s",
)


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line, including provisioning extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        # datetimes and UUIDs show up in context dicts
        return json.dumps(log_entry, default=str)


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a JSON stderr handler to ``provisioning``; level falls back to LOG_LEVEL."""
    level = level or os.environ.get("LOG_LEVEL", "INFO")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("provisioning")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)
    root.propagate = False
