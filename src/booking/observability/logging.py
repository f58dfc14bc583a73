"""JSON log lines tagged with the active correlation id."""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

_DEFAULT_LEVEL = "INFO"


class JsonFormatter(logging.Formatter):
    """Render a record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        cid = get_correlation_id()
        if cid:
            entry["correlationId"] = cid

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # extra={"extra_fields": {...}} is merged at top level
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in extra_fields.items():
                entry.setdefault(key, value)

        return json.dumps(entry, default=str, ensure_ascii=False)


def _level_from_env() -> int:
    name = os.environ.get("LOG_LEVEL", _DEFAULT_LEVEL).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Return a logger writing JSON to stdout.

    Handlers are attached once per logger name, so repeated calls at
    import time do not duplicate output.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level_from_env())
        logger.propagate = False

    return logger
