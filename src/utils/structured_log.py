from __future__ import annotations

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Any


_SETUP_LOCK = threading.Lock()
_CONFIGURED = False

# Attributes present on every LogRecord; anything else was passed via `extra=`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys() | {"message", "asctime"}
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line: level, message, timestamp, logger and any `extra=` context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str | None = None) -> None:
    """Install the JSON handler on the `src` logger tree (idempotent)."""
    global _CONFIGURED
    with _SETUP_LOCK:
        if _CONFIGURED:
            return
        raw_level = (level or os.getenv("RECIPES_LOG_LEVEL") or "INFO").strip().upper()
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JSONFormatter())
        root = logging.getLogger("src")
        root.handlers.clear()
        root.addHandler(handler)
        root.setLevel(getattr(logging, raw_level, logging.INFO))
        root.propagate = True
        _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
