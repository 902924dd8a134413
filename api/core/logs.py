"""
Logging setup.

JSON lines by default (one object per record, with a UTC timestamp), or plain
text for local development (LOG_FORMAT=text).
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone

_EXTRA_FIELDS = ("capability", "pool_idle", "pool_leased")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            value = record.__dict__.get(key)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Attach one stream handler to the root logger. Calling it again replaces it.
    """
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"
    fmt = (fmt or os.environ.get("LOG_FORMAT", "json")).strip().lower() or "json"

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_app_handler", False):
            root.removeHandler(existing)
    handler._app_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))
