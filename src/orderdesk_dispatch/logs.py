"""JSON-lines logging for the dispatch engine.

Every module logs through ``logging.getLogger("orderdesk_dispatch.<module>")``.
Structured fields are attached with ``extra={"structured": {...}}`` and merged
into the emitted line by :class:`JSONFormatter`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

ROOT_LOGGER = "orderdesk_dispatch"


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str = "orderdesk_dispatch") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
        }
        structured = getattr(record, "structured", None)
        if isinstance(structured, dict):
            entry.update(structured)
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", *, stream=None) -> logging.Logger:
    """Install a single JSON handler on the package root logger."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        if getattr(handler, "_orderdesk_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter())
    handler._orderdesk_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
