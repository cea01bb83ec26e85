"""
JSON logging for TaskSync.

Every line is one JSON object: timestamp, level, component, message,
then whatever context the caller passed (item_id, platform, version...).
"""

import json
import sys
import logging
from datetime import datetime, timezone
from enum import Enum

LOGGER_NAME = "TaskSync"

# Attributes every LogRecord carries; anything else came in through `extra`
RECORD_ATTRS = set(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {"message", "asctime"}


def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class JsonFormatter(logging.Formatter):
    """Formats a record and its context keywords as a single JSON line."""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        entry.update(
            (key, _jsonable(value))
            for key, value in vars(record).items()
            if key not in RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


logger = logging.getLogger(LOGGER_NAME)
logger.setLevel(logging.INFO)
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JsonFormatter())
logger.addHandler(handler)


def get_logger(component: str = "SYSTEM"):
    return SyncLogger(component)


def set_level(level: str) -> None:
    """Set the TaskSync log level by name (e.g. "DEBUG"); unknown names mean INFO."""
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))


class SyncLogger:
    """Component logger; keyword arguments become JSON fields."""

    def __init__(self, component):
        self.component = component
        self.logger = logging.getLogger(LOGGER_NAME)

    def _log(self, level, msg, item_id, context, exc_info=False):
        extra = {"component": self.component}
        if item_id:
            extra["item_id"] = item_id
        extra.update(context)
        self.logger.log(level, msg, exc_info=exc_info, extra=extra)

    def debug(self, msg, item_id=None, **kwargs):
        self._log(logging.DEBUG, msg, item_id, kwargs)

    def info(self, msg, item_id=None, **kwargs):
        self._log(logging.INFO, msg, item_id, kwargs)

    def warning(self, msg, item_id=None, **kwargs):
        self._log(logging.WARNING, msg, item_id, kwargs)

    def error(self, msg, item_id=None, exc_info=False, **kwargs):
        self._log(logging.ERROR, msg, item_id, kwargs, exc_info=exc_info)
