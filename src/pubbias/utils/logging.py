"""Logging for pubbias modules.

Records go to stderr so that CLI tables on stdout stay clean.  Keyword
context passed as ``extra={...}`` (for example ``k`` and ``k0`` of a
trim-and-fill run) becomes separate fields in JSON output and a
``key=value`` suffix in text output.
"""

import json
import logging
import sys
from typing import Any, Dict

from ..config.settings import settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to ``record`` through ``extra``."""
    return {key: value for key, value in vars(record).items() if key not in _RESERVED}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(record_context(record))
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text with context fields appended as ``key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = record_context(record)
        if context:
            text += " [" + " ".join(f"{key}={value}" for key, value in context.items()) + "]"
        return text


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        if settings.log_format == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(ContextFormatter(TEXT_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
