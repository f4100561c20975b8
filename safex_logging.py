"""Logging configuration for the safex command line tools.

Library modules only create ``safex.*`` loggers; handlers are installed here,
once, by whichever entry point runs. Output always goes to stderr so that
stdout stays machine-readable.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, Union

LOG_FORMATS = ("text", "json")

_LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Attributes every LogRecord has; anything else came in through ``extra=``
_RECORD_FIELDS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: time, level, logger, message and any extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_FIELDS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def parse_level(level: Union[str, int, None]) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    try:
        return _LEVEL_MAP[level.upper()]
    except KeyError:
        valid = ", ".join(name.lower() for name in _LEVEL_MAP)
        raise ValueError(f"Invalid log level {level!r}; valid values: {valid}") from None


def configure_logging(
    level: Union[str, int, None] = None, fmt: Optional[str] = None, *, force: bool = False
) -> logging.Logger:
    """
    Install a stderr handler on the ``safex`` logger.

    Args:
        level: Level name or number (default INFO)
        fmt: "text" (default) or "json"
        force: Replace handlers installed by an earlier call

    Returns:
        The configured ``safex`` logger
    """
    fmt = (fmt or "text").lower()
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unsupported log format: {fmt}")

    logger = logging.getLogger("safex")
    if logger.handlers and not force:
        return logger

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logger.addHandler(handler)
    logger.setLevel(parse_level(level))
    return logger


__all__ = ["JsonFormatter", "configure_logging", "parse_level"]
