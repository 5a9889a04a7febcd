"""Process-wide logging set-up shared by the eraser components."""

from __future__ import annotations

import json
import logging

LOGGER_NAME = "nodeeraser"
DEFAULT_LEVEL = "info"
SUPPORTED_LEVELS = ("debug", "info", "warn", "error")

_LEVELS = {
    "": logging.INFO,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": logging.CRITICAL,
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}

_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}

_CONSOLE_FORMAT = "%(asctime)s\t%(levelname)s\t%(name)s\t%(message)s"

_handler: logging.Handler | None = None


class _JsonFormatter(logging.Formatter):
    """One JSON object per record, with level, timestamp, logger and message."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "level": _LEVEL_NAMES.get(record.levelno, record.levelname.lower()),
            "ts": record.created,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _parse_level(level: str) -> int:
    if level in (level.lower(), level.upper()):
        found = _LEVELS.get(level.lower())
        if found is not None:
            return found
    raise ValueError(f"unable to parse log level: unrecognized level: {level!r}")


def configure(level: str = DEFAULT_LEVEL) -> logging.Logger:
    """Set up the package logger at ``level`` and return it.

    The debug level writes human-readable lines; every other level writes JSON.
    Raises :class:`ValueError` for an unknown level name.
    """
    global _handler
    numeric = _parse_level(level)

    handler = logging.StreamHandler()
    if numeric == logging.DEBUG:
        handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    else:
        handler.setFormatter(_JsonFormatter())

    logger = logging.getLogger(LOGGER_NAME)
    if _handler is not None:
        logger.removeHandler(_handler)
    logger.addHandler(handler)
    logger.setLevel(numeric)
    logger.propagate = False
    _handler = handler
    return logger