from __future__ import annotations

import logging
import sys

"""Logging initialization with labeled prefixes.

Every line written by the analyzer starts with one of INFO|WARN|ERROR|SUMMARY
(DEBUG only with --debug). The batch run ends with exactly one SUMMARY line.

Module loggers (``logging.getLogger(__name__)`` under ``src.*``) propagate to
the ``src`` logger, which gets the same handler so detector / model-assist
diagnostics share the labeled format.
"""

__all__ = [
    "SUMMARY_LEVEL",
    "LabeledFormatter",
    "setup_logging",
    "get_logger",
    "set_debug",
    "log_summary",
    "reset_logging",
]

APP_LOGGER_NAME = "sales_analyzer"
MODULE_LOGGER_NAME = "src"

# Custom SUMMARY level (between INFO=20 and WARNING=30)
SUMMARY_LEVEL = 25

_logger: logging.Logger | None = None


class LabeledFormatter(logging.Formatter):
    """Formats records as ``LABEL message``."""

    LEVEL_LABELS = {
        logging.DEBUG: "DEBUG",
        logging.INFO: "INFO",
        logging.WARNING: "WARN",
        logging.ERROR: "ERROR",
        logging.CRITICAL: "CRITICAL",
        SUMMARY_LEVEL: "SUMMARY",
    }

    def format(self, record: logging.LogRecord) -> str:
        level_label = self.LEVEL_LABELS.get(record.levelno, record.levelname)
        return f"{level_label} {record.getMessage()}"


def _configure(name: str, handler: logging.Handler) -> logging.Logger:
    lg = logging.getLogger(name)
    lg.setLevel(logging.INFO)
    for h in lg.handlers[:]:
        lg.removeHandler(h)
    lg.addHandler(handler)
    # root への伝播を止めて二重出力を防ぐ
    lg.propagate = False
    return lg


def setup_logging() -> logging.Logger:
    """Configure the application logger (idempotent).

    Output goes to stdout so the SUMMARY line is part of the CLI contract.

    Returns:
        Configured logger instance for the application
    """
    global _logger

    if _logger is not None:
        return _logger

    logging.addLevelName(SUMMARY_LEVEL, "SUMMARY")

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)
    handler.setFormatter(LabeledFormatter())

    _configure(MODULE_LOGGER_NAME, handler)
    _logger = _configure(APP_LOGGER_NAME, handler)
    return _logger


def get_logger() -> logging.Logger:
    if _logger is None:
        return setup_logging()
    return _logger


def set_debug(enabled: bool = True) -> None:
    """Switch application + module loggers (and their handlers) to DEBUG."""
    level = logging.DEBUG if enabled else logging.INFO
    for name in (APP_LOGGER_NAME, MODULE_LOGGER_NAME):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        for h in lg.handlers:
            h.setLevel(level)


def log_summary(message: str) -> None:
    """Log a message at SUMMARY level (the formatter adds the ``SUMMARY`` label).

    Args:
        message: The summary message to log, without the label
    """
    get_logger().log(SUMMARY_LEVEL, message)


def reset_logging() -> None:
    """Reset the global logger state. Mainly for testing purposes."""
    global _logger
    for name in (APP_LOGGER_NAME, MODULE_LOGGER_NAME):
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.propagate = True
        lg.setLevel(logging.NOTSET)
    _logger = None
