"""Structured JSON logging for the service helpers.

Logs go to stdout as JSON lines (12-factor/cloud-native pattern).
Optional file output via the LOG_FILE env var.

Each helper module logs through a child of the ``cloud_helpers`` logger, so
the ``logger`` field tells which service a line came from.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from cloud_helpers.config.settings import get_settings

ROOT_LOGGER = "cloud_helpers"


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Merge any extra fields passed via `extra={"context": {...}}`
        if hasattr(record, "context"):
            log_entry.update(record.context)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging() -> None:
    """Configure the cloud_helpers logger with JSON output."""
    settings = get_settings()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.DEBUG))
    logger.handlers.clear()

    formatter = JSONFormatter()

    # Always log to stdout
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger (avoids duplicate output)
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
