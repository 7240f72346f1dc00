"""
Logging configuration for repokit hosts.

- **Rotating file handler**: ``RotatingFileHandler`` with configurable max size
  and backup count.
- **JSON structured logging**: one JSON object per line for log aggregation.
- **Console handler**: human-readable coloured output for local development.
- **Debug toggle**: ``DEBUG=true`` switches all loggers to DEBUG and lets
  ``sqlalchemy.engine`` through.

Usage:
    Call ``setup_logging()`` once during application startup.  All modules
    that call ``logging.getLogger(__name__)`` (including every repository)
    inherit the configured handlers and formatters.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

from repokit.core.config import settings

LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs")
LOG_FILE = "repokit.log"
ERROR_LOG_FILE = "repokit-error.log"

# Extra attributes repositories attach through ``logger.x(..., extra={...})``.
EXTRA_FIELDS = ("model", "operation", "affected", "elapsed_ms")


class JSONFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Output example::

        {"timestamp": "2026-10-18T10:30:00.123+00:00", "level": "DEBUG",
         "logger": "repokit.repositories.base", "message": "Committed 2 change(s)",
         "module": "base", "function": "save_change", "line": 120,
         "model": "Product", "operation": "save_change", "affected": 2}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable, ANSI-coloured formatter for terminal output."""

    COLOURS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )

        model = getattr(record, "model", None)
        model_str = f" [{model}]" if model else ""

        base = (
            f"{timestamp} | {colour}{record.levelname:<8}{self.RESET} | "
            f"{record.name}{model_str} | {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def setup_logging() -> None:
    """
    Configure the root logger with console + rotating file handlers.

    Subsequent calls are no-ops once the root logger has handlers.

    Configuration (via environment variables / ``Settings``):
    - ``DEBUG=true`` → all loggers at DEBUG, SQL echo visible.
    - ``LOG_LEVEL`` → root log level otherwise (default: INFO).
    - ``LOG_FILE_MAX_BYTES`` / ``LOG_FILE_BACKUP_COUNT`` → rotation policy.
    """
    root_logger = logging.getLogger()

    if root_logger.handlers:
        return

    level = (
        logging.DEBUG
        if settings.DEBUG
        else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    )
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    os.makedirs(LOG_DIR, exist_ok=True)
    file_handler = RotatingFileHandler(
        filename=os.path.join(LOG_DIR, LOG_FILE),
        maxBytes=settings.LOG_FILE_MAX_BYTES,
        backupCount=settings.LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(file_handler)

    error_handler = RotatingFileHandler(
        filename=os.path.join(LOG_DIR, ERROR_LOG_FILE),
        maxBytes=settings.LOG_FILE_MAX_BYTES,
        backupCount=settings.LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(error_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.DEBUG else logging.WARNING
    )

    root_logger.info(
        "Logging initialized: level=%s, file=%s, max_size=%s MB, backups=%d",
        logging.getLevelName(level),
        os.path.join(LOG_DIR, LOG_FILE),
        settings.LOG_FILE_MAX_BYTES // (1024 * 1024),
        settings.LOG_FILE_BACKUP_COUNT,
    )
