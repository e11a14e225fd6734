"""
Structured JSON logging configuration.

Every record is one JSON line on stdout, carrying the account, identity and
webhook event identifiers when a caller passes them through ``extra``.
"""

import json
import logging
import sys
from datetime import UTC, datetime

# LogRecord attributes copied into the JSON entry when present.
CONTEXT_FIELDS = ("account_id", "platform_identity", "event_type", "event_id")


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Example:
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(JSONFormatter())
        >>> logger = logging.getLogger(__name__)
        >>> logger.addHandler(handler)
        >>> logger.info("Turn answered", extra={"account_id": "a1b2"})
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Python logging.LogRecord

        Returns:
            JSON string with structured log data
        """
        log_entry = {
            "timestamp": datetime.now(UTC).replace(tzinfo=None).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO") -> None:
    """
    Configure structured JSON logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Example:
        >>> setup_logging(level="INFO")
        >>> logging.info("Application started")
    """
    formatter = JSONFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    # Set levels for noisy libraries
    for noisy in ("httpx", "httpcore", "asyncpg", "sqlmodel", "stripe", "telegram"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.info("Structured JSON logging configured", extra={"log_level": level})
