"""Structured logging configuration."""

import json
import logging
import sys
from typing import Any, Dict, MutableMapping, Optional, Tuple

from cdc_engine.common.config import get_settings

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields (pipeline_id, sink_id, position from ContextLogger and extra=)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(log_level: Optional[str] = None) -> None:
    """
    Setup structured JSON logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL);
            defaults to LOG_LEVEL from settings
    """
    settings = get_settings()
    level_name = (log_level or settings.observability.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    # Create root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create console handler with JSON formatter
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(JSONFormatter())

    root_logger.addHandler(console_handler)

    # Set level for third-party loggers
    logging.getLogger("kafka").setLevel(logging.WARNING)
    logging.getLogger("pymysqlreplication").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance with given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class ContextLogger(logging.LoggerAdapter):
    """
    Logger that stamps every record with fixed context fields.

    The coordinator binds ``pipeline_id`` and sink workers also bind ``sink_id``,
    so JSON log lines from several pipelines in one process can be told apart.
    Per-call ``extra=`` values (e.g. ``position``) are merged over the bound ones.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_context_logger(name: str, **context: Any) -> ContextLogger:
    """
    Get a logger that adds ``context`` to every record.

    Args:
        name: Logger name (typically __name__)
        **context: Fields added to each record, e.g. pipeline_id="orders"

    Returns:
        ContextLogger wrapping the named logger
    """
    return ContextLogger(logging.getLogger(name), context)
