"""
Structured logging for the execution queue.

Provides:
    - StructuredFormatter: JSON formatter for machine-parseable log output.
    - get_logger: Factory for structured loggers.
    - configure_logging: Process-wide root logger setup.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

TEXT_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for machine-parseable log output.

    Each log record is serialised as a single JSON line containing at minimum:
        timestamp, level, module, message.
    If the record carries a ``metrics`` attribute (set via ``extra={"metrics": {...}}``),
    those key-value pairs are included under the ``"metrics"`` key.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "metrics"):
            log_entry["metrics"] = record.metrics
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """Get a structured logger.

    Parameters
    ----------
    name : str
        Logger name (typically ``__name__`` of the calling module).
    level : str
        Minimum log level.  One of DEBUG, INFO, WARNING, ERROR, CRITICAL.

    Returns
    -------
    logging.Logger
        Configured logger with a ``StructuredFormatter`` handler attached.
        If the logger already has handlers (e.g. from a previous call),
        no duplicate handler is added.
    """
    logger = logging.getLogger(name)
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    # Avoid adding duplicate handlers on repeated calls
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(numeric_level)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

    return logger


def configure_logging(level: str = "INFO", fmt: str = "structured") -> None:
    """Configure the root logger once per process.

    ``fmt="json"`` emits one ``StructuredFormatter`` object per line;
    ``"structured"`` is the pipe-separated human format.
    """
    effective_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT))
    logging.basicConfig(level=effective_level, handlers=[handler], force=True)
