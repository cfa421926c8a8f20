"""Logging setup for the campaign engine.

Log lines emitted while a request or an enrollment is being processed carry
that request's or enrollment's ids. The ids are kept per thread, since the
scheduler advances several enrollments at once on a worker pool.
"""

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "urllib3": logging.WARNING,
}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, with the thread's log context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.lineno}",
        }
        entry.update(getattr(record, "log_context", {}))
        if hasattr(record, "error_details"):
            entry["error"] = record.error_details
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class LogContextFilter(logging.Filter):
    """Stamps the current thread's context (tenant, workflow, enrollment, request) onto records."""

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    @property
    def context(self) -> Dict[str, Any]:
        if not hasattr(self._local, "context"):
            self._local.context = {}
        return self._local.context

    def filter(self, record: logging.LogRecord) -> bool:
        merged = dict(self.context)
        merged.update(getattr(record, "log_context", {}))
        record.log_context = merged
        return True


_context_filter = LogContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        log_file: Also write to this file, rotated at ``max_size`` bytes
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Rotation size of the log file in bytes
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    if structured:
        formatter: logging.Formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Attach fields to every record logged from this thread until cleared."""
    _context_filter.context.update(kwargs)


def clear_logging_context():
    _context_filter.context.clear()


@contextmanager
def logging_context(**kwargs):
    """Scope context fields to a block, e.g. the processing of one enrollment."""
    set_logging_context(**kwargs)
    try:
        yield
    finally:
        clear_logging_context()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log one record with extra context fields."""
    logger.log(level, message, extra={"log_context": context})
