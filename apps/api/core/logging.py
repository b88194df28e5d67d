"""
Structured logging configuration for production use.

Provides JSON-formatted logs for better parsing and aggregation, plus a
bounded in-memory buffer of recent records that admins can query.
"""
import logging
import sys
import json
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from core.config import settings


def _record_to_dict(record: logging.LogRecord) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "module": record.module,
        "function": record.funcName,
        "line": record.lineno,
    }
    if hasattr(record, "extra_fields"):
        data.update(record.extra_fields)
    return data


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = _record_to_dict(record)

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class LogBuffer(logging.Handler):
    """
    Ring buffer of recent log records.

    Holds at most ``capacity`` records; the oldest record is evicted first.
    Exception tracebacks are never stored, only the exception type name.
    """

    def __init__(self, capacity: int = 500, level: int = logging.NOTSET):
        super().__init__(level=level)
        self.capacity = capacity
        self._records: deque = deque(maxlen=capacity)
        self._buffer_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = _record_to_dict(record)
            if record.exc_info and record.exc_info[0] is not None:
                entry["exception_type"] = record.exc_info[0].__name__
            with self._buffer_lock:
                self._records.append(entry)
        except Exception:
            self.handleError(record)

    def query(
        self,
        level: Optional[str] = None,
        logger: Optional[str] = None,
        contains: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Return matching records, newest first."""
        min_level = logging.getLevelName(level.upper()) if level else None
        if not isinstance(min_level, int):
            min_level = None

        with self._buffer_lock:
            snapshot = list(self._records)

        results = []
        for entry in reversed(snapshot):
            if min_level is not None and logging.getLevelName(entry["level"]) < min_level:
                continue
            if logger and not entry["logger"].startswith(logger):
                continue
            if contains and contains.lower() not in entry["message"].lower():
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        with self._buffer_lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


log_buffer = LogBuffer(capacity=settings.LOG_BUFFER_SIZE)


def setup_logging():
    """
    Configure application-wide logging.

    Uses JSON format in production, text format in development.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    # Create formatter
    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    root_logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_buffer.setLevel(log_level)
    root_logger.addHandler(log_buffer)

    # Set levels for noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)

    return root_logger
