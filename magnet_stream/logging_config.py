"""
Structured Logging Configuration for magnet-stream
Provides JSON logging, log rotation, activity log buffer, and context filtering.
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

_log_context: contextvars.ContextVar = contextvars.ContextVar("log_context", default=None)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z"


class ContextFilter(logging.Filter):
    """
    Add context fields to log records.
    Context is kept per asyncio task, so concurrent streams don't mix fields.
    """

    @classmethod
    def set_context(cls, **kwargs) -> None:
        """Set context fields for subsequent log messages in this task."""
        context = dict(_log_context.get() or {})
        context.update(kwargs)
        _log_context.set(context)

    @classmethod
    def clear_context(cls, *keys) -> None:
        """Clear specific context fields or all if no keys specified."""
        context = _log_context.get()
        if not context:
            return
        if keys:
            context = {k: v for k, v in context.items() if k not in keys}
            _log_context.set(context)
        else:
            _log_context.set({})

    @classmethod
    def get_context(cls) -> Dict[str, Any]:
        """Get current context."""
        return dict(_log_context.get() or {})

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to the log record."""
        for key, value in (_log_context.get() or {}).items():
            setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """
    Format logs as JSON for structured logging.
    Includes timestamp, level, logger name, message, and context fields.
    """

    CONTEXT_FIELDS = [
        "info_hash",
        "file_index",
        "backend",
        "job_id",
        "operation",
        "error",
        "duration_ms",
        "byte_range",
    ]

    RESERVED = frozenset((
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    ))

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
            log_obj["exception_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None

        if self.include_extra:
            for key, value in record.__dict__.items():
                if (
                    key not in log_obj
                    and key not in self.CONTEXT_FIELDS
                    and not key.startswith("_")
                    and key not in self.RESERVED
                ):
                    try:
                        json.dumps(value)
                        log_obj[key] = value
                    except (TypeError, ValueError):
                        log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter for better readability.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors."""
        message = super().format(record)

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            if color:
                message = message.replace(
                    record.levelname,
                    f"{color}{record.levelname}{self.RESET}",
                    1
                )

        context_parts = []
        for field in ["backend", "info_hash", "file_index", "job_id"]:
            value = getattr(record, field, None)
            if value is not None and value != "":
                context_parts.append(f"{field}={value}")

        if context_parts:
            message += f" [{', '.join(context_parts)}]"

        return message


@dataclass
class ActivityLogEntry:
    """Entry in the activity log buffer."""
    timestamp: str
    level: str
    logger: str
    message: str
    info_hash: Optional[str] = None
    file_index: Optional[int] = None
    backend: Optional[str] = None
    job_id: Optional[str] = None


class ActivityLogHandler(logging.Handler):
    """
    Custom handler that stores logs in a ring buffer for API access.
    Allows querying recent logs without external log aggregation.
    """

    LEVEL_PRIORITY = {
        "DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50
    }

    def __init__(self, max_entries: int = 1000, min_level: int = logging.INFO):
        super().__init__(level=min_level)
        self._buffer: deque = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        """Store log entry in buffer."""
        try:
            entry = ActivityLogEntry(
                timestamp=_utc_timestamp(),
                level=record.levelname,
                logger=record.name,
                message=record.getMessage(),
                info_hash=getattr(record, "info_hash", None),
                file_index=getattr(record, "file_index", None),
                backend=getattr(record, "backend", None),
                job_id=getattr(record, "job_id", None),
            )

            with self._lock:
                self._buffer.append(entry)

        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        limit: int = 100,
        level: str = None,
        info_hash: str = None,
        backend: str = None,
        since: str = None,
    ) -> List[Dict[str, Any]]:
        """
        Get filtered logs from the buffer.

        Args:
            limit: Maximum number of entries to return
            level: Minimum log level filter
            info_hash: Filter by torrent hash
            backend: Filter by backend kind
            since: ISO timestamp, return only entries after this time

        Returns:
            List of log entries as dictionaries
        """
        with self._lock:
            entries = list(self._buffer)

        if level:
            min_priority = self.LEVEL_PRIORITY.get(level.upper(), 0)
            entries = [
                e for e in entries
                if self.LEVEL_PRIORITY.get(e.level, 0) >= min_priority
            ]

        if info_hash:
            info_hash = info_hash.lower()
            entries = [e for e in entries if e.info_hash == info_hash]

        if backend:
            entries = [e for e in entries if e.backend == backend]

        if since:
            entries = [e for e in entries if e.timestamp >= since]

        entries = entries[-limit:]

        return [
            {
                "timestamp": e.timestamp,
                "level": e.level,
                "logger": e.logger,
                "message": e.message,
                "info_hash": e.info_hash,
                "file_index": e.file_index,
                "backend": e.backend,
                "job_id": e.job_id,
            }
            for e in entries
        ]

    def clear(self) -> int:
        """Clear the log buffer. Returns count cleared."""
        with self._lock:
            count = len(self._buffer)
            self._buffer.clear()
            return count

    def get_stats(self) -> Dict[str, Any]:
        """Get buffer statistics."""
        with self._lock:
            entries = list(self._buffer)

        level_counts = {}
        for e in entries:
            level_counts[e.level] = level_counts.get(e.level, 0) + 1

        return {
            "buffer_size": len(entries),
            "max_size": self._buffer.maxlen,
            "by_level": level_counts,
        }


# Component-specific log levels
COMPONENT_LOG_LEVELS = {
    "magnet_stream": "INFO",
    "magnet_stream.server": "INFO",
    "magnet_stream.swarm_backend": "INFO",
    "magnet_stream.daemon_backend": "INFO",
    "magnet_stream.debrid_client": "INFO",
    "magnet_stream.persistence": "WARNING",
    "magnet_stream.retry": "INFO",
    "aiohttp": "WARNING",
    "aiohttp.client": "WARNING",
    "aiosqlite": "WARNING",
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
    "uvicorn.error": "INFO",
    "fastapi": "INFO",
}


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    use_colors: bool = True,
    activity_log_size: int = 1000,
) -> ActivityLogHandler:
    """
    Configure logging with optional file rotation and structured output.

    Args:
        log_level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (enables rotation if set)
        log_format: "text" for human-readable, "json" for structured
        max_file_size_mb: Maximum size of each log file before rotation
        backup_count: Number of rotated log files to keep
        use_colors: Use colored output in console (if terminal supports it)
        activity_log_size: Number of entries in the activity log buffer

    Returns:
        ActivityLogHandler for API access to recent logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(context_filter)

    if log_format == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.addFilter(context_filter)

        if log_format == "json":
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))

        root_logger.addHandler(file_handler)

    activity_handler = ActivityLogHandler(
        max_entries=activity_log_size,
        min_level=logging.INFO,
    )
    activity_handler.addFilter(context_filter)
    root_logger.addHandler(activity_handler)

    for logger_name, level in COMPONENT_LOG_LEVELS.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, level))

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging configured: level={log_level}, format={log_format}, "
        f"file={log_file or 'none'}"
    )

    return activity_handler


class LogContext:
    """
    Context manager for setting log context fields.

    Usage:
        with LogContext(info_hash="08ada5a7...", backend="swarm"):
            logger.info("Selecting file")
    """

    def __init__(self, **kwargs):
        self.context = {k: v for k, v in kwargs.items() if v is not None}
        self._token = None

    def __enter__(self):
        merged = ContextFilter.get_context()
        merged.update(self.context)
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.reset(self._token)
        return False
