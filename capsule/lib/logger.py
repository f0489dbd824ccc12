"""
Logging setup for Capsule server.

Console output plus an in-memory ring buffer that the health endpoint exposes.
"""

import logging
import sys
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from capsule.config import get_settings


class LogBuffer:
    """Ring buffer of recent log entries."""

    def __init__(self, maxlen: int = 1000):
        self._buffer: deque[dict[str, Any]] = deque(maxlen=maxlen)

    def append(self, entry: dict[str, Any]) -> None:
        self._buffer.append(entry)

    def get_recent(self, limit: int = 100, level: Optional[str] = None) -> list[dict[str, Any]]:
        """Get the most recent entries, optionally only those at one level."""
        entries = list(self._buffer)
        if level:
            entries = [e for e in entries if e["level"] == level.upper()]
        return entries[-limit:] if limit < len(entries) else entries

    def clear(self) -> None:
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)


class BufferedHandler(logging.Handler):
    """Logging handler that stores entries in a LogBuffer."""

    def __init__(self, buffer: LogBuffer, level: int = logging.NOTSET):
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
                "function": record.funcName,
                "line": record.lineno,
            }
            sandbox_id = getattr(record, "sandbox_id", None)
            if sandbox_id:
                entry["sandboxId"] = sandbox_id
            self.buffer.append(entry)
        except Exception:
            self.handleError(record)


# Global log buffer
_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    """Get the global log buffer."""
    return _log_buffer


def setup_logging(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
) -> None:
    """Configure the root logger with console and buffer handlers."""
    settings = get_settings()

    log_level = getattr(logging, (level or settings.log_level).upper())
    log_format = format_string or settings.log_format

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(console_handler)

    buffer_handler = BufferedHandler(_log_buffer, log_level)
    buffer_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(buffer_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the specified name."""
    return logging.getLogger(name)
