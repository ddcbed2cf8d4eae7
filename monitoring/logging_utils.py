import logging
import threading
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional


DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(
    level: int = logging.INFO,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    """
    if logging.getLogger().handlers:
        return

    fmt = log_format or DEFAULT_FORMAT
    logging.basicConfig(level=level, format=fmt)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8')
        handler.setFormatter(logging.Formatter(fmt))
        logging.getLogger().addHandler(handler)


class LogBuffer(logging.Handler):
    """In-memory sink that keeps the most recent log records for the operator surface."""

    def __init__(self, capacity: int = 500, level: int = logging.INFO):
        super().__init__(level)
        self._records = deque(maxlen=capacity)
        self._guard = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                'level': record.levelname.lower(),
                'logger': record.name,
                'message': record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                entry['error'] = repr(record.exc_info[1])
        except Exception:
            self.handleError(record)
            return
        with self._guard:
            self._records.append(entry)

    def recent(self, limit: int = 100, level: Optional[str] = None) -> List[Dict]:
        """Newest-first list of buffered records, optionally filtered by level name."""
        with self._guard:
            items = list(self._records)
        items.reverse()
        if level:
            wanted = level.lower()
            items = [item for item in items if item['level'] == wanted]
        return items[:max(0, limit)]

    def clear(self) -> None:
        with self._guard:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


def attach_log_buffer(capacity: int = 500, logger_name: Optional[str] = None) -> LogBuffer:
    buffer = LogBuffer(capacity)
    logging.getLogger(logger_name).addHandler(buffer)
    return buffer
