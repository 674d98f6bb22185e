"""In-memory ring buffer of recent log records for debugging a session."""

import collections
import datetime
import json
import logging
import pathlib
import threading
from typing import Dict, List, Optional

MAX_ENTRIES = 50


class RingBufferHandler(logging.Handler):
    """Keeps the last `capacity` records; older ones are dropped."""

    def __init__(self, capacity: int = MAX_ENTRIES, level=logging.DEBUG):
        super().__init__(level=level)
        self._entries = collections.deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record):
        try:
            entry = {
                "timestamp": datetime.datetime.fromtimestamp(
                    record.created, tz=datetime.timezone.utc
                ).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(self) -> List[Dict[str, str]]:
        with self._entries_lock:
            return list(self._entries)

    def dump(self, path) -> pathlib.Path:
        path = pathlib.Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(self.entries(), f, indent=2)
        return path


_handler: Optional[RingBufferHandler] = None
_install_lock = threading.Lock()


def install(capacity: int = MAX_ENTRIES, logger_name: str = "matchcut") -> RingBufferHandler:
    """Attach the process-wide ring buffer to the package logger once."""
    global _handler
    with _install_lock:
        if _handler is None:
            _handler = RingBufferHandler(capacity)
            logging.getLogger(logger_name).addHandler(_handler)
        return _handler
