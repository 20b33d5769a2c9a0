"""In-memory log history for a debug-log view.

Keeps the last ``capacity`` formatted records so a viewer opened late can
still show everything since startup, and fans each new entry out to
live listeners.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

MAX_ENTRIES = 5000


@dataclass(frozen=True)
class LogEntry:
    timestamp_ms: int
    level: str
    name: str
    message: str


class RingBufferHandler(logging.Handler):
    """logging.Handler that keeps a bounded history of entries."""

    def __init__(self, capacity: int = MAX_ENTRIES, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._listeners: list[Callable[[LogEntry], None]] = []
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                timestamp_ms=int(record.created * 1000),
                level=record.levelname,
                name=record.name,
                message=self.format(record) if self.formatter else record.getMessage(),
            )
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                self.handleError(record)

    def entries(self) -> list[LogEntry]:
        with self._entries_lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def add_listener(self, listener: Callable[[LogEntry], None]) -> Callable[[], None]:
        """Register a live listener. Returns a callable that removes it."""
        with self._entries_lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._entries_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove
