"""Bounded in-memory record of recent filtering activity."""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional

from .models import LogEntry

DEFAULT_CAPACITY = 50
PACKAGE_LOGGER = __name__.split(".")[0]


class ActivityLog:
    """Fixed-capacity ring buffer of ``LogEntry`` records, safe across threads."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("Activity log capacity must be positive.")
        self.capacity = capacity
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def recent(
        self, limit: Optional[int] = None, feed_id: Optional[int] = None
    ) -> List[LogEntry]:
        """Return entries newest first, optionally for one feed only."""
        with self._lock:
            snapshot = list(self._entries)

        snapshot.reverse()
        if feed_id is not None:
            snapshot = [entry for entry in snapshot if entry.feed_id == feed_id]
        if limit is not None:
            snapshot = snapshot[:limit]
        return snapshot

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ActivityLogHandler(logging.Handler):
    """Copy records from this package's loggers into an ``ActivityLog``.

    ``feed_id``, ``entry_id`` and ``entry_title`` are read from the record
    when the caller passed them through ``extra``.
    """

    def __init__(self, activity_log: ActivityLog, level: int = logging.INFO):
        super().__init__(level)
        self.activity_log = activity_log
        self.addFilter(logging.Filter(PACKAGE_LOGGER))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                level=record.levelname,
                target=record.name,
                message=record.getMessage(),
                feed_id=getattr(record, "feed_id", None),
                entry_id=getattr(record, "entry_id", None),
                entry_title=getattr(record, "entry_title", None),
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
            )
            self.activity_log.append(entry)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def attach_activity_log(
    activity_log: ActivityLog, level: int = logging.INFO
) -> ActivityLogHandler:
    """Start capturing this package's log records into ``activity_log``."""
    handler = ActivityLogHandler(activity_log, level)
    logging.getLogger(PACKAGE_LOGGER).addHandler(handler)
    return handler


def detach_activity_log(handler: ActivityLogHandler) -> None:
    logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
    handler.close()
