"""
Full-sync checkpoint bookkeeping.

Workers report the internalDate of every message they finish; the tracker
keeps the oldest one. Gmail lists newest first, so that minimum is how far
back the full sync has got. Every `interval` successes it raises a flush
flag for the orchestrator, which is the only thing that writes it to
the MailSync row.
"""

import threading
from datetime import datetime
from typing import Optional


class CheckpointTracker:
    """Lock-guarded minimum timestamp plus a periodic flush flag."""

    def __init__(self, interval: int = 50, start: Optional[datetime] = None):
        self.interval = max(1, interval)
        self._lock = threading.Lock()
        self._oldest = start
        self._recorded = 0
        self._recorded_at_flush = 0
        self._flush_due = False

    @property
    def oldest(self) -> Optional[datetime]:
        with self._lock:
            return self._oldest

    def record(self, timestamp: datetime) -> None:
        with self._lock:
            if self._oldest is None or timestamp < self._oldest:
                self._oldest = timestamp
            self._recorded += 1
            if self._recorded - self._recorded_at_flush >= self.interval:
                self._flush_due = True

    def take_flush(self) -> Optional[datetime]:
        """
        Consume a pending flush.

        Returns the checkpoint to persist, or None if no flush is due.
        """
        with self._lock:
            if not self._flush_due:
                return None
            self._flush_due = False
            self._recorded_at_flush = self._recorded
            return self._oldest
