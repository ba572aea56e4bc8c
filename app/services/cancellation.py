"""
Cancellation scope shared by everything one sync call starts.

A deadline plus an Event: the producer, the workers and the history walk
all poll it, so expiry (or an explicit cancel) stops them promptly. A
child scope is cancelled with its parent but can also be cancelled on its
own (used to stop a worker pool early without ending the sync).
"""

import threading
import time
from typing import Optional

from app.services.errors import SyncCancelled


class CancellationScope:
    """Deadline-bounded cancellation flag."""

    def __init__(self, timeout: Optional[float] = None,
                 parent: Optional["CancellationScope"] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def cancel(self) -> None:
        self._event.set()

    def child(self) -> "CancellationScope":
        return CancellationScope(parent=self)

    def remaining(self) -> float:
        """Seconds left before the deadline (inf when unbounded, 0 when cancelled)."""
        if self.cancelled:
            return 0.0
        remaining = float("inf")
        if self._deadline is not None:
            remaining = max(0.0, self._deadline - time.monotonic())
        if self._parent is not None:
            remaining = min(remaining, self._parent.remaining())
        return remaining

    def check(self) -> None:
        if self.cancelled:
            raise SyncCancelled("Sync cancelled or timed out")
