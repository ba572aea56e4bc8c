"""
Bounded worker pool for full-sync message processing.

One producer thread drains an iterator (the paginated message listing)
into a bounded queue; a fixed number of worker threads pull from it. The
calling thread only waits, ticking a callback so it can do the
single-writer work (checkpoint flushes) while the pool runs.
"""

import logging
import queue
import threading
from typing import Any, Callable, Iterable, List, Optional

from app.services.cancellation import CancellationScope

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class WorkerPool:
    """Producer + N workers over a bounded queue."""

    def __init__(self, num_workers: int = 5, queue_size: int = 100,
                 scope: Optional[CancellationScope] = None):
        self.num_workers = max(1, num_workers)
        self.queue_size = max(1, queue_size)
        self.scope = scope or CancellationScope()
        # Error buffer sized to the worker count; full means drop
        self.errors: queue.Queue = queue.Queue(maxsize=self.num_workers)

    def report_error(self, error: BaseException) -> None:
        """Offer an error without ever blocking the caller."""
        try:
            self.errors.put_nowait(error)
        except queue.Full:
            pass

    def run(
        self,
        producer: Iterable[Any],
        handler: Callable[[Any], None],
        on_tick: Optional[Callable[[], None]] = None,
        tick_interval: float = 0.5,
    ) -> List[BaseException]:
        """
        Run the pool until the producer is exhausted and the queue drained,
        or the scope is cancelled.

        Args:
            producer: Iterable of work items; iterated on the producer thread
            handler: Called once per item on a worker thread; exceptions are
                reported to the error buffer and the worker moves on
            on_tick: Called on the calling thread roughly every tick_interval
            tick_interval: Seconds between on_tick calls

        Returns:
            Errors collected (at most num_workers of them)
        """
        work: queue.Queue = queue.Queue(maxsize=self.queue_size)
        producer_done = threading.Event()

        def produce():
            try:
                for item in producer:
                    while True:
                        if self.scope.cancelled:
                            logger.info("Scope cancelled during message fetch")
                            return
                        try:
                            work.put(item, timeout=POLL_INTERVAL)
                            break
                        except queue.Full:
                            continue
            except Exception as e:
                self.report_error(e)
            finally:
                producer_done.set()

        def consume(worker_id: int):
            while True:
                if self.scope.cancelled:
                    logger.info(f"Worker {worker_id}: scope cancelled, stopping")
                    return
                try:
                    item = work.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    if producer_done.is_set():
                        return
                    continue
                try:
                    handler(item)
                except Exception as e:
                    self.report_error(e)

        threads = [threading.Thread(target=produce, name="mail-sync-producer", daemon=True)]
        threads += [
            threading.Thread(target=consume, args=(i,), name=f"mail-sync-worker-{i}", daemon=True)
            for i in range(self.num_workers)
        ]
        for thread in threads:
            thread.start()

        for thread in threads:
            while thread.is_alive():
                thread.join(tick_interval)
                if on_tick is not None:
                    on_tick()

        collected = []
        while True:
            try:
                collected.append(self.errors.get_nowait())
            except queue.Empty:
                break
        return collected
