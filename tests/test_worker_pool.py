"""Tests for the bounded worker pool."""

import itertools
import threading
import time

from app.services.cancellation import CancellationScope
from app.services.worker_pool import WorkerPool


class TestWorkerPool:
    """Producer/worker behaviour."""

    def test_handles_every_item(self):
        seen = []
        lock = threading.Lock()

        def handler(item):
            with lock:
                seen.append(item)

        pool = WorkerPool(num_workers=4, queue_size=3)
        errors = pool.run(iter(range(200)), handler)

        assert errors == []
        assert sorted(seen) == list(range(200))

    def test_errors_never_block_workers(self):
        """Error buffer holds num_workers entries, the rest are dropped."""
        handled = []

        def handler(item):
            handled.append(item)
            raise ValueError(f"bad item {item}")

        pool = WorkerPool(num_workers=2, queue_size=5)
        errors = pool.run(iter(range(50)), handler)

        assert len(handled) == 50
        assert 1 <= len(errors) <= 2
        assert all(isinstance(e, ValueError) for e in errors)

    def test_producer_error_is_reported(self):
        def producer():
            yield 1
            raise RuntimeError("listing failed")

        pool = WorkerPool(num_workers=2)
        errors = pool.run(producer(), lambda item: None)

        assert any(isinstance(e, RuntimeError) for e in errors)

    def test_cancellation_stops_pool(self):
        scope = CancellationScope(timeout=0.3)
        handled = []

        def handler(item):
            handled.append(item)
            time.sleep(0.01)

        pool = WorkerPool(num_workers=2, queue_size=4, scope=scope)
        started = time.monotonic()
        pool.run(itertools.count(), handler)

        assert time.monotonic() - started < 3
        assert handled

    def test_on_tick_runs_on_calling_thread(self):
        tick_threads = set()

        def on_tick():
            tick_threads.add(threading.get_ident())

        pool = WorkerPool(num_workers=2)
        pool.run(iter(range(20)), lambda item: time.sleep(0.01), on_tick=on_tick, tick_interval=0.05)

        assert tick_threads == {threading.get_ident()}
