"""Tests for the kubevolumecleaner.workqueue module."""

from __future__ import annotations

import threading
import time

from kubevolumecleaner.workqueue import ExponentialBackoff, WorkQueue


def test_add_deduplicates_queued_keys() -> None:
    queue = WorkQueue("test")
    queue.add("ns/a")
    queue.add("ns/b")
    queue.add("ns/a")
    assert len(queue) == 2

    assert queue.get() == ("ns/a", False)
    assert queue.get() == ("ns/b", False)
    assert len(queue) == 0


def test_key_added_while_processing_is_requeued_once() -> None:
    queue = WorkQueue("test")
    queue.add("ns/a")
    key, _ = queue.get()

    queue.add("ns/a")
    queue.add("ns/a")
    # Not handed out again while it is being processed.
    assert len(queue) == 0
    assert queue.get(timeout=0) == (None, False)

    queue.done(key)
    assert len(queue) == 1
    assert queue.get() == ("ns/a", False)
    queue.done("ns/a")
    assert len(queue) == 0


def test_done_without_readd_does_not_requeue() -> None:
    queue = WorkQueue("test")
    queue.add("ns/a")
    key, _ = queue.get()
    queue.done(key)
    assert len(queue) == 0

    queue.add("ns/a")
    assert len(queue) == 1


def test_shutdown_unblocks_waiting_get() -> None:
    queue = WorkQueue("test")
    results = []

    def worker() -> None:
        results.append(queue.get())

    thread = threading.Thread(target=worker)
    thread.start()
    time.sleep(0.05)
    queue.shutdown()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert results == [(None, True)]
    assert queue.get(timeout=0) == (None, True)


def test_shutdown_drains_queued_keys_then_reports_shutdown() -> None:
    queue = WorkQueue("test")
    queue.add("ns/a")
    queue.shutdown()
    queue.add("ns/b")

    assert queue.get() == ("ns/a", False)
    assert queue.get() == (None, True)


def test_concurrent_workers_never_share_a_key() -> None:
    queue = WorkQueue("test")
    in_flight: set[str] = set()
    overlaps = []
    processed = []
    lock = threading.Lock()

    def worker() -> None:
        while True:
            key, shutdown = queue.get()
            if shutdown:
                return
            with lock:
                if key in in_flight:
                    overlaps.append(key)
                in_flight.add(key)
            time.sleep(0.001)
            with lock:
                in_flight.discard(key)
                processed.append(key)
            queue.done(key)

    workers = [threading.Thread(target=worker) for _ in range(4)]
    for thread in workers:
        thread.start()
    for i in range(200):
        queue.add(f"ns/{i % 5}")
    time.sleep(0.2)
    queue.shutdown()
    for thread in workers:
        thread.join(timeout=5)

    assert overlaps == []
    assert set(processed) == {f"ns/{i}" for i in range(5)}


def test_add_after() -> None:
    queue = WorkQueue("test")
    queue.add_after("ns/a", 0.05)
    assert len(queue) == 0
    key, shutdown = queue.get(timeout=5)
    assert (key, shutdown) == ("ns/a", False)

    queue.add_after("ns/b", 0)
    assert len(queue) == 1


def test_add_after_is_cancelled_by_shutdown() -> None:
    queue = WorkQueue("test")
    queue.add_after("ns/a", 0.05)
    queue.shutdown()
    time.sleep(0.1)
    assert len(queue) == 0


def test_add_rate_limited_and_forget() -> None:
    queue = WorkQueue("test", ExponentialBackoff(base_delay=0, max_delay=1))
    queue.add_rate_limited("ns/a")
    queue.add_rate_limited("ns/a")
    assert queue.num_requeues("ns/a") == 2
    assert len(queue) == 1

    queue.forget("ns/a")
    assert queue.num_requeues("ns/a") == 0


def test_exponential_backoff() -> None:
    backoff = ExponentialBackoff(base_delay=0.5, max_delay=3)
    assert [backoff.when("a") for _ in range(5)] == [0.5, 1, 2, 3, 3]
    assert backoff.when("b") == 0.5
    assert backoff.num_requeues("a") == 5

    backoff.forget("a")
    assert backoff.when("a") == 0.5


def test_exponential_backoff_does_not_overflow() -> None:
    backoff = ExponentialBackoff(base_delay=1, max_delay=60)
    for _ in range(2000):
        delay = backoff.when("a")
    assert delay == 60
