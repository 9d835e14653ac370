"""Deduplicating work queue for resource keys."""

from __future__ import annotations

__all__ = ("ExponentialBackoff", "WorkQueue")

import threading
from collections import deque
from collections.abc import Hashable

import structlog


class ExponentialBackoff:
    """Per-key exponential backoff.

    The delay for a key doubles with every failure, starting at
    ``base_delay`` and capped at ``max_delay``.

    Parameters
    ----------
    base_delay : `float`
        Delay in seconds after the first failure.
    max_delay : `float`
        Upper bound of the delay in seconds.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 300.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        """Record a failure of ``key`` and return the delay before its
        next attempt.
        """
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # Avoid float overflow for keys that keep failing.
        if failures > 62:
            return self.max_delay
        return min(self.base_delay * 2**failures, self.max_delay)

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class WorkQueue:
    """A queue of keys with at-least-once delivery and coalescing.

    A key is held by at most one worker at a time. Adding a key that is
    already queued is a no-op; adding a key that is being processed marks it
    dirty, and it is queued once more when the worker calls `done`.

    Parameters
    ----------
    name : `str`
        Name of the queue, used in log messages.
    backoff : `ExponentialBackoff`, optional
        Backoff used by `add_rate_limited`.
    """

    def __init__(
        self, name: str, backoff: ExponentialBackoff | None = None
    ) -> None:
        self.name = name
        self.backoff = backoff or ExponentialBackoff()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False
        self._cond = threading.Condition()
        self._logger = structlog.get_logger(__name__).bind(queue=name)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, key: Hashable) -> None:
        """Schedule a key for processing."""
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Wait for the next key.

        Parameters
        ----------
        timeout : `float`, optional
            Seconds to wait for a key. Waits forever by default.

        Returns
        -------
        key
            The key to process, or `None` if the queue shut down or the
            timeout expired.
        shutdown : `bool`
            `True` if the queue has shut down and is drained.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._queue or self._shutting_down, timeout=timeout
            )
            if not self._queue:
                return None, self._shutting_down
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key, False

    def done(self, key: Hashable) -> None:
        """Mark a key returned by `get` as processed."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Add a key once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            timer = threading.Timer(delay, self._fire, args=(key,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _fire(self, key: Hashable) -> None:
        with self._cond:
            self._timers.discard(threading.current_thread())
        self.add(key)

    def add_rate_limited(self, key: Hashable) -> None:
        """Add a key after its backoff delay."""
        delay = self.backoff.when(key)
        self._logger.debug("Requeueing with backoff", key=key, delay=delay)
        self.add_after(key, delay)

    def forget(self, key: Hashable) -> None:
        """Reset the backoff of a key."""
        self.backoff.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.backoff.num_requeues(key)

    def shutdown(self) -> None:
        """Stop accepting keys and wake up every waiting worker."""
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()
