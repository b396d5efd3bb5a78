"""Threaded retry scheduler for integration events."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock, Timer
from typing import Hashable

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Run callables after a delay on a :class:`ThreadPoolExecutor`.

    Each key has at most one pending timer; scheduling a key again replaces
    the earlier timer. Nothing is persisted here: the event rows carry the
    retry state, so a restarted process can re-drive them.
    """

    Job = Callable[[], object]

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="integration")
        self._timers: dict[Hashable, Timer] = {}
        self._futures: dict[Hashable, Future] = {}
        self._lock = Lock()
        self._closed = False

    def schedule(self, key: Hashable, delay_seconds: float, fn: Job) -> None:
        """Run ``fn`` after ``delay_seconds``, replacing any pending run for ``key``."""

        with self._lock:
            if self._closed:
                logger.warning("Scheduler is shut down; dropping job %s", key)
                return
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            timer = Timer(max(delay_seconds, 0.0), self._submit, args=(key, fn))
            timer.daemon = True
            self._timers[key] = timer
        timer.start()

    def _submit(self, key: Hashable, fn: Job) -> None:
        with self._lock:
            self._timers.pop(key, None)
            if self._closed:
                return
            future = self.executor.submit(self._run, key, fn)
            self._futures[key] = future
        future.add_done_callback(lambda done: self._forget(key, done))

    def _run(self, key: Hashable, fn: Job) -> None:
        try:
            fn()
        except Exception:
            logger.exception("Scheduled job %s failed", key)

    def _forget(self, key: Hashable, future: Future) -> None:
        # A job rescheduled while this one ran owns the key now.
        with self._lock:
            if self._futures.get(key) is future:
                del self._futures[key]

    def cancel(self, key: Hashable) -> None:
        with self._lock:
            timer = self._timers.pop(key, None)
            future = self._futures.get(key)
        if timer is not None:
            timer.cancel()
        if future is not None:
            future.cancel()

    def pending(self) -> Iterable[Hashable]:
        with self._lock:
            return list(self._timers)

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self.executor.shutdown(wait=wait, cancel_futures=True)


__all__ = ["RetryScheduler"]
