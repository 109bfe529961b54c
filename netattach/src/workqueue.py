from __future__ import annotations

import logging
import threading
from collections import deque

from netattach.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ExponentialBackoffRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one failure for the item until
    :meth:`forget` resets it.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        # Cap the exponent before computing so huge failure counts cannot overflow.
        if failures >= 64:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**failures))

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue:
    """Deduplicating work queue of ``namespace/name`` keys.

    An item is held at most once while waiting.  An item added again while a
    worker is processing it is parked in ``_dirty`` and re-queued when the
    worker calls :meth:`done`, so no key is ever processed by two workers at
    the same time.

    After :meth:`shut_down` new items are refused, but items already queued
    are still handed out; :meth:`get` reports shutdown once the queue is empty.
    """

    def __init__(
        self,
        rate_limiter: ExponentialBackoffRateLimiter | None = None,
        name: str = "secondary_endpoints",
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ExponentialBackoffRateLimiter()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False
        self._cond = threading.Condition()
        self._timers: set[threading.Timer] = set()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, item: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            METRICS.queue_depth.set(len(self._queue))
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[str | None, bool]:
        """Block until an item is available.

        Returns ``(item, False)``, ``(None, True)`` once shut down and drained,
        or ``(None, False)`` when *timeout* expires first.
        """
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._queue or self._shutting_down, timeout=timeout
            ):
                return None, False
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            METRICS.queue_depth.set(len(self._queue))
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: str) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def add_after(self, item: str, delay: float) -> None:
        """Add *item* once *delay* seconds have elapsed."""
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return

            def _fire() -> None:
                with self._cond:
                    self._timers.discard(timer)
                self.add(item)

            timer = threading.Timer(delay, _fire)
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def add_rate_limited(self, item: str) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: str) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()
        LOGGER.info("Work queue %s shut down", self.name)
