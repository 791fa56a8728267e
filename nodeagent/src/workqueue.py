from __future__ import annotations

import heapq
import threading
import time
from collections.abc import Callable


class RateLimitedQueue:
    """Deduplicating work queue of string keys with per-key retry backoff.

    A key is held at most once while waiting and is never handed to two
    workers at the same time: re-adding a key that is being processed marks it
    dirty so it is queued again after :meth:`done`.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, str]] = []
        self._queued: dict[str, float] = {}
        self._processing: set[str] = set()
        self._dirty: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self._counter = 0
        self._shutting_down = False

    def _push(self, key: str, due_at: float) -> None:
        existing = self._queued.get(key)
        if existing is not None and existing <= due_at:
            return
        self._queued[key] = due_at
        self._counter += 1
        heapq.heappush(self._heap, (due_at, self._counter, key))
        self._cond.notify()

    def add(self, key: str, delay: float = 0.0) -> None:
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay
            if key in self._processing:
                self._dirty[key] = min(due_at, self._dirty.get(key, due_at))
                return
            self._push(key, due_at)

    def add_rate_limited(self, key: str) -> float:
        """Requeue *key* after an exponential backoff; returns the delay used."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.max_delay, self.base_delay * (2**failures))
        self.add(key, delay=delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self) -> str | None:
        """Block until a key is due; return ``None`` once the queue is shut down."""
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                while self._heap and self._queued.get(self._heap[0][2]) != self._heap[0][0]:
                    heapq.heappop(self._heap)
                if self._heap:
                    due_at, _, key = self._heap[0]
                    wait = due_at - self._clock()
                    if wait <= 0:
                        heapq.heappop(self._heap)
                        del self._queued[key]
                        self._processing.add(key)
                        return key
                    self._cond.wait(timeout=wait)
                else:
                    self._cond.wait()

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            due_at = self._dirty.pop(key, None)
            if due_at is not None and not self._shutting_down:
                self._push(key, due_at)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queued)
