"""Deadline queue driving delivery dispatch and retry timers without busy polling."""

import heapq
import itertools
import threading
import time
from typing import Any


class DeadlineQueue:
    """
    Min-heap of (deadline, entry) guarded by a condition variable.

    Entries are never removed early; consumers drop stale entries when
    they pop them.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._heap: list[tuple[float, int, Any]] = []
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._closed = False

    def push(self, deadline: float, entry: Any) -> None:
        with self._cond:
            heapq.heappush(self._heap, (deadline, next(self._counter), entry))
            self._cond.notify()

    def pop_due(self, now: float | None = None) -> list[Any]:
        """Remove and return every entry whose deadline has passed, earliest first."""
        now = self._clock() if now is None else now
        due = []
        with self._cond:
            while self._heap and self._heap[0][0] <= now:
                due.append(heapq.heappop(self._heap)[2])
        return due

    def next_deadline(self) -> float | None:
        with self._cond:
            return self._heap[0][0] if self._heap else None

    def wait_next(self, timeout: float | None = None) -> Any | None:
        """
        Block until the earliest entry is due and return it.

        Returns None on timeout or when the queue is closed.
        """
        end = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._closed:
                now = self._clock()
                if self._heap and self._heap[0][0] <= now:
                    return heapq.heappop(self._heap)[2]

                wait = self._heap[0][0] - now if self._heap else None
                if end is not None:
                    remaining = end - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)
        return None

    def close(self) -> None:
        """Wake all waiters; subsequent wait_next calls return None."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        """Accept waiters again after close(). Queued entries are kept."""
        with self._cond:
            self._closed = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)
