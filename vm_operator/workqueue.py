"""
Rate limited work queue
=======================

Hands out reconcile keys to worker threads with:
- Per-key serialization (a key is never processing on two workers)
- De-duplication (a key queued twice is reconciled once)
- Per-key exponential backoff with jitter for failed keys
- Delayed re-adds for periodic resync
"""

import heapq
import random
import threading
import time
from collections import defaultdict, deque
from typing import Dict, Hashable, Optional


class WorkQueue:
    """
    Queue of keys with at most one in-flight reconcile per key.

    A key added while it is being processed is marked dirty and handed
    out again after ``done()`` is called for it.
    """

    def __init__(self, backoff_base: float = 1.0, backoff_max: float = 300.0):
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._failures: Dict[Hashable, int] = defaultdict(int)
        self._delayed = []  # heap of (ready_at, seq, key)
        self._seq = 0
        self._shutting_down = False

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def add(self, key: Hashable):
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key not in self._processing:
                self._queue.append(key)
                self._cond.notify()

    def add_after(self, key: Hashable, delay: float):
        """Add key once ``delay`` seconds have elapsed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            self._seq += 1
            heapq.heappush(self._delayed, (time.monotonic() + delay, self._seq, key))
            self._cond.notify()

    def backoff(self, attempt: int) -> float:
        """Exponential backoff with jitter, capped at backoff_max."""
        base_delay = min(self.backoff_base * (2 ** attempt), self.backoff_max)
        jitter = random.uniform(0, 0.1 * base_delay)
        return min(base_delay + jitter, self.backoff_max)

    def add_rate_limited(self, key: Hashable) -> float:
        """Requeue a failed key with per-key backoff; returns the delay used."""
        with self._cond:
            attempt = self._failures[key]
            self._failures[key] += 1
        delay = self.backoff(attempt)
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable):
        """Reset the backoff counter of a key."""
        with self._cond:
            self._failures.pop(key, None)

    def _promote_delayed(self) -> Optional[float]:
        """Move ready delayed keys into the queue; returns seconds until the next one."""
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            if key in self._dirty:
                continue
            self._dirty.add(key)
            if key not in self._processing:
                self._queue.append(key)
        if self._delayed:
            return max(self._delayed[0][0] - now, 0.0)
        return None

    def get(self, timeout: Optional[float] = None):
        """
        Block until a key is available.

        Returns (key, shutdown). ``key`` is None on timeout or shutdown.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_delayed = self._promote_delayed()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key, False
                if self._shutting_down:
                    return None, True

                wait = next_delayed
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None, False
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable):
        """Mark processing of key finished, re-queueing it if it went dirty meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def is_processing(self, key: Hashable) -> bool:
        with self._cond:
            return key in self._processing

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
