"""
Per-reconcile context: identity, cancellation and deadline.
"""

import threading
import time
from typing import Optional

from vm_operator.errors import ReconcileCancelled


class ReconcileContext:
    """
    Carried through one reconcile invocation.

    ``check()`` is called before every remote call; it raises
    ReconcileCancelled once the cancel event is set or the deadline has
    passed. ``call_timeout()`` bounds a single remote call by whatever is
    left of the reconcile deadline.
    """

    def __init__(self, key, cancel_event: Optional[threading.Event] = None,
                 timeout: Optional[float] = None, call_timeout: float = 300):
        self.key = key
        self.cancel_event = cancel_event or threading.Event()
        self.deadline = time.monotonic() + timeout if timeout else None
        self._call_timeout = call_timeout

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check(self):
        if self.cancel_event.is_set():
            raise ReconcileCancelled(f"reconcile of {self.key[0]}/{self.key[1]} cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise ReconcileCancelled(f"reconcile of {self.key[0]}/{self.key[1]} exceeded its deadline")

    def call_timeout(self) -> float:
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return self._call_timeout
        return max(min(self._call_timeout, remaining), 1)
