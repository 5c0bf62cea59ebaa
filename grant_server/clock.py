"""
Clock source for the ledgers. Wall-clock seconds since the epoch, never running backwards.
"""
import threading
import time
from typing import Callable


class MonotonicClock:
    """
    Wrap a wall-clock source so readings never decrease.
    Expiry is latched: once a reading has passed a credential's expires_at, a later clock rollback
    cannot make it valid again.
    """

    def __init__(self, source: Callable[[], float] = time.time) -> None:
        self._source = source
        self._last = float("-inf")
        self._lock = threading.Lock()

    def __call__(self) -> float:
        now = self._source()
        with self._lock:
            if now > self._last:
                self._last = now
            return self._last


def as_clock(clock: Callable[[], float] | None) -> MonotonicClock:
    """Accept a plain callable (tests pass fakes) or an existing MonotonicClock."""
    if isinstance(clock, MonotonicClock):
        return clock
    return MonotonicClock(clock or time.time)
