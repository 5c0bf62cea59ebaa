"""
Background purge of expired ledger entries. Expired entries are already inert (every ledger checks
expiry on access); sweeping only bounds memory.
"""
import logging
import threading
from collections.abc import Iterable
from typing import Protocol

logger = logging.getLogger(__name__)


class Sweepable(Protocol):
    def sweep(self, now: float | None = None) -> int: ...


class Sweeper:
    def __init__(self, ledgers: Iterable[Sweepable], interval: float) -> None:
        self._ledgers = list(ledgers)
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Sweep every ledger; returns the total number of entries removed."""
        removed = 0
        for ledger in self._ledgers:
            removed += ledger.sweep()
        if removed:
            logger.info("Sweeper removed %d expired entries", removed)
        return removed

    def start(self) -> None:
        """Start the daemon thread. No-op when the interval is 0 or the thread is already running."""
        if self._interval <= 0 or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="ledger-sweeper", daemon=True)
        self._thread.start()
        logger.debug("Sweeper started (interval=%ss)", self._interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                # Keep sweeping on the next tick; a failed sweep leaves entries inert, not live
                logger.exception("Sweep failed")
