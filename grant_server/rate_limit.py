"""
Rate limiting. In-memory sliding window per key (e.g. per IP), one limiter per application.
Used for the login-bearing endpoints and POST /token to mitigate brute force and abuse.
"""
import math
import threading
import time
from typing import Callable

from fastapi import HTTPException, Request

_WINDOW_SECONDS = 60


class SlidingWindowLimiter:
    def __init__(self, window_seconds: float = _WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._window = window_seconds
        self._clock = clock
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def check_and_consume(self, key: str, limit: int) -> tuple[bool, int | None]:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        Returns (allowed, retry_after_seconds). When not allowed, retry_after_seconds is the
        suggested Retry-After value (>= 1). A limit <= 0 disables limiting.
        """
        if limit <= 0:
            return True, None
        now = self._clock()
        with self._lock:
            timestamps = self._store.setdefault(key, [])
            cutoff = now - self._window
            timestamps[:] = [t for t in timestamps if t > cutoff]
            if len(timestamps) >= limit:
                oldest = timestamps[0]
                retry_after = max(1, math.ceil(self._window - (now - oldest)))
                return False, retry_after
            timestamps.append(now)
            return True, None

    def reset(self) -> None:
        with self._lock:
            self._store.clear()


def enforce(request: Request, bucket: str, limit: int, ip: str | None) -> None:
    """Raise 429 with Retry-After once the caller's IP exceeds limit requests per window in bucket."""
    limiter: SlidingWindowLimiter = request.app.state.limiter
    allowed, retry_after = limiter.check_and_consume(f"{bucket}:{ip or 'unknown'}", limit)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": "too_many_requests", "error_description": "Rate limit exceeded"},
            headers={"Retry-After": str(retry_after)},
        )
