"""
api/limiter.py -- Keyed sliding-window limiter for authentication attempts.

One AttemptLimiter instance is created in the app lifespan and stored on
app.state.attempt_limiter, so every route shares the same counters. Counters
live in process memory and are dropped on exit; a multi-instance deployment
gets one independent limiter per process.

Counting rule:
  check(key) runs before the auth service is called and raises
  RateLimitExceededError once `max_attempts` failures fall inside the window.
  record_failure(key) runs only after the service raised an authentication
  error. Successful attempts are never recorded, and requests rejected by
  schema validation never reach the limiter.

  Two in-flight attempts for the same key can both pass check() before either
  failure is recorded, so a burst can overshoot the limit by the number of
  concurrent requests.

The clock is injected (seconds as a float) so tests can move time without
sleeping.
"""

from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from collections.abc import Callable
from threading import Lock

from fastapi import Request

from auth.errors import RateLimitExceededError

logger = logging.getLogger("plantcare.api.limiter")


class AttemptLimiter:
    """Thread-safe in-memory sliding-window counter keyed by email or IP.

    FastAPI runs sync route handlers in a thread pool, so every access to the
    counter map happens under one lock.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def _prune(self, key: str, now: float) -> deque[float]:
        """Drop timestamps that have left the window. Caller holds the lock."""
        stamps = self._failures[key]
        cutoff = now - self.window_seconds
        while stamps and stamps[0] <= cutoff:
            stamps.popleft()
        return stamps

    def check(self, key: str) -> None:
        """Raise RateLimitExceededError if `key` has used up its window."""
        with self._lock:
            now = self._clock()
            stamps = self._prune(key, now)
            if len(stamps) < self.max_attempts:
                return
            retry_after = max(1, math.ceil(stamps[0] + self.window_seconds - now))
        logger.warning("Auth attempt limit hit for key %s (retry in %ds)", _mask(key), retry_after)
        raise RateLimitExceededError(retry_after=retry_after)

    def record_failure(self, key: str) -> None:
        with self._lock:
            now = self._clock()
            self._prune(key, now).append(now)

    def remaining(self, key: str) -> int:
        """Return how many failures `key` may still record in the current window."""
        with self._lock:
            stamps = self._prune(key, self._clock())
            return max(0, self.max_attempts - len(stamps))

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def purge(self) -> int:
        """Drop keys with no failures left in the window. Returns the number of keys removed."""
        with self._lock:
            now = self._clock()
            empty = [key for key in list(self._failures) if not self._prune(key, now)]
            for key in empty:
                del self._failures[key]
        return len(empty)


def get_client_ip(request: Request) -> str:
    """Extract the client IP, preferring the first X-Forwarded-For hop set by a reverse proxy."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def attempt_key(request: Request, email: str | None) -> str:
    """Key an attempt by email when the request carries one, otherwise by source IP."""
    if email:
        return f"email:{email.strip().lower()}"
    return f"ip:{get_client_ip(request)}"


def _mask(key: str) -> str:
    kind, _, value = key.partition(":")
    return f"{kind}:{value[:3]}***"
