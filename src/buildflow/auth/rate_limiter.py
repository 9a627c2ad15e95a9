"""In-memory sliding window rate limiter."""

import time
from collections import defaultdict
from dataclasses import dataclass
from threading import Lock


@dataclass(frozen=True)
class RateLimitPolicy:
    """Allow ``limit`` requests per ``window_seconds`` per key."""

    name: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int

    def headers(self) -> dict[str, str]:
        """``RateLimit-*`` response headers; ``Retry-After`` when denied."""
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_after),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset_after)
        return headers


class InMemoryRateLimiter:
    """Sliding window rate limiter.

    Thread-safe via Lock. Single-process only; every worker process keeps
    its own counts.
    """

    def __init__(self, policy: RateLimitPolicy) -> None:
        self.policy = policy
        self._window = policy.window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def check(self, key: str) -> RateLimitDecision:
        """Record a request for ``key`` if it fits the window.

        Args:
            key: Rate limit key, e.g. the client IP.

        Returns:
            The decision with the counts for rate limit headers.
        """
        limit = self.policy.limit
        now = time.monotonic()
        cutoff = now - self._window

        with self._lock:
            timestamps = [t for t in self._requests[key] if t > cutoff]
            self._requests[key] = timestamps

            if len(timestamps) >= limit:
                retry_after = max(int(timestamps[0] - cutoff) + 1, 1)
                return RateLimitDecision(False, limit, 0, retry_after)

            timestamps.append(now)
            reset_after = max(int(timestamps[0] - cutoff) + 1, 1)
            return RateLimitDecision(True, limit, limit - len(timestamps), reset_after)

    def peek(self, key: str) -> RateLimitDecision:
        """Decision ``check`` would make, without recording a request."""
        limit = self.policy.limit
        cutoff = time.monotonic() - self._window

        with self._lock:
            live = [t for t in self._requests.get(key, ()) if t > cutoff]

        if not live:
            return RateLimitDecision(True, limit, limit, self._window)
        reset_after = max(int(live[0] - cutoff) + 1, 1)
        remaining = max(limit - len(live), 0)
        return RateLimitDecision(remaining > 0, limit, remaining, reset_after)

    def cleanup(self) -> int:
        """Remove all expired entries. Call periodically.

        Returns:
            Number of keys cleaned up.
        """
        now = time.monotonic()
        cutoff = now - self._window
        cleaned = 0

        with self._lock:
            empty_keys = []
            for key, timestamps in self._requests.items():
                self._requests[key] = [t for t in timestamps if t > cutoff]
                if not self._requests[key]:
                    empty_keys.append(key)
            for key in empty_keys:
                del self._requests[key]
                cleaned += 1

        return cleaned
