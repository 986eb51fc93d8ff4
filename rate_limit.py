"""Fixed-window request counting for sensitive endpoints.

One ``FixedWindowRateLimiter`` is built per policy at process start and kept
on ``app.state``; routes reach it through ``rate_limited(<state attribute>)``.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from fastapi import Request, Response

from exceptions import RateLimitExceededError


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int


class FixedWindowRateLimiter:
    def __init__(self, max_requests: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}  # key -> (count, resets_at)
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    def hit(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and report whether it may proceed."""
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)

            count, resets_at = self._windows.get(key, (0, 0.0))
            if resets_at <= now:
                count, resets_at = 0, now + self.window_seconds
            retry_after = max(1, math.ceil(resets_at - now))

            if count >= self.max_requests:
                return RateLimitResult(False, self.max_requests, 0, retry_after)

            count += 1
            self._windows[key] = (count, resets_at)
            return RateLimitResult(True, self.max_requests, self.max_requests - count, retry_after)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def sweep(self) -> int:
        """Evict expired windows. Returns the number evicted."""
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        expired = [key for key, (_, resets_at) in self._windows.items() if resets_at <= now]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self.window_seconds
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real = request.headers.get("x-real-ip")
    if real:
        return real
    if request.client:
        return request.client.host
    return "unknown"


def rate_limited(limiter_name: str):
    """Dependency factory applying the limiter stored at ``app.state.<limiter_name>``."""

    def dependency(request: Request, response: Response) -> None:
        limiter: FixedWindowRateLimiter = getattr(request.app.state, limiter_name)
        result = limiter.hit(f"{client_address(request)}:{request.url.path}")
        if not result.allowed:
            raise RateLimitExceededError(result.retry_after)
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)

    return dependency
