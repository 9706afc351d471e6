from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse


class SlidingWindowLimiter:
    """At most ``capacity`` hits per key within any ``window_seconds`` span.

    Keys with no hit inside the window are dropped once more than ``max_keys``
    are tracked.
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = 10_000,
    ) -> None:
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def _expire(self, hits: deque[float], now: float) -> None:
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()

    def _evict_idle(self, now: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            self._expire(hits, now)
            if not hits:
                del self._hits[key]

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                if len(self._hits) >= self.max_keys:
                    self._evict_idle(now)
                hits = self._hits[key] = deque()
            self._expire(hits, now)
            if len(hits) >= self.capacity:
                return False
            hits.append(now)
            return True

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` may be allowed again, 0 if it may be now."""
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if not hits or len(hits) < self.capacity:
                return 0.0
            return max(0.0, hits[0] + self.window_seconds - now)

    def __len__(self) -> int:
        return len(self._hits)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-identity request budget for API routes."""

    def __init__(self, app, capacity: int = 300, window_seconds: int = 60) -> None:
        super().__init__(app)
        self.limiter = SlidingWindowLimiter(capacity, window_seconds)

    async def dispatch(self, request: Request, call_next):
        identity = getattr(request.state, "identity", None)
        if identity:
            key = identity.user_id
        else:
            key = request.client.host if request.client else "unknown"
        if not self.limiter.allow(key):
            retry_after = max(1, math.ceil(self.limiter.retry_after(key)))
            return JSONResponse(
                status_code=429,
                content={"detail": "rate limit exceeded"},
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)


class PollIntervalGuard:
    """Enforces a minimum spacing between status polls of the same request.

    A poll that arrives too soon is answered with ``slow_down`` instead of a
    status, so a client that ignores the interval backs off. Entries older than
    the interval carry no information and are pruned once more than
    ``max_keys`` requests are tracked.
    """

    def __init__(
        self,
        min_interval: float,
        monotonic: Callable[[], float] = time.monotonic,
        max_keys: int = 10_000,
    ) -> None:
        self.min_interval = min_interval
        self.max_keys = max_keys
        self._monotonic = monotonic
        self._last_seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        if self.min_interval <= 0:
            return True
        now = self._monotonic()
        with self._lock:
            last = self._last_seen.get(key)
            if last is not None and now - last < self.min_interval:
                return False
            self._last_seen[key] = now
            if len(self._last_seen) > self.max_keys:
                self._prune(now)
            return True

    def _prune(self, now: float) -> None:
        stale = [k for k, seen in self._last_seen.items() if now - seen >= self.min_interval]
        for key in stale:
            del self._last_seen[key]

    def __len__(self) -> int:
        return len(self._last_seen)

    def forget(self, key: str) -> None:
        with self._lock:
            self._last_seen.pop(key, None)
