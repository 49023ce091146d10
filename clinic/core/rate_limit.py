from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from time import monotonic, time
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger("clinic.rate_limit")


class RateLimiter:
    """Fixed window rate limiter interface.

    ``hit`` registers one request for ``key`` and returns
    ``(allowed, retry_after_seconds)``. Rejected hits do not count towards
    the window.
    """

    def __init__(self, limit: int, window_seconds: int = 60) -> None:
        self.limit = max(limit, 1)
        self.window_seconds = window_seconds

    def hit(self, key: str) -> Tuple[bool, int]:
        raise NotImplementedError


@dataclass
class _Window:
    count: int
    reset_at: float


class MemoryRateLimiter(RateLimiter):
    """In-process counters; only correct for a single server instance.

    Windows that have ended are swept at most once per window length, so
    the map only holds clients seen during the current window.
    """

    def __init__(self, limit: int, window_seconds: int = 60, clock: Callable[[], float] = monotonic) -> None:
        super().__init__(limit, window_seconds)
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._next_sweep = clock() + window_seconds
        self._lock = threading.Lock()

    @property
    def tracked_clients(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)

            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = self._windows[key] = _Window(0, now + self.window_seconds)

            remaining = max(0, int(window.reset_at - now))
            if window.count >= self.limit:
                return False, remaining or 1
            window.count += 1
            return True, remaining

    def _sweep(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self.window_seconds
        if expired:
            logger.debug("event=rate_limit_sweep removed=%d tracked=%d", len(expired), len(self._windows))


class RedisRateLimiter(RateLimiter):
    """Counters shared through Redis so several instances see the same window."""

    def __init__(self, client, limit: int, window_seconds: int = 60, prefix: str = "demo_rate_limit") -> None:
        super().__init__(limit, window_seconds)
        self._redis_client = client
        self._prefix = prefix
        self._fallback = MemoryRateLimiter(limit, window_seconds)

    def hit(self, key: str) -> Tuple[bool, int]:
        import redis

        now = time()
        window_end = now + self.window_seconds
        redis_key = f"{self._prefix}:{key}"

        try:
            pipe = self._redis_client.pipeline()
            pipe.get(f"{redis_key}:count")
            pipe.get(f"{redis_key}:reset")
            results = pipe.execute()

            current_count_str, reset_time_str = results[0], results[1]
            if current_count_str is None:
                current_count = 0
                reset_time = window_end
            else:
                current_count = int(current_count_str)
                reset_time = float(reset_time_str) if reset_time_str else window_end
                if now > reset_time:
                    current_count = 0
                    reset_time = window_end

            if current_count >= self.limit:
                retry_after = max(0, int(reset_time - now))
                return False, retry_after or 1

            ttl = max(1, int(reset_time - now) + 1)
            pipe = self._redis_client.pipeline()
            pipe.setex(f"{redis_key}:count", ttl, str(current_count + 1))
            pipe.setex(f"{redis_key}:reset", ttl, str(reset_time))
            pipe.execute()

            return True, max(0, int(reset_time - now))
        except redis.RedisError as exc:
            logger.warning("event=rate_limit_redis_error error=%s", exc)
            return self._fallback.hit(key)


def build_rate_limiter(limit: int, window_seconds: int = 60, redis_url: Optional[str] = None) -> RateLimiter:
    """Use Redis when it is configured and answers a ping, memory otherwise."""
    if redis_url:
        try:
            import redis

            client = redis.from_url(redis_url)
            client.ping()
            return RedisRateLimiter(client, limit, window_seconds)
        except Exception as exc:
            logger.warning("event=rate_limit_redis_unavailable error=%s", exc)
    return MemoryRateLimiter(limit, window_seconds)
