"""
Fixed-window request counters.

Supports an in-memory counter for single-process runs and tests and a
Redis-backed counter shared by every instance behind the load balancer.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int


class RateLimiter(Protocol):
    """Counts hits per key inside the current window."""

    def hit(self, key: str) -> RateLimitResult:
        ...


def _window(now: float, window_seconds: int) -> tuple[int, int]:
    index = int(now // window_seconds)
    reset_after = int((index + 1) * window_seconds - now) or 1
    return index, reset_after


@dataclass
class InMemoryRateLimiter:
    max_requests: int
    window_seconds: int
    clock: Callable[[], float] = time.time
    counters: dict = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitResult:
        index, reset_after = _window(self.clock(), self.window_seconds)
        with self._lock:
            window_index, count = self.counters.get(key, (index, 0))
            if window_index != index:
                count = 0
            count += 1
            self.counters[key] = (index, count)
            # Drop counters from past windows so the dict stays bounded.
            if len(self.counters) > 10_000:
                self.counters = {
                    k: v for k, v in self.counters.items() if v[0] == index
                }
        return RateLimitResult(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_after=reset_after,
        )


@dataclass
class RedisRateLimiter:
    """Redis-backed counter using INCR + EXPIRE per window."""

    url: str
    max_requests: int
    window_seconds: int
    key_prefix: str = "learnhub:ratelimit"
    clock: Callable[[], float] = time.time

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def hit(self, key: str) -> RateLimitResult:
        index, reset_after = _window(self.clock(), self.window_seconds)
        redis_key = f"{self.key_prefix}:{key}:{index}"
        try:
            pipe = self.client.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, self.window_seconds)
            count, _ = pipe.execute()
        except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError):
            # Managed Redis drops idle connections and sometimes stalls; let the
            # request through and reconnect on the next hit.
            logger.warning("Rate limiter lost its Redis connection")
            self.client = redis.Redis.from_url(self.url)
            return RateLimitResult(True, self.max_requests, self.max_requests, reset_after)
        return RateLimitResult(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_after=reset_after,
        )
