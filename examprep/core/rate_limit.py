"""
Fixed-window request counters.

One counter per (scope, identifier, window). Redis backs it in deployments,
a locked dictionary in tests and single-process runs.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Tuple
import logging
import threading
import time

import redis

from examprep.core.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: int


class RateLimitBackend(ABC):
    @abstractmethod
    def incr(self, key: str, window: int) -> Tuple[int, int]:
        """Increment the counter for key, returning (count, seconds until reset)."""


class RedisRateLimitBackend(RateLimitBackend):

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: int = 5) -> "RedisRateLimitBackend":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=socket_timeout))

    def incr(self, key: str, window: int) -> Tuple[int, int]:
        pipe = self.client.pipeline()
        pipe.incr(key, 1)
        pipe.ttl(key)
        count, ttl = pipe.execute()
        if ttl is None or ttl < 0:
            # first hit in the window, or a key left without expiry
            self.client.expire(key, window)
            ttl = window
        return int(count), int(ttl)


class MemoryRateLimitBackend(RateLimitBackend):

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[int, float]] = {}

    def incr(self, key: str, window: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window
            count += 1
            self._windows[key] = (count, reset_at)
            # drop expired windows so the map stays bounded by active callers
            if len(self._windows) > 10000:
                self._windows = {k: v for k, v in self._windows.items() if v[1] > now}
        return count, max(int(reset_at - now), 0)


class RateLimiter:
    """Named limits over a counter backend."""

    def __init__(self, backend: RateLimitBackend, limits: Dict[str, int], window: int = 60, enabled: bool = True):
        self.backend = backend
        self.limits = dict(limits)
        self.window = window
        self.enabled = enabled

    def hit(self, scope: str, identifier: str) -> RateLimitResult:
        limit = self.limits[scope]
        if not self.enabled:
            return RateLimitResult(allowed=True, remaining=limit, reset_in=self.window)
        count, reset_in = self.backend.incr(f"rl:{scope}:{identifier}", self.window)
        return RateLimitResult(allowed=count <= limit, remaining=max(limit - count, 0), reset_in=reset_in)

    def check(self, scope: str, identifier: str) -> RateLimitResult:
        """Count one request, raising RateLimited once the window is used up."""
        result = self.hit(scope, identifier)
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for {scope}:{identifier}")
            raise RateLimited(remaining=result.remaining, reset_in=result.reset_in)
        return result
