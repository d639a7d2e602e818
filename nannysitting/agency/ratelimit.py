"""Fixed-window rate limiting over a pluggable key/value store with expiry."""

from __future__ import annotations

import logging
import math
import time
from threading import Lock
from typing import Callable, Protocol

import redis

from .errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    def increment(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        """Increment ``key`` and return ``(count, seconds until reset)``.

        The expiry is set when the key is created and is not extended by
        later increments.
        """


class MemoryStore:
    """Process-local store, for a single instance and for tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = Lock()

    def increment(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        now = self._clock()
        with self._lock:
            count, expires_at = self._entries.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._entries[key] = (count, expires_at)
            # drop anything else that has expired
            for stale in [k for k, (_, exp) in self._entries.items() if exp <= now]:
                del self._entries[stale]
        return count, max(int(math.ceil(expires_at - now)), 0)


class RedisStore:
    """Store shared by every server instance pointing at the same Redis."""

    def __init__(self, client: redis.Redis, prefix: str = "ratelimit:") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "ratelimit:") -> "RedisStore":
        client = redis.from_url(url, decode_responses=True, socket_connect_timeout=5)
        return cls(client, prefix=prefix)

    def increment(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        name = self.prefix + key
        count = int(self.client.incr(name))
        remaining = self.client.ttl(name)
        # -1 means the key exists without an expiry
        if count == 1 or remaining is None or remaining < 0:
            self.client.expire(name, ttl_seconds)
            remaining = ttl_seconds
        return count, int(remaining)


class RateLimiter:
    def __init__(self, store: CounterStore, *, limit: int = 5, window_seconds: int = 3600) -> None:
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    def hit(self, key: str) -> int:
        """Record one request for ``key`` and return how many remain.

        Raises ``RateLimitExceeded`` once the window's allowance is used up.
        """

        count, retry_after = self.store.increment(key, self.window_seconds)
        if count > self.limit:
            logger.warning("Rate limit exceeded for %s (%s requests)", key, count)
            raise RateLimitExceeded(
                "Too many requests, please try again later",
                retry_after=retry_after or self.window_seconds,
            )
        return self.limit - count


def build_store(redis_url: str | None) -> CounterStore:
    if redis_url:
        logger.info("Using Redis for rate limiting")
        return RedisStore.from_url(redis_url)
    logger.info("Using in-process memory for rate limiting")
    return MemoryStore()
