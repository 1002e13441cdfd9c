"""Fixed-window rate counters for guest-originated writes.

Two independent counters are charged on every guest write:
- per origin address: a global ceiling regardless of which link is targeted
- per link: the link's own ``rate_limit_per_minute``

A window opens on the first hit for a key and closes ``window_seconds``
later; the counter then expires on its own (TTL), which bounds memory.
Increment-and-check is atomic per key.  The in-memory counter is sharded so
unrelated keys never share a lock.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import zlib
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import redis
from redis.exceptions import RedisError

from guestlink.errors import RateLimited

logger = logging.getLogger(__name__)

_DEFAULT_SHARDS = 32


@dataclass(frozen=True)
class WindowDecision:
    """Outcome of one counter hit."""

    allowed: bool
    count: int
    limit: int
    reset_at: float

    def retry_after(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))


@runtime_checkable
class WindowCounter(Protocol):
    """Protocol for atomic increment-and-check counters."""

    def hit(self, key: str, limit: int, window_seconds: int) -> WindowDecision: ...

    def evict_expired(self) -> int: ...


@dataclass
class _Bucket:
    count: int
    reset_at: float


class InMemoryWindowCounter:
    """Sharded, lock-protected counters with TTL eviction."""

    def __init__(self, shards: int = _DEFAULT_SHARDS) -> None:
        self._locks = [threading.Lock() for _ in range(shards)]
        self._buckets: list[dict[str, _Bucket]] = [{} for _ in range(shards)]

    def _shard(self, key: str) -> int:
        return zlib.crc32(key.encode()) % len(self._locks)

    def hit(self, key: str, limit: int, window_seconds: int) -> WindowDecision:
        idx = self._shard(key)
        now = time.time()
        with self._locks[idx]:
            buckets = self._buckets[idx]
            bucket = buckets.get(key)
            if bucket is None or now >= bucket.reset_at:
                bucket = _Bucket(count=0, reset_at=now + window_seconds)
                buckets[key] = bucket
            bucket.count += 1
            return WindowDecision(
                allowed=bucket.count <= limit,
                count=bucket.count,
                limit=limit,
                reset_at=bucket.reset_at,
            )

    def evict_expired(self) -> int:
        """Drop counters whose window has closed. Returns count removed."""
        now = time.time()
        removed = 0
        for lock, buckets in zip(self._locks, self._buckets):
            with lock:
                stale = [k for k, b in buckets.items() if now >= b.reset_at]
                for k in stale:
                    del buckets[k]
                removed += len(stale)
        return removed

    def __len__(self) -> int:
        total = 0
        for lock, buckets in zip(self._locks, self._buckets):
            with lock:
                total += len(buckets)
        return total


class RedisWindowCounter:
    """Redis INCR + EXPIRE counters, shared across processes.

    If Redis is down, fails open for availability (allows the hit) and logs.
    """

    def __init__(self, redis_url: str = "", client: redis.Redis | None = None):
        self._redis = client or redis.from_url(redis_url, decode_responses=True)

    def hit(self, key: str, limit: int, window_seconds: int) -> WindowDecision:
        now = time.time()
        try:
            count = int(self._redis.incr(key))
            if count == 1:
                self._redis.expire(key, window_seconds)
                ttl = window_seconds
            else:
                ttl = self._redis.ttl(key)
                if ttl is None or ttl < 0:
                    # Lost the EXPIRE (crash between calls); re-arm it
                    self._redis.expire(key, window_seconds)
                    ttl = window_seconds
        except RedisError:
            logger.warning("Redis unavailable for rate counter, allowing %s", key, exc_info=True)
            return WindowDecision(allowed=True, count=0, limit=limit, reset_at=now + window_seconds)
        return WindowDecision(allowed=count <= limit, count=count, limit=limit, reset_at=now + ttl)

    def evict_expired(self) -> int:
        # Redis expires keys itself
        return 0


class RateGuard:
    """Charges the per-origin and per-link counters for a guest write."""

    ORIGIN_PREFIX = "rl:origin:"
    LINK_PREFIX = "rl:link:"

    def __init__(
        self,
        counter: WindowCounter,
        origin_limit_per_window: int = 100,
        window_seconds: int = 60,
    ):
        self._counter = counter
        self.origin_limit = origin_limit_per_window
        self.window_seconds = window_seconds

    def check_origin(self, origin_address: str) -> WindowDecision:
        """Charge the origin counter; raise ``RateLimited`` above the ceiling."""
        decision = self._counter.hit(
            f"{self.ORIGIN_PREFIX}{origin_address or 'unknown'}",
            self.origin_limit,
            self.window_seconds,
        )
        if not decision.allowed:
            logger.warning("Origin rate limited: %s (%d/%d)", origin_address, decision.count, decision.limit)
            raise RateLimited(
                f"origin {origin_address} over {decision.limit}/window",
                retry_after=decision.retry_after(),
                scope="origin",
            )
        return decision

    def check_link(self, link_id: str, limit_per_window: int) -> WindowDecision:
        """Charge the link counter; raise ``RateLimited`` above the link's cap."""
        decision = self._counter.hit(f"{self.LINK_PREFIX}{link_id}", limit_per_window, self.window_seconds)
        if not decision.allowed:
            logger.warning("Link rate limited: %s (%d/%d)", link_id[:8], decision.count, decision.limit)
            raise RateLimited(
                f"link {link_id} over {decision.limit}/window",
                retry_after=decision.retry_after(),
                scope="link",
            )
        return decision

    def charge(self, origin_address: str, link_id: str, link_limit_per_window: int) -> None:
        """Charge both counters, origin first."""
        self.check_origin(origin_address)
        self.check_link(link_id, link_limit_per_window)

    def evict_expired(self) -> int:
        return self._counter.evict_expired()
