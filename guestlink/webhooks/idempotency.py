"""Webhook idempotency: event-id deduplication with a 24h TTL.

Security contract:
- Check-and-mark is atomic (Redis SET NX EX, or a lock in-process)
- Duplicates are acknowledged with 200 (providers retry on errors)
- Key pattern: webhook:seen:{provider}:{event_id}
- If Redis is down, falls back to allowing (fail-open for availability)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Protocol, runtime_checkable

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook:seen"


def _key(provider: str, event_id: str) -> str:
    return f"{_KEY_PREFIX}:{provider}:{event_id}"


@runtime_checkable
class EventDeduplicator(Protocol):
    def is_duplicate(self, provider: str, event_id: str) -> bool: ...


class InMemoryDeduplicator:
    """Process-local seen-set with expiry."""

    def __init__(self, ttl_seconds: int = DEDUP_TTL_SECONDS):
        self._ttl = ttl_seconds
        self._lock = threading.Lock()
        self._seen: dict[str, float] = {}

    def is_duplicate(self, provider: str, event_id: str) -> bool:
        if not event_id:
            return False
        key = _key(provider, event_id)
        now = time.time()
        with self._lock:
            expires_at = self._seen.get(key)
            if expires_at is not None and expires_at > now:
                logger.info("Duplicate webhook rejected: %s/%s", provider, event_id)
                return True
            self._seen[key] = now + self._ttl
            return False

    def evict_expired(self) -> int:
        now = time.time()
        with self._lock:
            stale = [k for k, exp in self._seen.items() if exp <= now]
            for k in stale:
                del self._seen[k]
        return len(stale)


class RedisDeduplicator:
    """Shared seen-set in Redis."""

    def __init__(self, redis_url: str = "", client: redis.Redis | None = None, ttl_seconds: int = DEDUP_TTL_SECONDS):
        self._redis = client or redis.from_url(redis_url, decode_responses=True)
        self._ttl = ttl_seconds

    def is_duplicate(self, provider: str, event_id: str) -> bool:
        """Check if this event has already been processed, marking it if not."""
        if not event_id:
            return False
        try:
            # SET NX returns True if the key was set (new), None if it already existed
            was_set = self._redis.set(_key(provider, event_id), "1", nx=True, ex=self._ttl)
        except RedisError:
            logger.warning(
                "Redis unavailable for webhook dedup, allowing %s/%s",
                provider,
                event_id,
                exc_info=True,
            )
            return False
        if not was_set:
            logger.info("Duplicate webhook rejected: %s/%s", provider, event_id)
            return True
        return False

    def evict_expired(self) -> int:
        # Keys carry their own TTL
        return 0
