"""Secret storage backends for the token vault.

The vault only ever hands these stores ciphertext and keyed digests; raw
token material never reaches them.

Key pattern (Redis):
- vault:secret:{handle} -> Fernet ciphertext
- vault:index:{digest}  -> handle
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

import redis
from redis.exceptions import RedisError

from guestlink.errors import InternalError
from guestlink.retry import retry_with_backoff

logger = logging.getLogger(__name__)

_KEY_PREFIX = "vault"


@runtime_checkable
class SecretStore(Protocol):
    """Protocol for the external secret-storage primitive.

    Implementations raise ``InternalError`` when the backend is unavailable
    after retries.
    """

    def put_secret(self, handle: str, ciphertext: str) -> None: ...

    def get_secret(self, handle: str) -> str | None: ...

    def delete_secret(self, handle: str) -> None: ...

    def put_index(self, digest: str, handle: str) -> None: ...

    def get_index(self, digest: str) -> str | None: ...

    def delete_index(self, digest: str) -> None: ...


class InMemorySecretStore:
    """Thread-safe in-process secret store.

    Suitable for unit tests and single-process deployments.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._secrets: dict[str, str] = {}
        self._index: dict[str, str] = {}

    def put_secret(self, handle: str, ciphertext: str) -> None:
        with self._lock:
            self._secrets[handle] = ciphertext

    def get_secret(self, handle: str) -> str | None:
        with self._lock:
            return self._secrets.get(handle)

    def delete_secret(self, handle: str) -> None:
        with self._lock:
            self._secrets.pop(handle, None)

    def put_index(self, digest: str, handle: str) -> None:
        with self._lock:
            self._index[digest] = handle

    def get_index(self, digest: str) -> str | None:
        with self._lock:
            return self._index.get(digest)

    def delete_index(self, digest: str) -> None:
        with self._lock:
            self._index.pop(digest, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._secrets)


class RedisSecretStore:
    """Redis-backed secret store.

    Transient Redis failures are retried with backoff; once retries are
    exhausted the call fails closed with ``InternalError``.
    """

    def __init__(
        self,
        redis_url: str,
        max_retries: int = 3,
        base_delay: float = 0.1,
        client: redis.Redis | None = None,
    ):
        self._redis = client or redis.from_url(redis_url, decode_responses=True)
        self._retry = retry_with_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            retry_on=(RedisError,),
        )

    def _call(self, op: str, fn, *args):
        try:
            return self._retry(fn)(*args)
        except RedisError as e:
            logger.error("Secret store unavailable during %s: %s", op, type(e).__name__)
            raise InternalError(f"secret store unavailable ({op})") from e

    def put_secret(self, handle: str, ciphertext: str) -> None:
        self._call("put_secret", self._redis.set, f"{_KEY_PREFIX}:secret:{handle}", ciphertext)

    def get_secret(self, handle: str) -> str | None:
        return self._call("get_secret", self._redis.get, f"{_KEY_PREFIX}:secret:{handle}")

    def delete_secret(self, handle: str) -> None:
        self._call("delete_secret", self._redis.delete, f"{_KEY_PREFIX}:secret:{handle}")

    def put_index(self, digest: str, handle: str) -> None:
        self._call("put_index", self._redis.set, f"{_KEY_PREFIX}:index:{digest}", handle)

    def get_index(self, digest: str) -> str | None:
        return self._call("get_index", self._redis.get, f"{_KEY_PREFIX}:index:{digest}")

    def delete_index(self, digest: str) -> None:
        self._call("delete_index", self._redis.delete, f"{_KEY_PREFIX}:index:{digest}")
