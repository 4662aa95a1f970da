"""Key-value backends for the rate limiter and conversation store.

Two implementations share one small async contract:

    get(key) -> Optional[str]
    set(key, value, ttl) -> None
    delete(key) -> bool
    incr(key, ttl) -> int        # atomic; ttl applied only on creation
    ping() -> bool
    close() -> None

``InMemoryStore`` keeps everything in a dict with per-key expiry and takes an
injectable clock so tests can simulate a window elapsing. ``RedisStore`` wraps
``redis.asyncio``; every client failure is surfaced as :class:`StorageError`.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import StorageError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def incr(self, key: str, ttl: float) -> int:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


# -----------------------------
# In-process store
# -----------------------------
class InMemoryStore:
    """Dict-backed store with TTL semantics close to Redis.

    Expired keys are dropped lazily on access. Every operation completes
    without yielding to the event loop, so each one is atomic with respect
    to other coroutines; the lock covers callers on other threads.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return item

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + float(ttl)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(key)
            return item[0] if item else None

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (str(value), self._expiry(ttl))

    async def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return existed

    async def incr(self, key: str, ttl: float) -> int:
        with self._lock:
            item = self._live(key)
            if item is None:
                self._data[key] = ("1", self._expiry(ttl))
                return 1
            value, expires_at = item
            try:
                count = int(value) + 1
            except ValueError:
                raise StorageError(f"value at {key!r} is not an integer")
            self._data[key] = (str(count), expires_at)
            return count

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds left before ``key`` expires (None if absent or persistent)."""
        with self._lock:
            item = self._live(key)
            if item is None or item[1] is None:
                return None
            return max(0.0, item[1] - self._clock())

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


# -----------------------------
# Redis store
# -----------------------------
class RedisStore:
    """``redis.asyncio`` backed store."""

    def __init__(self, url: str = "redis://localhost:6379/0", client: Any = None) -> None:
        self.url = url
        self._client = client or redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
        )

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except (RedisError, OSError) as e:
            raise StorageError(f"redis get failed for {key!r}: {e}") from e

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        try:
            if ttl is None:
                await self._client.set(key, value)
            else:
                await self._client.set(key, value, ex=int(ttl))
        except (RedisError, OSError) as e:
            raise StorageError(f"redis set failed for {key!r}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(key))
        except (RedisError, OSError) as e:
            raise StorageError(f"redis delete failed for {key!r}: {e}") from e

    async def incr(self, key: str, ttl: float) -> int:
        # SET NX EX creates the counter with its window; INCR keeps the TTL.
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, ex=int(ttl), nx=True)
                pipe.incr(key)
                _, count = await pipe.execute()
            return int(count)
        except (RedisError, OSError) as e:
            raise StorageError(f"redis incr failed for {key!r}: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            logger.warning("Redis close failed: %s", e)


def create_store(backend: str = "memory", redis_url: Optional[str] = None) -> KeyValueStore:
    """Build the configured backend (``memory`` or ``redis``)."""
    name = (backend or "memory").strip().lower()
    if name == "redis":
        url = redis_url or "redis://localhost:6379/0"
        logger.info("Using Redis store at %s", url.split("@")[-1])
        return RedisStore(url)
    if name != "memory":
        logger.warning("Unknown storage backend %r, falling back to memory", backend)
    return InMemoryStore()
