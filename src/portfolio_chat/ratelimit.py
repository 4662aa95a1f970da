"""Per-identity request quota over a fixed window.

The counter lives under ``ratelimit:<identity>``. It is created with the
window TTL on the first committed request and only incremented afterwards, so
the window runs from the first request rather than sliding. Absence of the key
means a fresh window. Storage failures fail open.
"""
from __future__ import annotations

import logging
from typing import Optional

from .errors import StorageError
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 15
DEFAULT_WINDOW_SECONDS = 24 * 60 * 60


class RateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        key_prefix: str = "ratelimit:",
    ) -> None:
        self._store = store
        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self._prefix = key_prefix

    def _key(self, identity: str) -> str:
        return f"{self._prefix}{identity}"

    async def _count(self, identity: str) -> Optional[int]:
        """Current count, or None when absent/unreadable (treated as fresh)."""
        raw = await self._store.get(self._key(identity))
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid rate limit value for %s: %r", identity, raw)
            return None

    async def admit(self, identity: str) -> bool:
        """True if ``identity`` may make another request in this window."""
        try:
            count = await self._count(identity)
        except StorageError as e:
            logger.error("Rate limit check failed for %s, allowing request: %s", identity, e)
            return True
        if count is None:
            return True
        allowed = count < self.max_requests
        logger.info("Rate limit check for %s: %d/%d used, allowed=%s", identity, count, self.max_requests, allowed)
        return allowed

    async def commit(self, identity: str) -> bool:
        """Count one completed request. Returns False if the store failed."""
        try:
            count = await self._store.incr(self._key(identity), self.window_seconds)
        except StorageError as e:
            logger.error("Rate limit increment failed for %s: %s", identity, e)
            return False
        logger.info("Rate limit for %s now %d", identity, count)
        return True

    async def remaining(self, identity: str, max_requests: Optional[int] = None) -> int:
        limit = self.max_requests if max_requests is None else int(max_requests)
        try:
            count = await self._count(identity)
        except StorageError as e:
            logger.error("Remaining-requests lookup failed for %s: %s", identity, e)
            return limit
        return max(0, limit - (count or 0))
