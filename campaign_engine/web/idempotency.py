# campaign_engine/web/idempotency.py
import asyncio
import time
from typing import Callable

from cachetools import TTLCache


class IdempotencyCache:
    """
    In-memory idempotency cache for inbound event deliveries.
    Entries expire after `ttl_seconds`; at most `maxsize` keys are held (oldest evicted first).
    """

    def __init__(self, ttl_seconds: int = 300, maxsize: int = 10000, timer: Callable[[], float] = time.monotonic):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._lock = asyncio.Lock()

    async def reserve(self, key: str) -> bool:
        """Return True if key is new and reserved; False if duplicate."""
        async with self._lock:
            if key in self._cache:
                return False
            self._cache[key] = True
            return True

    async def release(self, key: str) -> None:
        """Forget a reservation so a failed delivery can be retried by the sender."""
        async with self._lock:
            self._cache.pop(key, None)

    def count(self, key: str | None = None) -> int:
        """Return count of live keys, or 1 if a specific key is held."""
        if key is None:
            self._cache.expire()
            return len(self._cache)
        return 1 if key in self._cache else 0

    def clear(self):
        self._cache.clear()

    def __len__(self):
        return self.count()
