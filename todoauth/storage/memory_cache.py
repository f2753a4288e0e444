from __future__ import annotations

import fnmatch
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Used when Redis is unavailable under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
    Entries expire against the injected clock, so tests that advance time see
    TTL eviction exactly as Redis would apply it.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete_matching(self, pattern: str) -> int:
        with self._lock:
            matched = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            removed = sum(1 for k in matched if self._live(k) is not None)
            for key in matched:
                self._entries.pop(key, None)
        return removed

    def ttl(self, key: str) -> Optional[timedelta]:
        """Remaining lifetime of ``key``, or None when absent."""
        with self._lock:
            if self._live(key) is None:
                return None
            return self._entries[key][1] - self._clock()

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
