from __future__ import annotations

import math
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. State is not shared
    between processes, so rate limits and token rotation are per-instance.
    Operations never await, so each one is atomic on the event loop.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    def verify_connection(self) -> None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._clock() + max(1, int(ttl_seconds))
        self._data[key] = (str(value), expires_at)

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def delete(self, key: str) -> int:
        if self._live(key) is None:
            return 0
        self._data.pop(key, None)
        return 1

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one hit in a fixed window; returns (count, seconds left)."""
        window = max(1, int(window_seconds))
        entry = self._live(key)
        count, expires_at = 1, None
        if entry is not None:
            value, expires_at = entry
            try:
                count = int(value) + 1
            except ValueError:
                count, expires_at = 1, None
        if count == 1 or expires_at is None:
            expires_at = self._clock() + window
        self._data[key] = (str(count), expires_at)
        return count, math.ceil(expires_at - self._clock())

    async def ttl(self, key: str) -> int:
        """Seconds remaining; -1 for no expiry, -2 when the key is absent."""
        entry = self._live(key)
        if entry is None:
            return -2
        expires_at = entry[1]
        if expires_at is None:
            return -1
        return max(0, math.ceil(expires_at - self._clock()))

    async def close(self) -> None:
        self._data.clear()
