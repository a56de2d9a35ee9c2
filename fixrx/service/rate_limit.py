from __future__ import annotations

import hashlib
import json
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from fixrx.logging import get_logger
from fixrx.service.errors import CacheUnavailableError, RateLimitedError

logger = get_logger(__name__)


class CounterCache(Protocol):
    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]: ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0

    @property
    def retry_after_minutes(self) -> int:
        return max(1, math.ceil(self.retry_after_seconds / 60))

    def raise_if_rejected(self) -> None:
        if self.allowed:
            return
        raise RateLimitedError(
            "Too many authentication attempts. "
            f"Please try again in {self.retry_after_minutes} minutes.",
            retry_after=self.retry_after_seconds,
        )


def rate_limit_key(ip: Optional[str], identity: Optional[str]) -> str:
    """Cache key for one (client IP, email-or-phone) pair.

    Components are hashed so user input cannot inject key delimiters.
    """
    raw = json.dumps([ip or "unknown", (identity or "unknown").strip().lower()])
    digest = hashlib.sha256(raw.encode()).hexdigest()
    return f"auth_rate_limit:{digest}"


class MemoryFallbackLimiter:
    """Fixed-window limiter used while the shared cache is unreachable.

    Counts live in this process only, so with several server instances each
    one enforces the limit separately. Windows end by wall-clock comparison.
    """

    def __init__(
        self,
        max_attempts: int,
        window_seconds: int,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        # key -> (count, reset_at)
        self._attempts: Dict[str, tuple[int, float]] = {}

    def check_and_record(self, key: str) -> RateLimitDecision:
        now = self._clock()
        entry = self._attempts.get(key)
        if entry is None or now > entry[1]:
            self._attempts[key] = (1, now + self.window_seconds)
            self._sweep(now)
            return RateLimitDecision(True)
        count, reset_at = entry
        if count >= self.max_attempts:
            return RateLimitDecision(False, max(1, math.ceil(reset_at - now)))
        self._attempts[key] = (count + 1, reset_at)
        return RateLimitDecision(True)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._attempts.items() if now > reset_at]
        for key in expired:
            self._attempts.pop(key, None)

    def __len__(self) -> int:
        return len(self._attempts)


class RateLimiter:
    """Per-identity attempt counter guarding authentication endpoints.

    The window starts with the first attempt and is not extended by later
    ones. Once ``max_attempts`` is reached every request is rejected until
    the window expires.
    """

    def __init__(
        self,
        cache: CounterCache,
        *,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        fallback: Optional[MemoryFallbackLimiter] = None,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.fallback = fallback or MemoryFallbackLimiter(max_attempts, window_seconds)

    async def check_and_record_attempt(
        self, ip: Optional[str], identity: Optional[str]
    ) -> RateLimitDecision:
        key = rate_limit_key(ip, identity)
        try:
            return await self._check_cache(key)
        except CacheUnavailableError:
            logger.warning("rate_limit_memory_fallback", key=key)
            return self.fallback.check_and_record(key)

    async def enforce(self, ip: Optional[str], identity: Optional[str]) -> None:
        decision = await self.check_and_record_attempt(ip, identity)
        if not decision.allowed:
            logger.warning(
                "auth_rate_limited",
                ip=ip,
                retry_after_seconds=decision.retry_after_seconds,
            )
        decision.raise_if_rejected()

    async def _check_cache(self, key: str) -> RateLimitDecision:
        # One atomic increment per attempt; rejected attempts count too but
        # never move the window
        count, ttl = await self.cache.hit_window(key, self.window_seconds)
        if count > self.max_attempts:
            return RateLimitDecision(False, max(1, ttl))
        return RateLimitDecision(True)
