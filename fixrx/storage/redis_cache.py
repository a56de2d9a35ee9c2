from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from fixrx.logging import get_logger
from fixrx.service.errors import CacheUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

# Failures worth retrying; anything else (e.g. WRONGTYPE) is a bug and propagates
_TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError, OSError)

# INCR, starting the window on the first hit or when the expiry went missing.
# A non-integer value is discarded and counting restarts.
_FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local current = redis.call("GET", key)
if current and not tonumber(current) then
  redis.call("DEL", key)
end
local count = redis.call("INCR", key)
local ttl = redis.call("TTL", key)
if count == 1 or ttl < 0 then
  redis.call("EXPIRE", key, window)
  ttl = window
end
return {count, ttl}
"""


class RedisCache:
    """Session cache backed by Redis.

    Every command is bounded by ``operation_timeout`` and retried with
    exponential backoff on transport failures. When retries run out the
    call raises ``CacheUnavailableError`` so callers can apply their own
    fallback policy.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = 2.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.05,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_script: Any = None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, op: str, func: Callable[[], Awaitable[T]]) -> T:
        last_error: Exception | None = None
        for attempt in range(self.retry_attempts):
            try:
                return await asyncio.wait_for(func(), timeout=self.operation_timeout)
            except _TRANSIENT_ERRORS as exc:
                last_error = exc
                if attempt + 1 >= self.retry_attempts:
                    break
                delay = self.retry_base_delay * (2**attempt)
                logger.warning(
                    "redis_retry",
                    op=op,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error_type=type(exc).__name__,
                )
                await asyncio.sleep(delay)
        logger.error(
            "redis_unavailable",
            op=op,
            attempts=self.retry_attempts,
            error_type=type(last_error).__name__ if last_error else None,
            error=str(last_error) if last_error else None,
        )
        raise CacheUnavailableError() from last_error

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ex = max(1, int(ttl_seconds)) if ttl_seconds is not None else None
        await self._call("set", lambda: self.client.set(key, value, ex=ex))

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", lambda: self.client.get(key))

    async def delete(self, key: str) -> int:
        return int(await self._call("delete", lambda: self.client.delete(key)))

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one hit in a fixed window; returns (count, seconds left).

        Runs as a single Lua script so concurrent callers on any instance
        see distinct counts.
        """
        if self._window_script is None:
            self._window_script = self.client.register_script(_FIXED_WINDOW_SCRIPT)
        window = max(1, int(window_seconds))
        count, ttl = await self._call(
            "hit_window", lambda: self._window_script(keys=[key], args=[window])
        )
        return int(count), int(ttl)

    async def ttl(self, key: str) -> int:
        """Seconds remaining; -1 for no expiry, -2 when the key is absent."""
        return int(await self._call("ttl", lambda: self.client.ttl(key)))

    async def close(self) -> None:
        await self.client.aclose()
