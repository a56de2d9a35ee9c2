from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx
from redis.exceptions import RedisError

from fixrx.config import Settings, get_settings
from fixrx.logging import get_logger
from fixrx.service.auth import AuthService
from fixrx.service.credentials import CredentialVerifierRegistry, SocialTokenVerifier
from fixrx.service.email import EmailService
from fixrx.service.jobs import JobQueue
from fixrx.service.passwords import PasswordHasher, PasswordPolicy
from fixrx.service.rate_limit import MemoryFallbackLimiter, RateLimiter
from fixrx.service.sms import SmsService
from fixrx.service.tokens import TokenService
from fixrx.storage.memory import MemoryStore
from fixrx.storage.memory_cache import MemoryCache
from fixrx.storage.postgres import PostgresStore
from fixrx.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the wired service instances for one FastAPI app.

    ``store`` and ``cache`` may be passed in (tests); otherwise they are built
    from settings. Redis is required unless TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV permits the in-process cache.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        cache: Union[RedisCache, MemoryCache, None] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.tokens = TokenService(self.settings)
        self.hasher = PasswordHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.policy = PasswordPolicy()
        self.verifiers = CredentialVerifierRegistry.from_settings(
            self.settings, self.hasher, transport=http_transport
        )
        self.social_verifier = SocialTokenVerifier(
            enabled=self.settings.verify_social_tokens,
            timeout=self.settings.outbound_http_timeout,
            transport=http_transport,
        )
        if not self.social_verifier.enabled and not self.settings.test_mode:
            logger.warning("social_token_verification_disabled")
        self.rate_limiter = RateLimiter(
            self.cache,
            max_attempts=self.settings.auth_rate_limit_max_attempts,
            window_seconds=self.settings.auth_rate_limit_window_seconds,
            fallback=MemoryFallbackLimiter(
                self.settings.auth_rate_limit_max_attempts,
                self.settings.auth_rate_limit_window_seconds,
            ),
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.frontend_url,
        )
        self.sms = SmsService(
            account_sid=self.settings.twilio_account_sid,
            auth_token=self.settings.twilio_auth_token,
            from_number=self.settings.twilio_from_number,
            timeout=self.settings.outbound_http_timeout,
            transport=http_transport,
        )
        self.jobs = JobQueue(self.email, self.sms)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            hasher=self.hasher,
            policy=self.policy,
            verifiers=self.verifiers,
            social_verifier=self.social_verifier,
            jobs=self.jobs,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            auth0_configured=self.settings.auth0_configured,
        )

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url,
                operation_timeout=self.settings.cache_operation_timeout,
                retry_attempts=self.settings.cache_retry_attempts,
                retry_base_delay=self.settings.cache_retry_base_delay,
            )
            try:
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens, one-time codes and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryCache()

    async def start(self) -> None:
        await self.jobs.start()

    async def close(self) -> None:
        await self.jobs.stop()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")
