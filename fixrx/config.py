from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fixrx.logging import get_logger

logger = get_logger(__name__)

# Secrets shorter than this are treated as missing when read back from disk
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating one on first use.

    The secret lives under SHARED_FS_ROOT so issued tokens stay valid across
    restarts of a single-node deployment.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/fixrx"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. in a container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed",
            error=str(exc),
            path=str(fs_root),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret via environment or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the FixRx auth service."""

    database_url: str = env_field("postgresql://localhost:5432/fixrx", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/fixrx", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors; permits the in-memory cache fallback.",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("fixrx-api", "JWT_ISSUER")
    jwt_audience: str = env_field("fixrx-app", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_seconds: int = env_field(60 * 60, "PASSWORD_RESET_TTL_SECONDS")
    phone_code_ttl_seconds: int = env_field(10 * 60, "PHONE_CODE_TTL_SECONDS")

    # Password hashing cost (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Brute-force protection on auth endpoints
    auth_rate_limit_max_attempts: int = env_field(5, "AUTH_RATE_LIMIT_MAX_ATTEMPTS")
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")

    # Session cache resilience
    cache_retry_attempts: int = env_field(3, "CACHE_RETRY_ATTEMPTS")
    cache_retry_base_delay: float = env_field(0.05, "CACHE_RETRY_BASE_DELAY")
    cache_operation_timeout: float = env_field(2.0, "CACHE_OPERATION_TIMEOUT")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("FixRx", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # SMS delivery
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = env_field(None, "TWILIO_FROM_NUMBER")

    # External identity provider
    auth0_domain: str | None = env_field(None, "AUTH0_DOMAIN")
    auth0_client_id: str | None = env_field(None, "AUTH0_CLIENT_ID")
    auth0_client_secret: str | None = env_field(None, "AUTH0_CLIENT_SECRET")
    verify_social_tokens: bool | None = env_field(
        None,
        "VERIFY_SOCIAL_TOKENS",
        description=(
            "Confirm social access tokens against the provider userinfo endpoint. "
            "Defaults to on unless TEST_MODE is set."
        ),
    )
    outbound_http_timeout: float = env_field(10.0, "OUTBOUND_HTTP_TIMEOUT")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def auth0_configured(self) -> bool:
        return bool(self.auth0_domain and self.auth0_client_id and self.auth0_client_secret)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _default_social_verification(self) -> "Settings":
        if self.verify_social_tokens is None:
            self.verify_social_tokens = not self.test_mode
        return self

    @model_validator(mode="after")
    def _require_distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
