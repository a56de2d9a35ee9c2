"""Tests for environment-driven settings."""

import os
import stat

import pytest
from pydantic import ValidationError

from fixrx.config import Settings, get_settings, reset_settings_cache


class TestSecrets:
    def test_equal_secrets_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="same-secret-value", jwt_refresh_secret="same-secret-value")

    def test_missing_secrets_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings()
        assert first.jwt_secret != first.jwt_refresh_secret
        secret_file = tmp_path / ".jwt_secret"
        assert secret_file.read_text() == first.jwt_secret
        assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600

        second = Settings()
        assert second.jwt_secret == first.jwt_secret
        assert second.jwt_refresh_secret == first.jwt_refresh_secret

    def test_short_persisted_secret_is_replaced(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        (tmp_path / ".jwt_secret").write_text("short")
        settings = Settings(jwt_refresh_secret="explicit-refresh-secret-value")
        assert settings.jwt_secret != "short"
        assert len(settings.jwt_secret) >= 32


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("AUTH_RATE_LIMIT_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        monkeypatch.setenv("USE_MEMORY_STORE", "true")
        settings = Settings.from_env()
        assert settings.auth_rate_limit_max_attempts == 7
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.use_memory_store is True

    def test_defaults(self):
        settings = Settings(jwt_secret="access-secret-value", jwt_refresh_secret="refresh-secret-value")
        assert settings.jwt_issuer == "fixrx-api"
        assert settings.jwt_audience == "fixrx-app"
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 30
        assert settings.auth_rate_limit_max_attempts == 5
        assert settings.auth_rate_limit_window_seconds == 900
        assert not settings.auth0_configured

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first


class TestSocialVerificationDefault:
    def test_on_outside_test_mode(self):
        settings = Settings(
            jwt_secret="access-secret-value", jwt_refresh_secret="refresh-secret-value"
        )
        assert settings.verify_social_tokens is True

    def test_off_in_test_mode(self):
        settings = Settings(
            jwt_secret="access-secret-value",
            jwt_refresh_secret="refresh-secret-value",
            test_mode=True,
        )
        assert settings.verify_social_tokens is False

    def test_explicit_setting_wins(self, monkeypatch):
        monkeypatch.setenv("VERIFY_SOCIAL_TOKENS", "false")
        monkeypatch.setenv("TEST_MODE", "false")
        assert Settings.from_env().verify_social_tokens is False
