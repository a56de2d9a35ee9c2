"""Tests for per-user credential verifier selection and external checks."""

import httpx
import pytest

from fixrx.service.credentials import (
    CredentialVerifierRegistry,
    ExternalIdentityVerifier,
    LocalPasswordVerifier,
    SocialTokenVerifier,
)
from fixrx.service.passwords import PasswordHasher
from fixrx.storage.models import User

STRONG_PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


def _external(handler) -> ExternalIdentityVerifier:
    return ExternalIdentityVerifier(
        domain="tenant.example.auth0.com",
        client_id="client-id",
        client_secret="client-secret",
        transport=httpx.MockTransport(handler),
    )


class TestRegistry:
    def test_local_user_gets_local_verifier(self, hasher):
        registry = CredentialVerifierRegistry(LocalPasswordVerifier(hasher), _external(None))
        user = User(id="u", email="a@example.com", password_hash="$argon2id$x")
        assert registry.for_user(user).name == "local"

    def test_external_identity_wins_when_configured(self, hasher):
        registry = CredentialVerifierRegistry(LocalPasswordVerifier(hasher), _external(None))
        user = User(id="u", email="a@example.com", password_hash="$argon2id$x", auth0_id="auth0|1")
        assert registry.for_user(user).name == "auth0"

    def test_external_user_falls_back_to_local_without_provider(self, hasher):
        registry = CredentialVerifierRegistry(LocalPasswordVerifier(hasher))
        user = User(id="u", email="a@example.com", password_hash="$argon2id$x", auth0_id="auth0|1")
        assert registry.for_user(user).name == "local"

    def test_no_usable_credential(self, hasher):
        registry = CredentialVerifierRegistry(LocalPasswordVerifier(hasher))
        assert registry.for_user(User(id="u", email="a@example.com", auth0_id="google-1")) is None

    def test_from_settings_without_auth0(self, settings, hasher):
        registry = CredentialVerifierRegistry.from_settings(settings, hasher)
        assert registry.external is None

    def test_from_settings_with_auth0(self, settings, hasher):
        configured = settings.model_copy(
            update={
                "auth0_domain": "tenant.example.auth0.com",
                "auth0_client_id": "id",
                "auth0_client_secret": "secret",
            }
        )
        registry = CredentialVerifierRegistry.from_settings(configured, hasher)
        assert registry.external.token_url == "https://tenant.example.auth0.com/oauth/token"


class TestLocalPasswordVerifier:
    async def test_verifies_hash(self, hasher):
        user = User(id="u", email="a@example.com", password_hash=await hasher.hash(STRONG_PASSWORD))
        verifier = LocalPasswordVerifier(hasher)
        assert await verifier.verify(user, STRONG_PASSWORD)
        assert not await verifier.verify(user, "Wr0ng!Password")


class TestExternalIdentityVerifier:
    async def test_password_grant_accepted(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"access_token": "t"})

        user = User(id="u", email="a@example.com", auth0_id="auth0|1")
        assert await _external(handler).verify(user, STRONG_PASSWORD)
        assert seen["url"] == "https://tenant.example.auth0.com/oauth/token"
        assert "grant_type=password" in seen["body"]
        assert "username=a%40example.com" in seen["body"]

    async def test_password_grant_rejected(self):
        user = User(id="u", email="a@example.com", auth0_id="auth0|1")
        verifier = _external(lambda request: httpx.Response(403, json={"error": "invalid_grant"}))
        assert not await verifier.verify(user, "wrong")

    async def test_transport_error_is_a_failed_check(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        user = User(id="u", email="a@example.com", auth0_id="auth0|1")
        assert not await _external(handler).verify(user, STRONG_PASSWORD)


class TestSocialTokenVerifier:
    async def test_disabled_accepts_everything(self):
        verifier = SocialTokenVerifier(enabled=False)
        assert await verifier.verify("google", "token", "123")

    async def test_matching_profile_id(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer good-token"
            return httpx.Response(200, json={"sub": "123"})

        verifier = SocialTokenVerifier(enabled=True, transport=httpx.MockTransport(handler))
        assert await verifier.verify("google", "good-token", "123")

    async def test_mismatched_profile_id(self):
        verifier = SocialTokenVerifier(
            enabled=True,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"id": "999"})),
        )
        assert not await verifier.verify("facebook", "token", "123")

    async def test_provider_rejection(self):
        verifier = SocialTokenVerifier(
            enabled=True,
            transport=httpx.MockTransport(lambda request: httpx.Response(401)),
        )
        assert not await verifier.verify("google", "expired", "123")

    async def test_unknown_provider(self):
        verifier = SocialTokenVerifier(enabled=True)
        assert not await verifier.verify("myspace", "token", "123")
