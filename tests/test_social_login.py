"""Tests for social and Auth0 sign-in with deferred role selection."""

import httpx
import pytest

from fixrx.config import Settings
from fixrx.service.auth import Authenticated, NeedsRoleSelection, ProfileDraft
from fixrx.service.errors import AuthenticationError, ConflictError, ValidationError
from fixrx.service.runtime import Runtime
from fixrx.storage.models import UserRole, UserStatus

STRONG_PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def profile():
    return ProfileDraft(
        auth0_id="google-108",
        email="Sam@Example.com",
        first_name="Sam",
        last_name="Lee",
        avatar="https://img.example.com/sam.png",
    )


class TestSocialLogin:
    async def test_unknown_profile_without_role_persists_nothing(self, auth, store, profile):
        outcome = await auth.social_login("google", "access", profile)
        assert isinstance(outcome, NeedsRoleSelection)
        assert outcome.profile_draft == profile
        assert store.list_users() == []

    async def test_role_creates_exactly_one_user(self, auth, store, profile):
        outcome = await auth.social_login("google", "access", profile, role="VENDOR")
        assert isinstance(outcome, Authenticated)
        user = outcome.user
        assert user.email == "sam@example.com"
        assert user.role == UserRole.VENDOR
        assert user.auth0_id == "google-108"
        assert user.email_verified
        assert user.password_hash is None
        assert len(store.list_users()) == 1

    async def test_returning_user_is_not_duplicated(self, auth, store, profile):
        first = await auth.social_login("google", "access", profile, role="CONSUMER")
        again = await auth.social_login("google", "access", profile)
        assert isinstance(again, Authenticated)
        assert again.user.id == first.user.id
        assert len(store.list_users()) == 1

    async def test_existing_local_account_is_linked(self, auth, store, profile):
        local = await auth.register("sam@example.com", STRONG_PASSWORD, role="VENDOR")
        outcome = await auth.social_login("facebook", "access", profile)
        assert outcome.user.id == local.user.id
        linked = store.get_user(local.user.id)
        assert linked.auth0_id == "google-108"
        assert linked.email_verified
        assert linked.role == UserRole.VENDOR
        # Password login keeps working
        await auth.login("sam@example.com", STRONG_PASSWORD)

    async def test_suspended_account_rejected(self, auth, profile):
        created = await auth.social_login("google", "access", profile, role="CONSUMER")
        await auth.set_user_status(created.user.id, UserStatus.SUSPENDED)
        with pytest.raises(AuthenticationError):
            await auth.social_login("google", "access", profile)

    async def test_unsupported_provider(self, auth, profile):
        with pytest.raises(ValidationError):
            await auth.social_login("myspace", "access", profile, role="CONSUMER")

    async def test_admin_role_rejected(self, auth, store, profile):
        with pytest.raises(ValidationError):
            await auth.social_login("google", "access", profile, role="ADMIN")
        assert store.list_users() == []

    async def test_provider_id_match_wins_over_email(self, auth, store, profile):
        store.create_user("other@example.com", auth0_id="google-108")
        local = await auth.register("sam2@example.com", STRONG_PASSWORD)
        draft = ProfileDraft(auth0_id="google-108", email="sam2@example.com")
        # Provider id matches first, so the other account signs in
        outcome = await auth.social_login("google", "access", draft)
        assert outcome.user.email == "other@example.com"
        assert store.get_user(local.user.id).auth0_id is None

    async def test_session_is_issued(self, auth, runtime, profile):
        outcome = await auth.social_login("google", "access", profile, role="CONSUMER")
        refreshed = await auth.refresh(outcome.tokens.refresh_token)
        assert refreshed.user.id == outcome.user.id


class TestAuth0Callback:
    async def test_needs_role_then_creates(self, auth, store):
        draft = ProfileDraft(auth0_id="auth0|abc", email="kim@example.com", first_name="Kim")
        assert isinstance(await auth.auth0_callback(draft), NeedsRoleSelection)
        assert store.list_users() == []
        outcome = await auth.auth0_callback(draft, role="CONSUMER")
        assert outcome.user.auth0_id == "auth0|abc"
        assert outcome.user.first_name == "Kim"
        again = await auth.auth0_callback(draft)
        assert again.user.id == outcome.user.id

    async def test_email_taken_by_unlinked_account_conflicts(self, auth):
        await auth.register("kim@example.com", STRONG_PASSWORD)
        draft = ProfileDraft(auth0_id="auth0|abc", email="kim@example.com")
        with pytest.raises(ConflictError):
            await auth.auth0_callback(draft, role="CONSUMER")


class TestDefaultTokenVerification:
    @pytest.fixture
    def strict_auth(self, settings, store, cache):
        production = Settings(
            **{**settings.model_dump(), "test_mode": False, "verify_social_tokens": None}
        )
        runtime = Runtime(
            production,
            store=store,
            cache=cache,
            http_transport=httpx.MockTransport(lambda request: httpx.Response(401)),
        )
        return runtime.auth

    async def test_unverified_token_cannot_take_over_local_account(self, strict_auth, store):
        victim = await strict_auth.register("victim@example.com", STRONG_PASSWORD)
        forged = ProfileDraft(auth0_id="attacker-google-id", email="victim@example.com")
        with pytest.raises(AuthenticationError):
            await strict_auth.social_login("google", "anything", forged)
        assert store.get_user(victim.user.id).auth0_id is None
        assert store.get_user_by_auth0_id("attacker-google-id") is None
