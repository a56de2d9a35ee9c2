"""Credential verification strategies.

A user record can hold a local password hash, an external identity (Auth0)
id, or both. Login picks one verifier per user through
:class:`CredentialVerifierRegistry` instead of branching at each call site.
"""

from __future__ import annotations

from typing import Optional, Protocol

import httpx

from fixrx.config import Settings
from fixrx.logging import get_logger
from fixrx.service.passwords import PasswordHasher
from fixrx.storage.models import User

logger = get_logger(__name__)

SOCIAL_USERINFO_URLS = {
    "google": "https://www.googleapis.com/oauth2/v3/userinfo",
    "facebook": "https://graph.facebook.com/me?fields=id,email",
}


class CredentialVerifier(Protocol):
    name: str

    async def verify(self, user: User, password: str) -> bool: ...


class LocalPasswordVerifier:
    name = "local"

    def __init__(self, hasher: PasswordHasher) -> None:
        self.hasher = hasher

    async def verify(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        return await self.hasher.verify(user.password_hash, password)


class ExternalIdentityVerifier:
    """Check a password with the Auth0 resource-owner password grant."""

    name = "auth0"

    def __init__(
        self,
        *,
        domain: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token_url = f"https://{domain}/oauth/token"
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    async def verify(self, user: User, password: str) -> bool:
        form = {
            "grant_type": "password",
            "username": user.email,
            "password": password,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": "openid profile email",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.token_url, data=form)
        except httpx.HTTPError as exc:
            logger.warning(
                "auth0_password_grant_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if resp.status_code == 200:
            return True
        logger.warning(
            "auth0_password_grant_rejected",
            user_id=user.id,
            status_code=resp.status_code,
        )
        return False


class CredentialVerifierRegistry:
    """Choose the verifier matching a user's credential capabilities."""

    def __init__(
        self,
        local: LocalPasswordVerifier,
        external: Optional[ExternalIdentityVerifier] = None,
    ) -> None:
        self.local = local
        self.external = external

    def for_user(self, user: User) -> Optional[CredentialVerifier]:
        if user.has_external_identity and self.external is not None:
            return self.external
        if user.has_local_password:
            return self.local
        return None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        hasher: PasswordHasher,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CredentialVerifierRegistry":
        external = None
        if settings.auth0_configured:
            external = ExternalIdentityVerifier(
                domain=settings.auth0_domain,
                client_id=settings.auth0_client_id,
                client_secret=settings.auth0_client_secret,
                timeout=settings.outbound_http_timeout,
                transport=transport,
            )
        return cls(LocalPasswordVerifier(hasher), external)


class SocialTokenVerifier:
    """Confirm a social access token belongs to the claimed profile id.

    Disabled unless VERIFY_SOCIAL_TOKENS is set, in which case the provider
    userinfo endpoint must answer with a matching ``id``/``sub``.
    """

    def __init__(
        self,
        *,
        enabled: bool,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.enabled = enabled
        self.timeout = timeout
        self._transport = transport

    async def verify(self, provider: str, access_token: str, profile_id: str) -> bool:
        if not self.enabled:
            return True
        url = SOCIAL_USERINFO_URLS.get(provider)
        if url is None:
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            logger.warning(
                "social_token_check_failed",
                provider=provider,
                error_type=type(exc).__name__,
            )
            return False
        if resp.status_code != 200:
            logger.warning(
                "social_token_rejected", provider=provider, status_code=resp.status_code
            )
            return False
        try:
            info = resp.json()
        except ValueError:
            return False
        remote_id = str(info.get("sub") or info.get("id") or "")
        return bool(remote_id) and remote_id == profile_id
