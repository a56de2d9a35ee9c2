from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from fixrx.config import Settings
from fixrx.logging import get_logger
from fixrx.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"

PURPOSE_TOKEN_TYPES = frozenset({PASSWORD_RESET, EMAIL_VERIFICATION})


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    role: str
    auth0_id: Optional[str] = None

    @classmethod
    def for_user(cls, user) -> "TokenClaims":
        role = user.role.value if hasattr(user.role, "value") else str(user.role)
        return cls(user_id=user.id, email=user.email, role=role, auth0_id=user.auth0_id)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class TokenService:
    """Issue and verify HS256 JWTs.

    Access and refresh tokens are signed with different secrets. Only HS256 is
    accepted, and issuer, audience, expiry and token type are all pinned.
    Verification failures raise :class:`TokenExpiredError` when the token is
    otherwise valid but past ``exp``, and :class:`InvalidTokenError` for
    everything else.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self.access_secret = settings.jwt_secret
        self.refresh_secret = settings.jwt_refresh_secret
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    # issuing
    def issue_access_token(self, claims: TokenClaims) -> str:
        return self._encode(claims, ACCESS, self.access_ttl, self.access_secret)

    def issue_refresh_token(self, claims: TokenClaims) -> str:
        return self._encode(claims, REFRESH, self.refresh_ttl, self.refresh_secret)

    def issue_pair(self, claims: TokenClaims) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(claims),
            refresh_token=self.issue_refresh_token(claims),
        )

    def issue_purpose_token(self, claims: TokenClaims, purpose: str, ttl_seconds: int) -> str:
        """Single-purpose token (password reset, email verification).

        Signed with the access secret; ``token_type`` keeps it from being
        accepted as an access token and vice versa.
        """
        if purpose not in PURPOSE_TOKEN_TYPES:
            raise ValueError(f"unknown token purpose: {purpose}")
        return self._encode(claims, purpose, timedelta(seconds=ttl_seconds), self.access_secret)

    # verifying
    def verify(self, token: str, secret: str, expected_type: str) -> dict[str, Any]:
        payload = self._decode(token, secret)
        if payload.get("token_type") != expected_type:
            logger.warning(
                "jwt_wrong_token_type",
                expected=expected_type,
                actual=payload.get("token_type"),
            )
            raise InvalidTokenError("Invalid token")
        if not payload.get("sub"):
            raise InvalidTokenError("Invalid token")
        return payload

    def verify_access(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.access_secret, ACCESS)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.refresh_secret, REFRESH)

    def verify_purpose(self, token: str, purpose: str) -> dict[str, Any]:
        return self.verify(token, self.access_secret, purpose)

    # wire format
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    @staticmethod
    def _sign(secret: str, signing_input: str) -> bytes:
        return hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()

    def _encode(self, claims: TokenClaims, token_type: str, ttl: timedelta, secret: str) -> str:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "sub": claims.user_id,
            "email": claims.email,
            "role": claims.role,
            "token_type": token_type,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            # Distinguishes tokens minted within the same second
            "jti": str(uuid.uuid4()),
        }
        if claims.auth0_id:
            payload["auth0_id"] = claims.auth0_id
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._encode_segment(self._sign(secret, signing_input))}"

    def _decode(self, token: str, secret: str) -> dict[str, Any]:
        if not token or not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Invalid token") from None

        # Pin the algorithm before touching the signature (algorithm confusion)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token") from None
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Invalid token")

        expected_sig = self._encode_segment(self._sign(secret, f"{header_b64}.{payload_b64}"))
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError("Invalid token")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid token") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("Invalid token")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid token") from None
        if exp_ts <= self._clock():
            raise TokenExpiredError("Token expired")
        return payload
