from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from fixrx.logging import get_correlation_id
from fixrx.service.auth import ProfileDraft
from fixrx.service.tokens import TokenPair
from fixrx.storage.models import User

MAX_STRING_LENGTH = 4096
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
PHONE_CODE_LENGTH = 6

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_expired",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys; snake_case names work on input too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(CamelModel):
    """Response wrapper shared by every endpoint."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    needs_role_selection: Optional[bool] = None
    temp_user_data: Optional[dict] = None
    request_id: str = Field(default_factory=_request_id)

    def to_payload(self) -> dict:
        payload = self.model_dump(by_alias=True)
        for key in ("needsRoleSelection", "tempUserData"):
            if payload.get(key) is None:
                payload.pop(key, None)
        if self.success:
            payload.pop("error", None)
        return payload


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi = {chr(c) for c in range(0x202A, 0x202F)} | {chr(c) for c in range(0x2066, 0x206A)}
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if not PHONE_PATTERN.match(cleaned):
        raise ValueError("invalid phone number")
    return cleaned


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    return cleaned or None


class RegisterRequest(CamelModel):
    email: str
    password: str = Field(..., max_length=256)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = None
    role: Literal["CONSUMER", "VENDOR"] = "CONSUMER"

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_register_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(CamelModel):
    # Optional so a missing token reaches the service and gets its own message
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class TokenRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class EmailRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    password: str = Field(..., max_length=256)


class PhoneRequest(CamelModel):
    phone: str

    @field_validator("phone")
    @classmethod
    def _validate_request_phone(cls, value: str) -> str:
        return _validate_phone(value)


class VerifyPhoneRequest(PhoneRequest):
    code: str = Field(..., min_length=PHONE_CODE_LENGTH, max_length=PHONE_CODE_LENGTH)


class SocialProfile(CamelModel):
    id: str = Field(..., min_length=1, max_length=255)
    email: str
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    avatar: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: str) -> str:
        return _validate_email(value)

    def to_draft(self) -> ProfileDraft:
        return ProfileDraft(
            auth0_id=self.id,
            email=self.email,
            first_name=_clean_name(self.first_name),
            last_name=_clean_name(self.last_name),
            avatar=self.avatar,
        )


class SocialLoginRequest(CamelModel):
    provider: Literal["google", "facebook"]
    access_token: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    profile: SocialProfile
    role: Optional[Literal["CONSUMER", "VENDOR"]] = None


class Auth0CallbackRequest(CamelModel):
    auth0_id: str = Field(..., min_length=1, max_length=255)
    email: str
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    role: Optional[Literal["CONSUMER", "VENDOR"]] = None

    @field_validator("email")
    @classmethod
    def _validate_callback_email(cls, value: str) -> str:
        return _validate_email(value)

    def to_draft(self) -> ProfileDraft:
        return ProfileDraft(
            auth0_id=self.auth0_id,
            email=self.email,
            first_name=_clean_name(self.first_name),
            last_name=_clean_name(self.last_name),
            avatar=self.avatar,
        )


class UserStatusUpdateRequest(CamelModel):
    status: Literal["ACTIVE", "SUSPENDED"]


class UserResponse(CamelModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    role: str
    status: str
    email_verified: bool = False
    phone_verified: bool = False
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            avatar=user.avatar,
            role=user.role.value,
            status=user.status.value,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class TokensResponse(CamelModel):
    access_token: str
    refresh_token: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokensResponse":
        return cls(access_token=pair.access_token, refresh_token=pair.refresh_token)


class SessionResponse(CamelModel):
    user: UserResponse
    tokens: TokensResponse


class TempUserData(CamelModel):
    auth0_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None

    @classmethod
    def from_draft(cls, draft: ProfileDraft) -> "TempUserData":
        return cls(
            auth0_id=draft.auth0_id,
            email=draft.email,
            first_name=draft.first_name,
            last_name=draft.last_name,
            avatar=draft.avatar,
        )
