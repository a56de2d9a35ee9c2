from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    CONSUMER = "CONSUMER"
    VENDOR = "VENDOR"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


# Statuses allowed to log in and refresh tokens
SESSION_ELIGIBLE_STATUSES = frozenset({UserStatus.ACTIVE, UserStatus.PENDING_VERIFICATION})


@dataclass
class User:
    id: str
    email: str
    role: UserRole = UserRole.CONSUMER
    status: UserStatus = UserStatus.PENDING_VERIFICATION
    password_hash: Optional[str] = None
    auth0_id: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None
    email_verified: bool = False
    phone_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def has_local_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def has_external_identity(self) -> bool:
        return bool(self.auth0_id)

    @property
    def is_suspended(self) -> bool:
        return self.status == UserStatus.SUSPENDED


def ensure_has_credential(password_hash: Optional[str], auth0_id: Optional[str]) -> None:
    """Reject records that could never authenticate."""
    if not password_hash and not auth0_id:
        raise ValueError("user requires a password hash or an external identity id")


# Columns callers may change through update_user
UPDATABLE_USER_FIELDS = frozenset(
    {
        "status",
        "password_hash",
        "auth0_id",
        "phone",
        "first_name",
        "last_name",
        "avatar",
        "email_verified",
        "phone_verified",
        "last_login_at",
    }
)
