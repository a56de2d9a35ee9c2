from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from fixrx.logging import get_logger

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "@$!%*?&"
COMMON_PASSWORDS = frozenset({"password", "12345678", "qwerty123", "admin123"})


@dataclass(frozen=True)
class PasswordValidation:
    valid: bool
    reason: Optional[str] = None


_RULES: Sequence[tuple[Callable[[str], bool], str]] = (
    (lambda p: len(p) >= 8, "Password must be at least 8 characters long"),
    (
        lambda p: re.search(r"[a-z]", p) is not None,
        "Password must contain at least one lowercase letter",
    ),
    (
        lambda p: re.search(r"[A-Z]", p) is not None,
        "Password must contain at least one uppercase letter",
    ),
    (
        lambda p: re.search(r"\d", p) is not None,
        "Password must contain at least one number",
    ),
    (
        lambda p: any(ch in SPECIAL_CHARACTERS for ch in p),
        f"Password must contain at least one special character ({SPECIAL_CHARACTERS})",
    ),
    (
        lambda p: p.lower() not in COMMON_PASSWORDS,
        "Password is too common. Please choose a stronger password",
    ),
)


class PasswordPolicy:
    """Fail-fast strength check; the first broken rule is reported."""

    def __init__(self, rules: Sequence[tuple[Callable[[str], bool], str]] = _RULES) -> None:
        self.rules = rules

    def validate(self, password: str) -> PasswordValidation:
        if not isinstance(password, str):
            return PasswordValidation(False, self.rules[0][1])
        for check, reason in self.rules:
            if not check(password):
                return PasswordValidation(False, reason)
        return PasswordValidation(True)


class PasswordHasher:
    """argon2id hashing with fixed cost, run off the event loop."""

    algorithm = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 64 * 1024, parallelism: int = 4) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash_sync(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_sync(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
            return False

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_sync, password)

    async def verify(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, password_hash, password)
