from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fixrx.logging import get_logger
from fixrx.storage.errors import ConstraintViolation
from fixrx.storage.models import (
    UPDATABLE_USER_FIELDS,
    User,
    UserRole,
    UserStatus,
    ensure_has_credential,
    utcnow,
)

_DATETIME_FIELDS = ("created_at", "updated_at", "last_login_at")


class MemoryStore:
    """In-process user store for tests and single-node development.

    When ``fs_root`` is given the user table is snapshotted to
    ``<fs_root>/state/users.json`` after each write and reloaded on start.
    Returned users are copies; mutate through ``update_user``.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can be called while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_user(
        self,
        email: str,
        *,
        role: UserRole = UserRole.CONSUMER,
        status: UserStatus = UserStatus.PENDING_VERIFICATION,
        password_hash: Optional[str] = None,
        auth0_id: Optional[str] = None,
        phone: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        ensure_has_credential(password_hash, auth0_id)
        email = email.strip().lower()
        with self._data_lock:
            self._check_unique(email=email, phone=phone, auth0_id=auth0_id)
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                role=UserRole(role),
                status=UserStatus(status),
                password_hash=password_hash,
                auth0_id=auth0_id,
                phone=phone,
                first_name=first_name,
                last_name=last_name,
                avatar=avatar,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find(lambda u: u.email == email.strip().lower())

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return self._find(lambda u: u.phone == phone)

    def get_user_by_auth0_id(self, auth0_id: str) -> Optional[User]:
        return self._find(lambda u: u.auth0_id == auth0_id)

    def find_user_by_identity(
        self, *, auth0_id: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        """Look up by provider id first, then by email."""
        if auth0_id:
            user = self.get_user_by_auth0_id(auth0_id)
            if user:
                return user
        if email:
            return self.get_user_by_email(email)
        return None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                return None
            if "phone" in fields and fields["phone"]:
                self._check_unique(phone=fields["phone"], exclude_id=user_id)
            if "auth0_id" in fields and fields["auth0_id"]:
                self._check_unique(auth0_id=fields["auth0_id"], exclude_id=user_id)
            if "status" in fields:
                fields["status"] = UserStatus(fields["status"])
            updated = replace(current, **fields, updated_at=utcnow())
            ensure_has_credential(updated.password_hash, updated.auth0_id)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [replace(u) for u in ordered[:limit]]

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def verify_connection(self) -> None:
        return None

    def _find(self, predicate) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if predicate(user):
                    return replace(user)
        return None

    def _check_unique(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        auth0_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email and existing.email == email:
                raise ConstraintViolation("email already exists", field="email")
            if phone and existing.phone == phone:
                raise ConstraintViolation("phone already exists", field="phone")
            if auth0_id and existing.auth0_id == auth0_id:
                raise ConstraintViolation("external identity already linked", field="auth0_id")

    # snapshot persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    @staticmethod
    def _serialize_user(user: User) -> dict:
        data = asdict(user)
        data["role"] = user.role.value
        data["status"] = user.status.value
        for key in _DATETIME_FIELDS:
            value = data.get(key)
            data[key] = value.isoformat() if value else None
        return data

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        values = dict(data)
        values["role"] = UserRole(values["role"])
        values["status"] = UserStatus(values["status"])
        for key in _DATETIME_FIELDS:
            raw = values.get(key)
            values[key] = datetime.fromisoformat(raw) if raw else None
        if values["created_at"] is None:
            values["created_at"] = utcnow()
        if values["updated_at"] is None:
            values["updated_at"] = values["created_at"]
        return User(**values)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True
