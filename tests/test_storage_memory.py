"""Tests for the in-memory user store."""

import pytest

from fixrx.storage.errors import ConstraintViolation
from fixrx.storage.memory import MemoryStore
from fixrx.storage.models import UserRole, UserStatus


class TestCreateUser:
    def test_requires_a_credential(self, store):
        with pytest.raises(ValueError):
            store.create_user("a@example.com")

    def test_email_is_normalized_and_unique(self, store):
        user = store.create_user("  Ann@Example.COM ", password_hash="h")
        assert user.email == "ann@example.com"
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("ann@example.com", password_hash="h")
        assert exc_info.value.field == "email"

    def test_phone_and_external_id_unique(self, store):
        store.create_user("a@example.com", password_hash="h", phone="+15551234567", auth0_id="google-1")
        with pytest.raises(ConstraintViolation):
            store.create_user("b@example.com", password_hash="h", phone="+15551234567")
        with pytest.raises(ConstraintViolation):
            store.create_user("c@example.com", auth0_id="google-1")

    def test_defaults(self, store):
        user = store.create_user("a@example.com", password_hash="h")
        assert user.role == UserRole.CONSUMER
        assert user.status == UserStatus.PENDING_VERIFICATION
        assert not user.email_verified


class TestLookupAndUpdate:
    def test_lookups(self, store):
        user = store.create_user("a@example.com", password_hash="h", phone="+15551234567", auth0_id="auth0|x")
        assert store.get_user(user.id).email == "a@example.com"
        assert store.get_user_by_email("A@EXAMPLE.COM").id == user.id
        assert store.get_user_by_phone("+15551234567").id == user.id
        assert store.get_user_by_auth0_id("auth0|x").id == user.id
        assert store.get_user("missing") is None

    def test_find_by_identity_prefers_provider_id(self, store):
        linked = store.create_user("linked@example.com", auth0_id="google-1")
        other = store.create_user("other@example.com", password_hash="h")
        assert store.find_user_by_identity(auth0_id="google-1", email="other@example.com").id == linked.id
        assert store.find_user_by_identity(auth0_id="google-2", email="other@example.com").id == other.id
        assert store.find_user_by_identity() is None

    def test_returned_users_are_copies(self, store):
        user = store.create_user("a@example.com", password_hash="h")
        user.status = UserStatus.SUSPENDED
        assert store.get_user(user.id).status == UserStatus.PENDING_VERIFICATION

    def test_update_user(self, store):
        user = store.create_user("a@example.com", password_hash="h")
        updated = store.update_user(user.id, status="ACTIVE", email_verified=True)
        assert updated.status == UserStatus.ACTIVE
        assert updated.email_verified
        assert updated.updated_at >= user.updated_at
        assert store.update_user("missing", status="ACTIVE") is None

    def test_role_and_email_are_not_updatable(self, store):
        user = store.create_user("a@example.com", password_hash="h")
        with pytest.raises(ValueError):
            store.update_user(user.id, role=UserRole.ADMIN)
        with pytest.raises(ValueError):
            store.update_user(user.id, email="b@example.com")

    def test_update_cannot_strip_last_credential(self, store):
        user = store.create_user("a@example.com", password_hash="h")
        with pytest.raises(ValueError):
            store.update_user(user.id, password_hash=None)

    def test_update_phone_conflict(self, store):
        store.create_user("a@example.com", password_hash="h", phone="+15551234567")
        other = store.create_user("b@example.com", password_hash="h")
        with pytest.raises(ConstraintViolation):
            store.update_user(other.id, phone="+15551234567")


class TestSnapshot:
    def test_users_survive_restart(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        user = first.create_user("a@example.com", password_hash="h", role=UserRole.VENDOR)
        first.update_user(user.id, status=UserStatus.ACTIVE)

        reloaded = MemoryStore(fs_root=str(tmp_path)).get_user(user.id)
        assert reloaded.email == "a@example.com"
        assert reloaded.role == UserRole.VENDOR
        assert reloaded.status == UserStatus.ACTIVE
        assert reloaded.created_at == user.created_at
