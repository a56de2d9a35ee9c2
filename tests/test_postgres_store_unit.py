from contextlib import contextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from fixrx.storage.models import UserRole, UserStatus
from fixrx.storage.postgres import PostgresStore, _constraint_violation


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class RecordingConnection:
    def __init__(self, row):
        self.row = row
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((query, params))
        return SimpleNamespace(fetchone=lambda: self.row, fetchall=lambda: [self.row])


class RecordingPool:
    def __init__(self, row):
        self.conn = RecordingConnection(row)

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unused"
    return store


def _row(**overrides):
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": "0b6f3c2e-8d0e-4d8a-9d43-1f7b5a0c9e11",
        "email": "ann@example.com",
        "role": "VENDOR",
        "status": "ACTIVE",
        "password_hash": "$argon2id$x",
        "auth0_id": None,
        "phone": None,
        "first_name": "Ann",
        "last_name": None,
        "avatar": None,
        "email_verified": True,
        "phone_verified": False,
        "created_at": now,
        "updated_at": now,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_row_to_user_maps_enums():
    user = PostgresStore._row_to_user(_row())
    assert user.role == UserRole.VENDOR
    assert user.status == UserStatus.ACTIVE
    assert user.email_verified is True


def test_get_user_with_malformed_id_skips_database():
    store = _store(DummyPool())
    assert store.get_user("not-a-uuid") is None


def test_update_rejects_unknown_fields_before_querying():
    store = _store(DummyPool())
    with pytest.raises(ValueError):
        store.update_user("0b6f3c2e-8d0e-4d8a-9d43-1f7b5a0c9e11", role="ADMIN")


def test_create_requires_credential_before_querying():
    store = _store(DummyPool())
    with pytest.raises(ValueError):
        store.create_user("ann@example.com")


def test_update_passes_values_then_id():
    pool = RecordingPool(_row(status="SUSPENDED"))
    store = _store(pool)
    user = store.update_user(
        "0b6f3c2e-8d0e-4d8a-9d43-1f7b5a0c9e11", status=UserStatus.SUSPENDED, first_name="Ann"
    )
    assert user.status == UserStatus.SUSPENDED
    _, params = pool.conn.executed[0]
    assert params == ("SUSPENDED", "Ann", "0b6f3c2e-8d0e-4d8a-9d43-1f7b5a0c9e11")


def test_create_normalizes_email():
    pool = RecordingPool(_row())
    store = _store(pool)
    store.create_user(" Ann@Example.com ", password_hash="$argon2id$x", role=UserRole.VENDOR)
    _, params = pool.conn.executed[0]
    assert params[1] == "ann@example.com"
    assert params[2] == "VENDOR"


@pytest.mark.parametrize(
    "constraint, field",
    [("users_email_key", "email"), ("users_phone_key", "phone"), ("users_auth0_id_key", "auth0_id")],
)
def test_unique_violation_names_field(constraint, field):
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))
    violation = _constraint_violation(exc)
    assert violation.field == field
    assert violation.detail == {"field": field}
