"""Tests for the admin bootstrap script."""

import importlib.util
from pathlib import Path

import pytest

from fixrx.config import reset_settings_cache
from fixrx.storage.memory import MemoryStore
from fixrx.storage.models import UserRole, UserStatus

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("ARGON2_TIME_COST", "1")
    monkeypatch.setenv("ARGON2_MEMORY_COST", "1024")
    monkeypatch.setenv("ARGON2_PARALLELISM", "1")
    reset_settings_cache()
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


class TestBootstrapAdmin:
    def test_creates_active_verified_admin(self, bootstrap, tmp_path):
        result = bootstrap("Root@Example.com", "Str0ng!Passw0rd")
        assert result["status"] == "created"
        user = MemoryStore(fs_root=str(tmp_path)).get_user(result["user_id"])
        assert user.email == "root@example.com"
        assert user.role == UserRole.ADMIN
        assert user.status == UserStatus.ACTIVE
        assert user.email_verified

    def test_second_run_is_a_no_op(self, bootstrap):
        first = bootstrap("root@example.com", "Str0ng!Passw0rd")
        second = bootstrap("root@example.com", "Str0ng!Passw0rd")
        assert second == {"user_id": first["user_id"], "email": "root@example.com", "status": "already_admin"}

    def test_existing_non_admin_is_reported(self, bootstrap, tmp_path):
        MemoryStore(fs_root=str(tmp_path)).create_user("root@example.com", password_hash="h")
        assert bootstrap("root@example.com", "Str0ng!Passw0rd")["status"] == "conflict"

    def test_dry_run_creates_nothing(self, bootstrap, tmp_path):
        assert bootstrap("root@example.com", "Str0ng!Passw0rd", dry_run=True)["status"] == "dry_run"
        assert MemoryStore(fs_root=str(tmp_path)).list_users() == []

    def test_weak_password_rejected(self, bootstrap):
        with pytest.raises(ValueError):
            bootstrap("root@example.com", "weak")
