"""Tests for password strength rules and argon2 hashing."""

import pytest

from fixrx.service.passwords import PasswordHasher, PasswordPolicy


@pytest.fixture
def policy():
    return PasswordPolicy()


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


class TestPasswordPolicy:
    def test_accepts_strong_password(self, policy):
        result = policy.validate("Str0ng!Passw0rd")
        assert result.valid
        assert result.reason is None

    @pytest.mark.parametrize(
        "password, reason",
        [
            ("Sh0rt!a", "Password must be at least 8 characters long"),
            ("UPPER123!", "Password must contain at least one lowercase letter"),
            ("lower123!", "Password must contain at least one uppercase letter"),
            ("NoDigits!!", "Password must contain at least one number"),
            ("NoSpecial123", "Password must contain at least one special character (@$!%*?&)"),
        ],
    )
    def test_names_the_single_broken_rule(self, policy, password, reason):
        result = policy.validate(password)
        assert not result.valid
        assert result.reason == reason

    def test_reports_first_failure_only(self, policy):
        """A password breaking several rules reports the earliest one."""
        result = policy.validate("abc")
        assert result.reason == "Password must be at least 8 characters long"

    def test_common_password_rejected_case_insensitively(self):
        # Denylisted values already fail a character rule under the default rules
        policy = PasswordPolicy()
        assert policy.validate("Password").reason == (
            "Password must contain at least one number"
        )
        custom = PasswordPolicy(
            rules=PasswordPolicy().rules[:1] + PasswordPolicy().rules[-1:]
        )
        assert custom.validate("ADMIN123").reason == (
            "Password is too common. Please choose a stronger password"
        )

    def test_non_string_is_invalid(self, policy):
        assert not policy.validate(None).valid


class TestPasswordHasher:
    async def test_hash_and_verify(self, hasher):
        digest = await hasher.hash("Str0ng!Passw0rd")
        assert digest.startswith("$argon2id$")
        assert await hasher.verify(digest, "Str0ng!Passw0rd")
        assert not await hasher.verify(digest, "wrong-password")

    async def test_hashes_are_salted(self, hasher):
        first = await hasher.hash("Str0ng!Passw0rd")
        second = await hasher.hash("Str0ng!Passw0rd")
        assert first != second

    def test_garbage_hash_does_not_verify(self, hasher):
        assert hasher.verify_sync("not-a-hash", "anything") is False
