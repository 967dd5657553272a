"""Password strength, reuse and expiry rules."""

from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.service.errors import (
    ErrorKind,
    PasswordPolicyViolation,
    PasswordReuseViolation,
)
from tenantauth.service.passwords import DEFAULT_HISTORY_COUNT, PasswordPolicyEngine
from tenantauth.storage.models import PasswordPolicy


@pytest.fixture(scope="module")
def engine():
    return PasswordPolicyEngine()


class TestValidate:
    def test_strong_password_passes_default_policy(self, engine):
        engine.validate("Sturdy-Pass-42")

    def test_every_failed_rule_is_reported(self, engine):
        with pytest.raises(PasswordPolicyViolation) as exc_info:
            engine.validate("short")
        reasons = exc_info.value.reasons
        assert len(reasons) == 4
        assert any("at least 8 characters" in r for r in reasons)
        assert any("uppercase" in r for r in reasons)
        assert any("number" in r for r in reasons)
        assert any("special character" in r for r in reasons)
        assert exc_info.value.kind == ErrorKind.PASSWORD_POLICY_VIOLATION
        assert exc_info.value.detail == {"reasons": reasons}

    def test_tenant_policy_overrides_defaults(self, engine):
        policy = PasswordPolicy(min_length=12, require_special_chars=False)
        engine.validate("Abcdefgh1234", policy)
        with pytest.raises(PasswordPolicyViolation) as exc_info:
            engine.validate("Abcdefg123", policy)
        assert exc_info.value.reasons == ["Password must be at least 12 characters long"]


class TestHashing:
    def test_verify_round_trip(self, engine):
        hashed = engine.hash("Sturdy-Pass-42")
        assert hashed.startswith("$argon2id$")
        assert engine.verify(hashed, "Sturdy-Pass-42")
        assert not engine.verify(hashed, "sturdy-pass-42")

    def test_verify_rejects_garbage_and_missing_hash(self, engine):
        assert not engine.verify("not-a-hash", "Sturdy-Pass-42")
        assert not engine.verify(None, "Sturdy-Pass-42")


class TestReuse:
    def test_history_limit_defaults_when_reuse_prevented(self):
        assert PasswordPolicyEngine.history_limit(None) == 0
        assert (
            PasswordPolicyEngine.history_limit(PasswordPolicy(prevent_password_reuse=True))
            == DEFAULT_HISTORY_COUNT
        )
        assert PasswordPolicyEngine.history_limit(PasswordPolicy(password_history_count=3)) == 3

    def test_current_and_recent_passwords_are_rejected(self, engine):
        policy = PasswordPolicy(prevent_password_reuse=True, password_history_count=2)
        oldest = engine.hash("Oldest-Pass-1")
        older = engine.hash("Older-Pass-2")
        recent = engine.hash("Recent-Pass-3")
        current = engine.hash("Current-Pass-4")
        history = [oldest, older, recent]

        with pytest.raises(PasswordReuseViolation):
            engine.check_reuse("Current-Pass-4", current, history, policy)
        with pytest.raises(PasswordReuseViolation):
            engine.check_reuse("Older-Pass-2", current, history, policy)
        # Outside the newest two entries
        engine.check_reuse("Oldest-Pass-1", current, history, policy)
        engine.check_reuse("Brand-New-Pass-5", current, history, policy)

    def test_reuse_allowed_when_policy_does_not_prevent_it(self, engine):
        current = engine.hash("Current-Pass-4")
        engine.check_reuse("Current-Pass-4", current, [], PasswordPolicy())

    def test_next_history_keeps_newest_entries(self, engine):
        policy = PasswordPolicy(prevent_password_reuse=True, password_history_count=3)
        assert engine.next_history("d", ["a", "b", "c"], policy) == ["b", "c", "d"]
        assert engine.next_history("d", ["a"], policy) == ["a", "d"]
        assert engine.next_history("d", ["a", "b"], PasswordPolicy()) == []


class TestExpiry:
    def test_expiry_uses_policy_days(self):
        now = datetime(2026, 5, 1, tzinfo=timezone.utc)
        policy = PasswordPolicy(expiry_days=30)
        assert PasswordPolicyEngine.is_expired(now - timedelta(days=31), policy, now)
        assert not PasswordPolicyEngine.is_expired(now - timedelta(days=29), policy, now)

    def test_no_expiry_without_policy_days(self):
        now = datetime(2026, 5, 1, tzinfo=timezone.utc)
        assert not PasswordPolicyEngine.is_expired(now - timedelta(days=900), PasswordPolicy(), now)
        assert not PasswordPolicyEngine.is_expired(None, PasswordPolicy(expiry_days=1), now)
