from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger
from tenantauth.service.errors import PasswordPolicyViolation, PasswordReuseViolation
from tenantauth.storage.models import PasswordPolicy, as_utc

logger = get_logger(__name__)

DEFAULT_POLICY = PasswordPolicy()
# History kept when reuse prevention is on but the tenant gave no count
DEFAULT_HISTORY_COUNT = 5

_SPECIAL = re.compile(r"[^A-Za-z0-9]")


class PasswordPolicyEngine:
    """Password strength, reuse and expiry rules, plus argon2id hashing."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when an account is missing so timing stays uniform
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def burn_verification(self, password: str) -> None:
        self.verify(self._dummy_hash, password)

    def validate(self, candidate: str, policy: Optional[PasswordPolicy] = None) -> None:
        """Raise PasswordPolicyViolation listing every failed rule."""
        policy = policy or DEFAULT_POLICY
        reasons: List[str] = []
        if len(candidate) < policy.min_length:
            reasons.append(f"Password must be at least {policy.min_length} characters long")
        if policy.require_uppercase and not re.search(r"[A-Z]", candidate):
            reasons.append("Password must contain at least one uppercase letter")
        if policy.require_lowercase and not re.search(r"[a-z]", candidate):
            reasons.append("Password must contain at least one lowercase letter")
        if policy.require_numbers and not re.search(r"\d", candidate):
            reasons.append("Password must contain at least one number")
        if policy.require_special_chars and not _SPECIAL.search(candidate):
            reasons.append("Password must contain at least one special character")
        if reasons:
            raise PasswordPolicyViolation(reasons)

    @staticmethod
    def history_limit(policy: Optional[PasswordPolicy]) -> int:
        policy = policy or DEFAULT_POLICY
        if policy.password_history_count and policy.password_history_count > 0:
            return policy.password_history_count
        return DEFAULT_HISTORY_COUNT if policy.prevent_password_reuse else 0

    def check_reuse(
        self,
        candidate: str,
        current_hash: Optional[str],
        history: Sequence[str],
        policy: Optional[PasswordPolicy] = None,
    ) -> None:
        policy = policy or DEFAULT_POLICY
        if not policy.prevent_password_reuse:
            return
        limit = self.history_limit(policy)
        recent = list(history)[-limit:] if limit else []
        for previous in [current_hash, *reversed(recent)]:
            if previous and self.verify(previous, candidate):
                raise PasswordReuseViolation()

    def next_history(
        self,
        previous_hash: Optional[str],
        history: Sequence[str],
        policy: Optional[PasswordPolicy] = None,
    ) -> List[str]:
        """Append the outgoing hash and keep only the newest entries (oldest first)."""
        updated = list(history)
        if previous_hash:
            updated.append(previous_hash)
        limit = self.history_limit(policy)
        if limit <= 0:
            return []
        return updated[-limit:]

    @staticmethod
    def is_expired(
        password_changed_at: Optional[datetime],
        policy: Optional[PasswordPolicy],
        now: datetime,
    ) -> bool:
        if not policy or not policy.expiry_days or password_changed_at is None:
            return False
        return as_utc(password_changed_at) + timedelta(days=policy.expiry_days) <= now
