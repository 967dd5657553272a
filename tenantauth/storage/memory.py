from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.common import SecretCipher
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    Account,
    AccountIdentity,
    AccountScope,
    AuthSettings,
    MfaMethod,
    RecoveryCode,
    RefreshToken,
    RevokedAccessToken,
    Role,
    RotationOutcome,
    Tenant,
    UserType,
    as_utc,
    utcnow,
)

_SYSTEM_PARTITION = "__system__"


def _partition(scope: AccountScope) -> str:
    if scope.is_tenant:
        if scope.tenant_key is None:
            raise ConstraintViolation("tenant scope without tenant key", {"tenant_id": scope.tenant_id})
        return scope.tenant_key.value
    return _SYSTEM_PARTITION


class MemoryStore:
    """In-process backing store for tests and local development.

    Implements every store port. All reads and writes go through one RLock so
    the conditional updates (lockout, rotation, recovery-code consumption) are
    atomic in the same way their SQL counterparts are.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.roles: Dict[Tuple[str, str], Role] = {}
        self.accounts: Dict[Tuple[str, str], Account] = {}
        self.identities: Dict[Tuple[str, str, str], AccountIdentity] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.revoked_access_tokens: Dict[str, RevokedAccessToken] = {}
        self.recovery_codes: Dict[Tuple[str, str], List[RecoveryCode]] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self._mfa_cipher = SecretCipher(mfa_encryption_key)

    # ------------------------------------------------------------------
    # Tenants and roles
    # ------------------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        schema_name: str,
        *,
        status: str = "active",
        auth_settings: Optional[AuthSettings] = None,
    ) -> Tenant:
        with self._data_lock:
            if any(t.schema_name == schema_name for t in self.tenants.values()):
                raise ConstraintViolation("tenant already exists", {"field": "schema_name"})
            tenant = Tenant(
                id=str(uuid.uuid4()),
                name=name,
                schema_name=schema_name,
                status=status,
                auth_settings=auth_settings or AuthSettings(),
            )
            # Validates the key before anything is stored
            tenant.key
            self.tenants[tenant.id] = tenant
            return copy.deepcopy(tenant)

    def set_tenant_status(self, tenant_id: str, status: str) -> None:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if tenant:
                tenant.status = status

    def resolve_tenant(self, reference: str) -> Optional[Tenant]:
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.schema_name == reference or tenant.id == reference:
                    return copy.deepcopy(tenant)
            return None

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return copy.deepcopy(tenant) if tenant else None

    def create_role(
        self,
        tenant: Tenant,
        name: str,
        permissions: Optional[List[str]] = None,
        *,
        is_default: bool = False,
    ) -> Role:
        with self._data_lock:
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                permissions=list(permissions or []),
                is_default=is_default,
            )
            self.roles[(tenant.key.value, role.id)] = role
            return copy.deepcopy(role)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _record(self, scope: AccountScope, account_id: str) -> Account:
        account = self.accounts.get((_partition(scope), account_id))
        if not account:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    def _export(self, scope: AccountScope, account: Account) -> Account:
        exported = copy.deepcopy(account)
        exported.mfa_secret = self._mfa_cipher.decrypt(account.mfa_secret)
        if scope.is_tenant and account.role_id:
            role = self.roles.get((_partition(scope), account.role_id))
            if role:
                exported.role = role.name
                exported.permissions = list(role.permissions)
        return exported

    def create_account(self, scope: AccountScope, account: Account) -> Account:
        with self._data_lock:
            partition = _partition(scope)
            for (part, _), existing in self.accounts.items():
                if part != partition:
                    continue
                if existing.email.lower() == account.email.lower():
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == account.username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
            stored = copy.deepcopy(account)
            stored.user_type = scope.user_type
            stored.tenant_id = scope.tenant_id
            stored.mfa_secret = self._mfa_cipher.encrypt(account.mfa_secret)
            self.accounts[(partition, stored.id)] = stored
            return self._export(scope, stored)

    def get_account(self, scope: AccountScope, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get((_partition(scope), account_id))
            return self._export(scope, account) if account else None

    def get_account_by_identity(
        self, scope: AccountScope, identity: str
    ) -> Optional[Account]:
        needle = identity.strip().lower()
        with self._data_lock:
            partition = _partition(scope)
            for (part, _), account in self.accounts.items():
                if part == partition and (
                    account.email.lower() == needle or account.username.lower() == needle
                ):
                    return self._export(scope, account)
            return None

    def get_account_by_reset_token(
        self, scope: AccountScope, token_hash: str
    ) -> Optional[Account]:
        with self._data_lock:
            partition = _partition(scope)
            for (part, _), account in self.accounts.items():
                if part == partition and account.reset_token_hash == token_hash:
                    return self._export(scope, account)
            return None

    def lock_if_threshold_reached(
        self,
        scope: AccountScope,
        account_id: str,
        *,
        threshold: int,
        locked_until: datetime,
        now: datetime,
    ) -> Optional[datetime]:
        with self._data_lock:
            account = self._record(scope, account_id)
            current_lock = as_utc(account.locked_until)
            if current_lock is not None and current_lock > now:
                # A window in force holds whatever the current threshold is
                account.failed_login_attempts += 1
                account.is_locked = True
                return current_lock
            if account.failed_login_attempts < threshold:
                return None
            if current_lock is not None:
                # Lockout window elapsed; the next password check decides
                return None
            account.failed_login_attempts += 1
            account.is_locked = True
            account.locked_until = locked_until
            return locked_until

    def register_failed_login(
        self, scope: AccountScope, account_id: str, *, now: datetime
    ) -> int:
        with self._data_lock:
            account = self._record(scope, account_id)
            account.failed_login_attempts += 1
            current_lock = as_utc(account.locked_until)
            if current_lock is not None and current_lock <= now:
                account.locked_until = None
                account.is_locked = False
            return account.failed_login_attempts

    def register_successful_login(
        self, scope: AccountScope, account_id: str, *, now: datetime
    ) -> None:
        with self._data_lock:
            account = self._record(scope, account_id)
            account.failed_login_attempts = 0
            account.is_locked = False
            account.locked_until = None
            account.last_login_at = now

    def update_password(
        self,
        scope: AccountScope,
        account_id: str,
        password_hash: str,
        history: Sequence[str],
        *,
        changed_at: datetime,
    ) -> None:
        with self._data_lock:
            account = self._record(scope, account_id)
            account.password_hash = password_hash
            account.password_history = list(history)
            account.password_changed_at = changed_at
            account.reset_token_hash = None
            account.reset_expires_at = None

    def set_reset_token(
        self,
        scope: AccountScope,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
    ) -> None:
        with self._data_lock:
            account = self._record(scope, account_id)
            account.reset_token_hash = token_hash
            account.reset_expires_at = expires_at

    def enable_mfa(
        self,
        scope: AccountScope,
        account_id: str,
        method: MfaMethod,
        *,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> None:
        with self._data_lock:
            account = self._record(scope, account_id)
            account.mfa_enabled = True
            account.mfa_method = method
            account.mfa_secret = self._mfa_cipher.encrypt(secret) if secret else None
            if phone_number:
                account.phone_number = phone_number

    def disable_mfa(self, scope: AccountScope, account_id: str) -> None:
        with self._data_lock:
            account = self._record(scope, account_id)
            account.mfa_enabled = False
            account.mfa_method = None
            account.mfa_secret = None

    def get_identity(
        self, scope: AccountScope, provider: str, subject: str
    ) -> Optional[AccountIdentity]:
        with self._data_lock:
            found = self.identities.get((_partition(scope), provider, subject))
            return copy.deepcopy(found) if found else None

    def link_identity(
        self, scope: AccountScope, provider: str, subject: str, account_id: str
    ) -> None:
        with self._data_lock:
            key = (_partition(scope), provider, subject)
            # Same as ON CONFLICT DO NOTHING
            if key not in self.identities:
                self.identities[key] = AccountIdentity(
                    provider=provider, subject=subject, account_id=account_id
                )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def save_refresh_token(self, token: RefreshToken) -> None:
        with self._data_lock:
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.token_hash] = copy.deepcopy(token)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            return copy.deepcopy(token) if token else None

    def rotate_refresh_token(
        self, old_hash: str, replacement: RefreshToken, *, now: datetime
    ) -> RotationOutcome:
        with self._data_lock:
            current = self.refresh_tokens.get(old_hash)
            if current is None:
                return RotationOutcome(False, "missing")
            if current.revoked:
                return RotationOutcome(False, "revoked")
            if as_utc(current.expires_at) <= now:
                current.revoked = True
                current.revoked_at = now
                return RotationOutcome(False, "expired")
            current.revoked = True
            current.revoked_at = now
            self.refresh_tokens[replacement.token_hash] = copy.deepcopy(replacement)
            return RotationOutcome(True)

    def revoke_refresh_tokens(
        self,
        account_id: str,
        user_type: UserType,
        tenant_id: Optional[str],
        *,
        now: datetime,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if (
                    token.account_id == account_id
                    and token.user_type == user_type
                    and token.tenant_id == tenant_id
                    and not token.revoked
                ):
                    token.revoked = True
                    token.revoked_at = now
                    revoked += 1
            return revoked

    def save_revoked_access_token(self, entry: RevokedAccessToken) -> None:
        with self._data_lock:
            # Same as ON CONFLICT (jti) DO NOTHING
            self.revoked_access_tokens.setdefault(entry.jti, copy.deepcopy(entry))

    def get_revoked_access_token(self, jti: str) -> Optional[RevokedAccessToken]:
        with self._data_lock:
            entry = self.revoked_access_tokens.get(jti)
            return copy.deepcopy(entry) if entry else None

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def replace_recovery_codes(
        self, scope: AccountScope, account_id: str, code_hashes: Sequence[str]
    ) -> None:
        with self._data_lock:
            self.recovery_codes[(_partition(scope), account_id)] = [
                RecoveryCode(id=str(uuid.uuid4()), account_id=account_id, code_hash=h)
                for h in code_hashes
            ]

    def consume_recovery_code(
        self, scope: AccountScope, account_id: str, code_hash: str, *, now: datetime
    ) -> bool:
        with self._data_lock:
            for code in self.recovery_codes.get((_partition(scope), account_id), []):
                if code.code_hash == code_hash and not code.used:
                    code.used = True
                    code.used_at = now
                    return True
            return False

    def delete_recovery_codes(self, scope: AccountScope, account_id: str) -> None:
        with self._data_lock:
            self.recovery_codes.pop((_partition(scope), account_id), None)

    def count_unused_recovery_codes(self, scope: AccountScope, account_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for code in self.recovery_codes.get((_partition(scope), account_id), [])
                if not code.used
            )


class MemoryCache:
    """Single-process stand-in for RedisCache.

    Only valid for tests and local development: MFA sessions kept here are not
    visible to other instances. Expiry is evaluated against the injected clock.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or utcnow
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (
                value,
                self._clock() + timedelta(seconds=max(1, int(ttl_seconds))),
            )

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        with self._lock:
            if self._live(key) != expected:
                return False
            self._entries.pop(key, None)
            return True

    async def record_mfa_failure(
        self, subject: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        lockout_key = f"mfa:lockout:{subject}"
        attempts_key = f"mfa:attempts:{subject}"
        with self._lock:
            if self._live(lockout_key) is not None:
                return True, -1
            attempts = int(self._live(attempts_key) or 0) + 1
            expires_at = self._clock() + timedelta(seconds=lockout_seconds)
            if attempts >= max_attempts:
                self._entries[lockout_key] = ("1", expires_at)
                self._entries.pop(attempts_key, None)
                return True, attempts
            self._entries[attempts_key] = (str(attempts), expires_at)
            return False, attempts

    async def is_mfa_locked(self, subject: str) -> bool:
        with self._lock:
            return self._live(f"mfa:lockout:{subject}") is not None

    async def clear_mfa_failures(self, subject: str) -> None:
        with self._lock:
            self._entries.pop(f"mfa:attempts:{subject}", None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
