"""Capability interfaces the auth core runs against.

Stores are synchronous (one pooled connection per call); the cache is async,
mirroring the Redis client. Every account-level call takes an AccountScope so
tenant partitions are always addressed through a validated TenantKey.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol, Sequence

from tenantauth.storage.models import (
    Account,
    AccountIdentity,
    AccountScope,
    MfaMethod,
    RefreshToken,
    RevokedAccessToken,
    RotationOutcome,
    Tenant,
    UserType,
)

Clock = Callable[[], datetime]


class AccountRepository(Protocol):
    def get_account(self, scope: AccountScope, account_id: str) -> Optional[Account]: ...

    def get_account_by_identity(
        self, scope: AccountScope, identity: str
    ) -> Optional[Account]: ...

    def get_account_by_reset_token(
        self, scope: AccountScope, token_hash: str
    ) -> Optional[Account]: ...

    def lock_if_threshold_reached(
        self,
        scope: AccountScope,
        account_id: str,
        *,
        threshold: int,
        locked_until: datetime,
        now: datetime,
    ) -> Optional[datetime]: ...

    def register_failed_login(
        self, scope: AccountScope, account_id: str, *, now: datetime
    ) -> int: ...

    def register_successful_login(
        self, scope: AccountScope, account_id: str, *, now: datetime
    ) -> None: ...

    def update_password(
        self,
        scope: AccountScope,
        account_id: str,
        password_hash: str,
        history: Sequence[str],
        *,
        changed_at: datetime,
    ) -> None: ...

    def set_reset_token(
        self,
        scope: AccountScope,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
    ) -> None: ...

    def enable_mfa(
        self,
        scope: AccountScope,
        account_id: str,
        method: MfaMethod,
        *,
        secret: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> None: ...

    def disable_mfa(self, scope: AccountScope, account_id: str) -> None: ...

    def create_account(self, scope: AccountScope, account: Account) -> Account: ...

    def get_identity(
        self, scope: AccountScope, provider: str, subject: str
    ) -> Optional[AccountIdentity]: ...

    def link_identity(
        self, scope: AccountScope, provider: str, subject: str, account_id: str
    ) -> None: ...


class TenantDirectory(Protocol):
    def resolve_tenant(self, reference: str) -> Optional[Tenant]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...


class TokenStore(Protocol):
    def save_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, old_hash: str, replacement: RefreshToken, *, now: datetime
    ) -> RotationOutcome: ...

    def revoke_refresh_tokens(
        self,
        account_id: str,
        user_type: UserType,
        tenant_id: Optional[str],
        *,
        now: datetime,
    ) -> int: ...

    def save_revoked_access_token(self, entry: RevokedAccessToken) -> None: ...

    def get_revoked_access_token(self, jti: str) -> Optional[RevokedAccessToken]: ...


class RecoveryCodeRepository(Protocol):
    def replace_recovery_codes(
        self, scope: AccountScope, account_id: str, code_hashes: Sequence[str]
    ) -> None: ...

    def consume_recovery_code(
        self, scope: AccountScope, account_id: str, code_hash: str, *, now: datetime
    ) -> bool: ...

    def delete_recovery_codes(self, scope: AccountScope, account_id: str) -> None: ...

    def count_unused_recovery_codes(
        self, scope: AccountScope, account_id: str
    ) -> int: ...


class Cache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def delete_if_equals(self, key: str, expected: str) -> bool: ...

    async def record_mfa_failure(
        self, subject: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]: ...

    async def is_mfa_locked(self, subject: str) -> bool: ...

    async def clear_mfa_failures(self, subject: str) -> None: ...


class Notifier(Protocol):
    def send_code(
        self, channel: MfaMethod, destination: str, code: str, *, purpose: str
    ) -> None: ...

    def send_password_reset(self, email: str, link: str) -> None: ...


class AuthStore(
    AccountRepository, TenantDirectory, TokenStore, RecoveryCodeRepository, Protocol
):
    """Everything a single backing store provides."""


__all__: List[str] = [
    "AccountRepository",
    "AuthStore",
    "Cache",
    "Clock",
    "Notifier",
    "RecoveryCodeRepository",
    "TenantDirectory",
    "TokenStore",
]
