from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tenantauth.logging import get_logger
from tenantauth.service import events as ev
from tenantauth.service.errors import AccountLocked, InvalidCredentials, TenantInactive
from tenantauth.service.events import DomainEvents
from tenantauth.service.interfaces import AccountRepository, Clock, TenantDirectory
from tenantauth.service.lockout import (
    DEFAULT_LOCKOUT_MINUTES,
    DEFAULT_LOGIN_ATTEMPTS,
    LockoutPolicy,
)
from tenantauth.service.passwords import PasswordPolicyEngine
from tenantauth.storage.errors import InvalidTenantKey
from tenantauth.storage.models import Account, AccountScope, Tenant, utcnow

logger = get_logger(__name__)


@dataclass
class ValidatedLogin:
    account: Account
    scope: AccountScope
    tenant: Optional[Tenant] = None


class CredentialValidator:
    """Resolves an account in its partition and checks the password under lockout rules."""

    def __init__(
        self,
        accounts: AccountRepository,
        tenants: TenantDirectory,
        passwords: PasswordPolicyEngine,
        *,
        events: Optional[DomainEvents] = None,
        clock: Optional[Clock] = None,
        default_attempts: int = DEFAULT_LOGIN_ATTEMPTS,
        default_lockout_minutes: int = DEFAULT_LOCKOUT_MINUTES,
    ) -> None:
        self.accounts = accounts
        self.tenants = tenants
        self.passwords = passwords
        self.events = events or DomainEvents()
        self._clock = clock or utcnow
        self._default_attempts = default_attempts
        self._default_lockout_minutes = default_lockout_minutes

    def resolve_scope(self, tenant_ref: Optional[str]) -> tuple[AccountScope, Optional[Tenant]]:
        """Map an optional tenant reference to an account partition.

        Absent and inactive tenants fail identically.
        """
        if not tenant_ref:
            return AccountScope.system(), None
        tenant = self.tenants.resolve_tenant(tenant_ref)
        if not tenant or not tenant.is_active:
            logger.info("tenant_rejected", tenant_found=tenant is not None)
            raise TenantInactive()
        try:
            return AccountScope.for_tenant(tenant), tenant
        except InvalidTenantKey:
            logger.error("tenant_schema_name_invalid", tenant_id=tenant.id)
            raise TenantInactive()

    def lockout_policy(self, tenant: Optional[Tenant]) -> LockoutPolicy:
        return LockoutPolicy.for_settings(
            tenant.auth_settings if tenant else None,
            default_attempts=self._default_attempts,
            default_minutes=self._default_lockout_minutes,
        )

    def validate(
        self, identity: str, password: str, tenant_ref: Optional[str] = None
    ) -> ValidatedLogin:
        scope, tenant = self.resolve_scope(tenant_ref)
        account = self.accounts.get_account_by_identity(scope, identity)
        if account is None or not account.is_active:
            # Same cost and message whether the account is missing or disabled
            self.passwords.burn_verification(password)
            self.events.emit(ev.LOGIN_FAILED, scope=scope.tag, reason="unknown_account")
            raise InvalidCredentials()

        now = self._clock()
        policy = self.lockout_policy(tenant)
        locked_until = self.accounts.lock_if_threshold_reached(
            scope,
            account.id,
            threshold=policy.threshold,
            locked_until=policy.lockout_expiry(now),
            now=now,
        )
        if locked_until is not None:
            logger.warning("login_refused_locked", account_id=account.id, scope=scope.tag)
            self.events.emit(
                ev.ACCOUNT_LOCKED,
                account_id=account.id,
                scope=scope.tag,
                locked_until=locked_until.isoformat(),
            )
            raise AccountLocked(locked_until)

        if not self.passwords.verify(account.password_hash, password):
            attempts = self.accounts.register_failed_login(scope, account.id, now=now)
            logger.info(
                "login_failed_password",
                account_id=account.id,
                scope=scope.tag,
                attempts=attempts,
                threshold_reached=policy.should_lock(attempts),
            )
            self.events.emit(
                ev.LOGIN_FAILED, account_id=account.id, scope=scope.tag, attempts=attempts
            )
            raise InvalidCredentials()

        self.accounts.register_successful_login(scope, account.id, now=now)
        account.failed_login_attempts = 0
        account.is_locked = False
        account.locked_until = None
        account.last_login_at = now
        return ValidatedLogin(account=account, scope=scope, tenant=tenant)

    def verify_current_password(self, account: Account, password: str) -> None:
        """Re-authentication for sensitive changes; does not touch lockout counters."""
        if not self.passwords.verify(account.password_hash, password):
            raise InvalidCredentials("Current password is incorrect")
