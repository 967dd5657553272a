from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service import events as ev
from tenantauth.service.credentials import CredentialValidator
from tenantauth.service.errors import (
    ForbiddenError,
    InvalidCredentials,
    MfaRequired,
    NotFoundError,
    TenantInactive,
    TokenInvalid,
    ValidationError,
)
from tenantauth.service.events import DomainEvents
from tenantauth.service.interfaces import AuthStore, Clock, Notifier
from tenantauth.service.mfa import MfaChallenge, MfaCompletion, MfaSessionManager, MfaSetupResult
from tenantauth.service.passwords import PasswordPolicyEngine
from tenantauth.service.tokens import AuthContext, ClientMeta, TokenLifecycleManager, TokenPair
from tenantauth.storage.common import digest
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    Account,
    AccountScope,
    MfaMethod,
    PasswordPolicy,
    Tenant,
    UserType,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = "If your email is registered, you will receive a password reset link"
OVERRIDE_MFA_PERMISSION = "admin:override_mfa"


@dataclass
class ExternalIdentity:
    """An identity already verified by an OAuth provider collaborator."""

    provider: str
    subject: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass
class LoginResult:
    tokens: Optional[TokenPair] = None
    account: Optional[Account] = None
    mfa: Optional[MfaChallenge] = None
    mfa_setup_required: bool = False
    password_expired: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def requires_mfa(self) -> bool:
        return self.mfa is not None

    def require_tokens(self) -> TokenPair:
        """Tokens for callers that cannot continue an MFA challenge."""
        if self.mfa is not None:
            raise MfaRequired(
                detail={"mfa_session_id": self.mfa.session_id, "mfa_methods": list(self.mfa.methods)}
            )
        return self.tokens

    def to_dict(self) -> Dict[str, Any]:
        if self.mfa is not None:
            return self.mfa.to_dict()
        body: Dict[str, Any] = dict(self.tokens.to_dict()) if self.tokens else {}
        if self.account is not None:
            body["user"] = self.account.to_public()
        if self.mfa_setup_required:
            body["mfaSetupRequired"] = True
        if self.password_expired:
            body["passwordExpired"] = True
        if self.warnings:
            body["warnings"] = list(self.warnings)
        return body


class AuthService:
    """Entry points for login, token, password and MFA flows across both account scopes."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        credentials: CredentialValidator,
        passwords: PasswordPolicyEngine,
        tokens: TokenLifecycleManager,
        mfa: MfaSessionManager,
        notifier: Notifier,
        *,
        events: Optional[DomainEvents] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.passwords = passwords
        self.tokens = tokens
        self.mfa = mfa
        self.notifier = notifier
        self.events = events or DomainEvents()
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _policy(tenant: Optional[Tenant]) -> Optional[PasswordPolicy]:
        if tenant is None:
            return None
        return tenant.auth_settings.password_policy

    def _account_for(self, ctx: AuthContext) -> tuple[Account, AccountScope, Optional[Tenant]]:
        tenant: Optional[Tenant] = None
        if ctx.user_type == UserType.TENANT:
            tenant = self.store.get_tenant(ctx.tenant_id or "")
            if tenant is None or not tenant.is_active:
                raise TenantInactive()
            scope = AccountScope.for_tenant(tenant)
        else:
            scope = AccountScope.system()
        account = self.store.get_account(scope, ctx.account_id)
        if account is None or not account.is_active:
            raise NotFoundError("User not found or inactive")
        return account, scope, tenant

    async def _complete_login(
        self,
        account: Account,
        scope: AccountScope,
        tenant: Optional[Tenant],
        client: Optional[ClientMeta],
    ) -> LoginResult:
        if account.mfa_enabled:
            challenge = await self.mfa.start_login(account, scope)
            return LoginResult(mfa=challenge)

        pair = self.tokens.issue(account, scope, tenant, client=client)
        self.events.emit(
            ev.LOGIN_SUCCESS,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
            mfa=False,
        )
        return self._token_result(pair, account, tenant)

    def _token_result(
        self, pair: TokenPair, account: Account, tenant: Optional[Tenant], warnings: Optional[List[str]] = None
    ) -> LoginResult:
        mfa_setup_required = bool(
            tenant is not None and tenant.auth_settings.mfa_required and not account.mfa_enabled
        )
        expired = self.passwords.is_expired(
            account.password_changed_at, self._policy(tenant), self._clock()
        )
        return LoginResult(
            tokens=pair,
            account=account,
            mfa_setup_required=mfa_setup_required,
            password_expired=expired,
            warnings=list(warnings or []),
        )

    def _apply_new_password(
        self,
        account: Account,
        scope: AccountScope,
        tenant: Optional[Tenant],
        new_password: str,
    ) -> None:
        policy = self._policy(tenant)
        self.passwords.validate(new_password, policy)
        self.passwords.check_reuse(
            new_password, account.password_hash, account.password_history, policy
        )
        history = self.passwords.next_history(
            account.password_hash, account.password_history, policy
        )
        self.store.update_password(
            scope,
            account.id,
            self.passwords.hash(new_password),
            history,
            changed_at=self._clock(),
        )
        self.tokens.revoke_all(account.id, scope.user_type, scope.tenant_id)

    # ------------------------------------------------------------------
    # Login and tokens
    # ------------------------------------------------------------------

    async def login(
        self,
        identity: str,
        password: str,
        tenant_ref: Optional[str] = None,
        *,
        client: Optional[ClientMeta] = None,
    ) -> LoginResult:
        validated = self.credentials.validate(identity, password, tenant_ref)
        return await self._complete_login(
            validated.account, validated.scope, validated.tenant, client
        )

    async def login_with_external_identity(
        self,
        identity: ExternalIdentity,
        tenant_ref: Optional[str] = None,
        *,
        client: Optional[ClientMeta] = None,
    ) -> LoginResult:
        scope, tenant = self.credentials.resolve_scope(tenant_ref)
        provider = identity.provider.lower()
        if tenant is not None and provider not in {
            p.lower() for p in tenant.auth_settings.allowed_oauth_providers
        }:
            raise ForbiddenError(f"{identity.provider} login is not enabled for this tenant")

        account: Optional[Account] = None
        link = self.store.get_identity(scope, provider, identity.subject)
        if link is not None:
            account = self.store.get_account(scope, link.account_id)
        if account is None and identity.email:
            account = self.store.get_account_by_identity(scope, identity.email)
        if account is None:
            if tenant is not None:
                # Tenant accounts are provisioned by the tenant, never on first login
                raise InvalidCredentials()
            account = self._provision_system_account(identity)
        if not account.is_active:
            raise InvalidCredentials()

        self.store.link_identity(scope, provider, identity.subject, account.id)
        self.store.register_successful_login(scope, account.id, now=self._clock())
        logger.info("external_identity_login", account_id=account.id, provider=provider)
        return await self._complete_login(account, scope, tenant, client)

    def _provision_system_account(self, identity: ExternalIdentity) -> Account:
        account = Account(
            id=str(uuid.uuid4()),
            email=identity.email,
            username=identity.email,
            # Random unusable password: the account signs in through the provider
            password_hash=self.passwords.hash(secrets.token_urlsafe(32)),
            user_type=UserType.SYSTEM,
            role="user",
            first_name=identity.first_name,
            last_name=identity.last_name,
            password_changed_at=self._clock(),
        )
        try:
            return self.store.create_account(AccountScope.system(), account)
        except ConstraintViolation:
            # Lost a race with a concurrent first login for the same email
            existing = self.store.get_account_by_identity(AccountScope.system(), identity.email)
            if existing is None:
                raise
            return existing

    async def verify_mfa_login(
        self, session_id: str, code: str, *, client: Optional[ClientMeta] = None
    ) -> LoginResult:
        done = await self.mfa.verify_login(session_id, code, client=client)
        return self._completion_result(done)

    async def use_recovery_code(
        self, session_id: str, code: str, *, client: Optional[ClientMeta] = None
    ) -> LoginResult:
        done = await self.mfa.use_recovery_code(session_id, code, client=client)
        return self._completion_result(done)

    def _completion_result(self, done: MfaCompletion) -> LoginResult:
        return self._token_result(done.tokens, done.account, done.tenant, done.warnings)

    async def resend_login_code(self, session_id: str) -> str:
        method = await self.mfa.resend_login_code(session_id)
        return f"Verification code sent to your {'phone' if method == MfaMethod.SMS else 'email'}"

    async def refresh(
        self, refresh_token: str, *, client: Optional[ClientMeta] = None
    ) -> TokenPair:
        return await self.tokens.rotate(refresh_token, client=client)

    async def authenticate(self, access_token: str) -> AuthContext:
        return await self.tokens.authenticate(access_token)

    async def logout(self, access_token: str) -> None:
        ctx = await self.tokens.authenticate(access_token)
        await self.tokens.revoke_access_token(ctx, reason="user_logout")
        self.tokens.revoke_all(ctx.account_id, ctx.user_type, ctx.tenant_id)
        self.events.emit(ev.USER_LOGOUT, account_id=ctx.account_id, tenant_id=ctx.tenant_id)

    async def current_account(self, ctx: AuthContext) -> Dict[str, Any]:
        account, _, _ = self._account_for(ctx)
        return account.to_public()

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str, tenant_ref: Optional[str] = None) -> str:
        try:
            scope, tenant = self.credentials.resolve_scope(tenant_ref)
        except TenantInactive:
            return RESET_REQUESTED_MESSAGE
        account = self.store.get_account_by_identity(scope, email)
        if account is None or not account.is_active:
            logger.info("password_reset_unknown_account", scope=scope.tag)
            return RESET_REQUESTED_MESSAGE

        token = secrets.token_urlsafe(32)
        expires_at = self._clock() + timedelta(hours=self.settings.password_reset_ttl_hours)
        self.store.set_reset_token(scope, account.id, digest(token), expires_at)
        params = {"token": token}
        if tenant is not None:
            params["tenant"] = tenant.schema_name
        link = f"{self.settings.app_base_url.rstrip('/')}/reset-password?{urlencode(params)}"
        self.notifier.send_password_reset(account.email, link)
        self.events.emit(
            ev.PASSWORD_RESET_REQUESTED,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
        )
        return RESET_REQUESTED_MESSAGE

    async def reset_password(
        self, token: str, new_password: str, tenant_ref: Optional[str] = None
    ) -> None:
        scope, tenant = self.credentials.resolve_scope(tenant_ref)
        account = self.store.get_account_by_reset_token(scope, digest(token or ""))
        if (
            account is None
            or account.reset_expires_at is None
            or as_utc(account.reset_expires_at) <= self._clock()
        ):
            raise TokenInvalid("Invalid or expired reset token")
        self._apply_new_password(account, scope, tenant, new_password)
        self.events.emit(
            ev.PASSWORD_RESET_COMPLETED,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
        )

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> None:
        account, scope, tenant = self._account_for(ctx)
        self.credentials.verify_current_password(account, current_password)
        self._apply_new_password(account, scope, tenant, new_password)
        self.events.emit(
            ev.PASSWORD_CHANGED,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
        )

    # ------------------------------------------------------------------
    # MFA management
    # ------------------------------------------------------------------

    async def setup_mfa(
        self,
        ctx: AuthContext,
        method: MfaMethod,
        *,
        phone_number: Optional[str] = None,
    ) -> MfaSetupResult:
        account, scope, tenant = self._account_for(ctx)
        return await self.mfa.begin_setup(
            account, scope, method, tenant=tenant, phone_number=phone_number
        )

    async def verify_mfa_setup(self, ctx: AuthContext, code: str) -> List[str]:
        account, scope, _ = self._account_for(ctx)
        return await self.mfa.verify_setup(account, scope, code)

    async def disable_mfa(self, ctx: AuthContext, current_password: str) -> None:
        account, scope, tenant = self._account_for(ctx)
        if not account.mfa_enabled:
            raise ValidationError("MFA is not enabled for this user")
        if (
            tenant is not None
            and tenant.auth_settings.mfa_required
            and not ctx.has_permission(OVERRIDE_MFA_PERMISSION)
        ):
            raise ForbiddenError("MFA is required by your organization and cannot be disabled")
        self.credentials.verify_current_password(account, current_password)
        self.mfa.disable(account, scope)

    async def regenerate_recovery_codes(
        self, ctx: AuthContext, current_password: str
    ) -> List[str]:
        account, scope, _ = self._account_for(ctx)
        if not account.mfa_enabled:
            raise ValidationError("MFA is not enabled for this user")
        self.credentials.verify_current_password(account, current_password)
        return self.mfa.recovery.generate(scope, account.id)
