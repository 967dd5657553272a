from __future__ import annotations

import hmac
import json
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from tenantauth.logging import get_logger
from tenantauth.service import events as ev
from tenantauth.service.errors import (
    ConflictError,
    MfaLocked,
    MfaSessionExpired,
    MfaVerificationFailed,
    RecoveryCodeInvalidOrUsed,
    TenantInactive,
    ValidationError,
)
from tenantauth.service.events import DomainEvents
from tenantauth.service.interfaces import (
    AccountRepository,
    Cache,
    Clock,
    Notifier,
    TenantDirectory,
)
from tenantauth.service.mfa_verifiers import OneTimeCodeVerifier, TotpVerifier
from tenantauth.service.recovery_codes import RecoveryCodeStore
from tenantauth.service.tokens import ClientMeta, TokenLifecycleManager, TokenPair
from tenantauth.storage.errors import InvalidTenantKey
from tenantauth.storage.models import (
    Account,
    AccountScope,
    MfaMethod,
    Tenant,
    UserType,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

_PHONE_RE = re.compile(r"^\+[1-9]\d{1,14}$")


def session_key(session_id: str) -> str:
    return f"mfa_session:{session_id}"


def setup_key(scope: AccountScope, account_id: str) -> str:
    return f"mfa_setup:{scope.tag}:{account_id}"


def login_code_key(scope: AccountScope, account_id: str) -> str:
    """Cache key for SMS/email login codes; the send and verify paths both use it."""
    return f"mfa_login_code:{scope.tag}:{account_id}"


def attempt_subject(scope: AccountScope, account_id: str) -> str:
    return f"{scope.tag}:{account_id}"


@dataclass
class MfaSession:
    account_id: str
    user_type: str
    methods: List[str]
    created_at: str
    tenant_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "MfaSession":
        data = json.loads(raw)
        return cls(
            account_id=data["account_id"],
            user_type=data["user_type"],
            methods=list(data.get("methods") or []),
            created_at=data.get("created_at", ""),
            tenant_id=data.get("tenant_id"),
        )


@dataclass
class MfaChallenge:
    session_id: str
    methods: List[str]

    def to_dict(self) -> dict:
        return {"requireMfa": True, "mfaSessionId": self.session_id, "mfaMethods": list(self.methods)}


@dataclass
class MfaSetupResult:
    method: MfaMethod
    message: str
    secret: Optional[str] = None
    otpauth_url: Optional[str] = None
    destination: Optional[str] = None


@dataclass
class MfaCompletion:
    """Tokens issued after a second factor, plus who they were issued to."""

    tokens: TokenPair
    account: Account
    scope: AccountScope
    tenant: Optional[Tenant] = None
    remaining_recovery_codes: Optional[int] = None
    warnings: List[str] = field(default_factory=list)


class MfaSessionManager:
    """Login-time challenge/response and the setup sub-protocol.

    All ephemeral state (sessions, setup challenges, login codes, attempt
    counters) lives in the shared cache so any instance can finish a flow
    another instance started.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        tenants: TenantDirectory,
        cache: Cache,
        tokens: TokenLifecycleManager,
        recovery: RecoveryCodeStore,
        totp: TotpVerifier,
        codes: OneTimeCodeVerifier,
        notifier: Notifier,
        *,
        events: Optional[DomainEvents] = None,
        clock: Optional[Clock] = None,
        session_ttl_seconds: int = 600,
        setup_ttl_seconds: int = 600,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
    ) -> None:
        self.accounts = accounts
        self.tenants = tenants
        self.cache = cache
        self.tokens = tokens
        self.recovery = recovery
        self.totp = totp
        self.codes = codes
        self.notifier = notifier
        self.events = events or DomainEvents()
        self._clock = clock or utcnow
        self.session_ttl_seconds = session_ttl_seconds
        self.setup_ttl_seconds = setup_ttl_seconds
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds

    # ------------------------------------------------------------------
    # Login challenge
    # ------------------------------------------------------------------

    async def start_login(self, account: Account, scope: AccountScope) -> MfaChallenge:
        method = account.mfa_method or MfaMethod.TOTP
        session_id = str(uuid.uuid4())
        session = MfaSession(
            account_id=account.id,
            user_type=scope.user_type.value,
            methods=[method.value],
            created_at=self._clock().isoformat(),
            tenant_id=scope.tenant_id,
        )
        await self.cache.set(session_key(session_id), session.to_json(), self.session_ttl_seconds)
        if method in (MfaMethod.SMS, MfaMethod.EMAIL):
            await self._send_login_code(account, scope, method)
        logger.info("mfa_challenge_issued", account_id=account.id, method=method.value)
        return MfaChallenge(session_id=session_id, methods=session.methods)

    async def _send_login_code(
        self, account: Account, scope: AccountScope, method: MfaMethod
    ) -> None:
        destination = account.phone_number if method == MfaMethod.SMS else account.email
        if not destination:
            logger.error("mfa_destination_missing", account_id=account.id, method=method.value)
            raise ValidationError("No destination configured for this MFA method")
        code = await self.codes.issue(login_code_key(scope, account.id))
        self.notifier.send_code(method, destination, code, purpose="mfa_login")

    async def _load_session(self, session_id: str) -> MfaSession:
        raw = await self.cache.get(session_key(session_id)) if session_id else None
        if raw is None:
            raise MfaSessionExpired()
        try:
            return MfaSession.from_json(raw)
        except (ValueError, KeyError, TypeError):
            # Unreadable session is as good as expired
            logger.warning("mfa_session_corrupt", session_id=session_id)
            await self.cache.delete(session_key(session_id))
            raise MfaSessionExpired()

    def _resolve(self, session: MfaSession) -> tuple[Account, AccountScope, Optional[Tenant]]:
        tenant: Optional[Tenant] = None
        if session.user_type == UserType.TENANT.value:
            tenant = self.tenants.get_tenant(session.tenant_id or "")
            if tenant is None or not tenant.is_active:
                raise TenantInactive()
            try:
                scope = AccountScope.for_tenant(tenant)
            except InvalidTenantKey:
                raise TenantInactive()
        else:
            scope = AccountScope.system()
        account = self.accounts.get_account(scope, session.account_id)
        if account is None or not account.is_active:
            raise MfaSessionExpired()
        return account, scope, tenant

    async def _guard_attempts(self, scope: AccountScope, account_id: str) -> None:
        if await self.cache.is_mfa_locked(attempt_subject(scope, account_id)):
            raise MfaLocked()

    async def _record_failure(self, scope: AccountScope, account_id: str) -> None:
        locked, attempts = await self.cache.record_mfa_failure(
            attempt_subject(scope, account_id), self.max_attempts, self.lockout_seconds
        )
        logger.warning(
            "mfa_verification_failed", account_id=account_id, attempts=attempts, locked=locked
        )
        if locked:
            raise MfaLocked()

    async def _finish(
        self,
        session_id: str,
        account: Account,
        scope: AccountScope,
        tenant: Optional[Tenant],
        client: Optional[ClientMeta],
    ) -> TokenPair:
        await self._claim_session(session_id)
        return await self._issue_after_mfa(account, scope, tenant, client)

    async def _claim_session(self, session_id: str) -> str:
        # Whoever removes the session owns the login; a concurrent second verify loses
        raw = await self.cache.pop(session_key(session_id))
        if raw is None:
            raise MfaSessionExpired()
        return raw

    async def _release_session(self, session_id: str, raw: str, session: MfaSession) -> None:
        """Put a claimed session back for the rest of its lifetime."""
        try:
            created = as_utc(datetime.fromisoformat(session.created_at))
        except ValueError:
            return
        remaining = self.session_ttl_seconds - (self._clock() - created).total_seconds()
        if remaining >= 1:
            await self.cache.set(session_key(session_id), raw, int(remaining))

    async def _issue_after_mfa(
        self,
        account: Account,
        scope: AccountScope,
        tenant: Optional[Tenant],
        client: Optional[ClientMeta],
    ) -> TokenPair:
        await self.cache.clear_mfa_failures(attempt_subject(scope, account.id))
        pair = self.tokens.issue(account, scope, tenant, client=client)
        self.events.emit(
            ev.LOGIN_SUCCESS,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
            mfa=True,
        )
        return pair

    async def verify_login(
        self, session_id: str, code: str, *, client: Optional[ClientMeta] = None
    ) -> MfaCompletion:
        session = await self._load_session(session_id)
        account, scope, tenant = self._resolve(session)
        await self._guard_attempts(scope, account.id)
        if not account.mfa_enabled:
            raise ValidationError("MFA is not enabled for this user")

        method = account.mfa_method or MfaMethod.TOTP
        if method == MfaMethod.TOTP:
            if not account.mfa_secret:
                raise ValidationError("TOTP is not properly configured")
            verified = self.totp.verify(account.mfa_secret, code)
        else:
            verified = await self.codes.verify(login_code_key(scope, account.id), code)

        if not verified:
            await self._record_failure(scope, account.id)
            raise MfaVerificationFailed()

        pair = await self._finish(session_id, account, scope, tenant, client)
        return MfaCompletion(tokens=pair, account=account, scope=scope, tenant=tenant)

    async def use_recovery_code(
        self, session_id: str, code: str, *, client: Optional[ClientMeta] = None
    ) -> MfaCompletion:
        session = await self._load_session(session_id)
        account, scope, tenant = self._resolve(session)
        await self._guard_attempts(scope, account.id)
        # Claim the session before spending a code so a losing redemption keeps its code
        raw = await self._claim_session(session_id)
        try:
            self.recovery.consume(scope, account.id, code)
        except RecoveryCodeInvalidOrUsed:
            await self._release_session(session_id, raw, session)
            await self._record_failure(scope, account.id)
            raise

        pair = await self._issue_after_mfa(account, scope, tenant, client)
        remaining = self.recovery.remaining(scope, account.id)
        self.events.emit(
            ev.MFA_RECOVERY_USED,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
            remaining=remaining,
        )
        warnings = []
        if remaining <= 2:
            warnings.append(
                "You are running low on recovery codes. Generate new ones from your security settings."
            )
        return MfaCompletion(
            tokens=pair,
            account=account,
            scope=scope,
            tenant=tenant,
            remaining_recovery_codes=remaining,
            warnings=warnings,
        )

    async def resend_login_code(self, session_id: str) -> MfaMethod:
        session = await self._load_session(session_id)
        account, scope, _ = self._resolve(session)
        method = account.mfa_method or MfaMethod.TOTP
        if method == MfaMethod.TOTP:
            raise ValidationError("Authenticator codes cannot be resent")
        await self._guard_attempts(scope, account.id)
        await self._send_login_code(account, scope, method)
        return method

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def begin_setup(
        self,
        account: Account,
        scope: AccountScope,
        method: MfaMethod,
        *,
        tenant: Optional[Tenant] = None,
        phone_number: Optional[str] = None,
    ) -> MfaSetupResult:
        if account.mfa_enabled:
            raise ConflictError("MFA is already enabled for this user")
        if not scope.is_tenant and method != MfaMethod.TOTP:
            raise ValidationError("System users can only use TOTP for MFA")
        if scope.is_tenant:
            settings = tenant.auth_settings if tenant else None
            if not settings or not (settings.mfa_enabled or settings.mfa_required):
                raise ValidationError("MFA is not enabled for this tenant")

        challenge: dict = {"method": method.value}
        if method == MfaMethod.TOTP:
            secret = self.totp.new_secret()
            label = f"{tenant.name}:{account.email}" if tenant else account.email
            challenge["secret"] = secret
            result = MfaSetupResult(
                method=method,
                message="Scan the QR code with your authenticator app",
                secret=secret,
                otpauth_url=self.totp.provisioning_uri(secret, label),
            )
        else:
            if method == MfaMethod.SMS:
                if not phone_number:
                    raise ValidationError("Phone number is required for SMS MFA")
                if not _PHONE_RE.match(phone_number):
                    raise ValidationError(
                        "Invalid phone number format. Use international format with + (e.g., +1234567890)"
                    )
                destination = phone_number
                challenge["phone_number"] = phone_number
            else:
                destination = account.email
            code = self.codes.generate_code()
            challenge["code"] = code
            challenge["code_expires_at"] = (
                self._clock() + timedelta(seconds=self.codes.ttl_seconds)
            ).isoformat()
            result = MfaSetupResult(
                method=method,
                message=f"Verification code sent to your {'phone' if method == MfaMethod.SMS else 'email'}",
                destination=destination,
            )

        await self.cache.set(
            setup_key(scope, account.id), json.dumps(challenge), self.setup_ttl_seconds
        )
        if method != MfaMethod.TOTP:
            self.notifier.send_code(method, destination, challenge["code"], purpose="mfa_setup")
        logger.info("mfa_setup_started", account_id=account.id, method=method.value)
        return result

    def _challenge_accepts(self, challenge: dict, code: str) -> bool:
        method = challenge.get("method")
        if method == MfaMethod.TOTP.value:
            return self.totp.verify(challenge.get("secret"), code)
        expected = challenge.get("code") or ""
        expires_raw = challenge.get("code_expires_at")
        if not expected or not expires_raw:
            return False
        if as_utc(datetime.fromisoformat(expires_raw)) <= self._clock():
            return False
        return bool(code) and hmac.compare_digest(expected.encode(), code.encode())

    async def verify_setup(
        self, account: Account, scope: AccountScope, code: str
    ) -> List[str]:
        key = setup_key(scope, account.id)
        raw = await self.cache.get(key)
        if raw is None:
            raise MfaSessionExpired(
                "MFA setup session expired or not found. Please restart the setup process."
            )
        await self._guard_attempts(scope, account.id)
        try:
            challenge = json.loads(raw)
            method = MfaMethod(challenge.get("method"))
        except (ValueError, TypeError):
            await self.cache.delete(key)
            raise MfaSessionExpired()

        if not self._challenge_accepts(challenge, code):
            await self._record_failure(scope, account.id)
            raise MfaVerificationFailed()

        # Compare-and-delete: the challenge is spent by exactly one verify
        if not await self.cache.delete_if_equals(key, raw):
            raise MfaSessionExpired()

        self.accounts.enable_mfa(
            scope,
            account.id,
            method,
            secret=challenge.get("secret"),
            phone_number=challenge.get("phone_number"),
        )
        codes = self.recovery.generate(scope, account.id)
        await self.cache.clear_mfa_failures(attempt_subject(scope, account.id))
        self.events.emit(
            ev.MFA_ENABLED,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
            method=method.value,
        )
        return codes

    def disable(self, account: Account, scope: AccountScope) -> None:
        self.accounts.disable_mfa(scope, account.id)
        self.recovery.discard(scope, account.id)
        self.events.emit(
            ev.MFA_DISABLED,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
        )
