from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service import events as ev
from tenantauth.service.errors import (
    TenantInactive,
    TokenExpired,
    TokenInvalid,
    TokenMalformed,
    TokenRevoked,
)
from tenantauth.service.events import DomainEvents
from tenantauth.service.interfaces import (
    AccountRepository,
    Clock,
    TenantDirectory,
    TokenStore,
)
from tenantauth.service.revocation import RevocationIndex
from tenantauth.storage.common import digest
from tenantauth.storage.errors import InvalidTenantKey
from tenantauth.storage.models import (
    Account,
    AccountScope,
    RefreshToken,
    Tenant,
    UserType,
    utcnow,
)
from tenantauth.storage.tenancy import TenantKey

logger = get_logger(__name__)

DEFAULT_EXPIRY_SECONDS = 900

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Optional[str], default: int = DEFAULT_EXPIRY_SECONDS) -> int:
    """Seconds for shorthand like ``15m`` or ``7d``; anything else gives ``default``."""
    if not value:
        return default
    match = _DURATION_RE.match(str(value).strip())
    if not match:
        return default
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


@dataclass
class ClientMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    access_jti: str
    refresh_expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


@dataclass
class AuthContext:
    """Verified claims of an access token."""

    account_id: str
    user_type: UserType
    role: str
    jti: str
    expires_at: datetime
    username: Optional[str] = None
    email: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    tenant_id: Optional[str] = None
    schema_name: Optional[str] = None

    @property
    def scope(self) -> AccountScope:
        if self.user_type == UserType.TENANT:
            return AccountScope(
                UserType.TENANT,
                tenant_id=self.tenant_id,
                tenant_key=TenantKey(self.schema_name or ""),
            )
        return AccountScope.system()

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


class TokenLifecycleManager:
    """Issues, rotates and revokes access/refresh token pairs.

    Tokens are HS256 JWTs. Access and refresh tokens are signed with separate
    secrets; refresh tokens are persisted as a SHA-256 digest of their value.
    """

    def __init__(
        self,
        store: TokenStore,
        accounts: AccountRepository,
        tenants: TenantDirectory,
        revocation: RevocationIndex,
        settings: Settings,
        *,
        events: Optional[DomainEvents] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.tenants = tenants
        self.revocation = revocation
        self.settings = settings
        self.events = events or DomainEvents()
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # JWT encoding
    # ------------------------------------------------------------------

    def _secret(self, token_type: str) -> bytes:
        secret = (
            self.settings.jwt_refresh_secret
            if token_type == "refresh"
            else self.settings.jwt_access_secret
        )
        return (secret or "").encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def decode(
        self, token: str, token_type: str, *, verify_exp: bool = True
    ) -> dict[str, Any]:
        """Verify signature, issuer, type and (optionally) expiry of a token."""
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenInvalid()

        # Pin the algorithm so a forged header cannot pick a weaker one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalid()

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(self._secret(token_type), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid()
        if payload.get("token_type") != token_type:
            raise TokenInvalid()
        if not payload.get("jti"):
            raise TokenMalformed()
        if verify_exp:
            try:
                exp_ts = float(payload.get("exp"))
            except (TypeError, ValueError):
                raise TokenMalformed()
            if exp_ts <= self._clock().timestamp():
                raise TokenExpired()
        return payload

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _lifetimes(self, tenant: Optional[Tenant]) -> tuple[int, int]:
        access = self.settings.jwt_access_expiration
        refresh = self.settings.jwt_refresh_expiration
        if tenant is not None:
            access = tenant.auth_settings.jwt_expiration or access
            refresh = tenant.auth_settings.refresh_token_expiration or refresh
        return parse_duration(access), parse_duration(refresh)

    def _claims(self, account: Account, scope: AccountScope, tenant: Optional[Tenant]) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "sub": account.id,
            "username": account.username,
            "email": account.email,
            "role": account.role,
            "permissions": list(account.permissions),
        }
        if scope.is_tenant:
            claims["tenant_id"] = scope.tenant_id
            claims["schema_name"] = (
                tenant.schema_name if tenant else scope.tenant_key.value if scope.tenant_key else None
            )
        return claims

    def _build(
        self,
        account: Account,
        scope: AccountScope,
        tenant: Optional[Tenant],
        client: Optional[ClientMeta],
    ) -> tuple[TokenPair, RefreshToken]:
        now = self._clock()
        access_ttl, refresh_ttl = self._lifetimes(tenant)
        claims = self._claims(account, scope, tenant)
        iat = int(now.timestamp())
        access_jti = str(uuid.uuid4())
        access_payload = {
            **claims,
            "iat": iat,
            "exp": iat + access_ttl,
            "jti": access_jti,
            "token_type": "access",
            "iss": self.settings.jwt_issuer,
        }
        refresh_payload = {
            **claims,
            "iat": iat,
            "exp": iat + refresh_ttl,
            "jti": str(uuid.uuid4()),
            "token_type": "refresh",
            "iss": self.settings.jwt_issuer,
        }
        access_token = self._encode_jwt(access_payload, "access")
        refresh_token = self._encode_jwt(refresh_payload, "refresh")
        refresh_expires_at = datetime.fromtimestamp(iat + refresh_ttl, tz=timezone.utc)
        client = client or ClientMeta()
        row = RefreshToken.new(
            account.id,
            digest(refresh_token),
            scope.user_type,
            refresh_expires_at,
            tenant_id=scope.tenant_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            issued_at=now,
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_ttl,
            access_jti=access_jti,
            refresh_expires_at=refresh_expires_at,
        )
        return pair, row

    def issue(
        self,
        account: Account,
        scope: AccountScope,
        tenant: Optional[Tenant] = None,
        *,
        client: Optional[ClientMeta] = None,
    ) -> TokenPair:
        pair, row = self._build(account, scope, tenant, client)
        self.store.save_refresh_token(row)
        self.events.emit(
            ev.TOKEN_CREATED,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
            jti=pair.access_jti,
        )
        return pair

    # ------------------------------------------------------------------
    # Rotation and revocation
    # ------------------------------------------------------------------

    def _load_subject(self, payload: dict[str, Any]) -> tuple[Account, AccountScope, Optional[Tenant]]:
        tenant_id = payload.get("tenant_id")
        tenant: Optional[Tenant] = None
        if tenant_id:
            tenant = self.tenants.get_tenant(str(tenant_id))
            if tenant is None or not tenant.is_active:
                raise TenantInactive()
            try:
                scope = AccountScope.for_tenant(tenant)
            except InvalidTenantKey:
                raise TenantInactive()
        else:
            scope = AccountScope.system()
        account = self.accounts.get_account(scope, str(payload.get("sub")))
        if account is None or not account.is_active:
            raise TokenInvalid()
        return account, scope, tenant

    async def rotate(
        self, refresh_token: str, *, client: Optional[ClientMeta] = None
    ) -> TokenPair:
        """Exchange a refresh token for a new pair; the presented token is spent."""
        # Expiry is judged on the stored row so an expired row can be retired
        payload = self.decode(refresh_token, "refresh", verify_exp=False)
        account, scope, tenant = self._load_subject(payload)
        pair, row = self._build(account, scope, tenant, client)
        outcome = self.store.rotate_refresh_token(
            digest(refresh_token), row, now=self._clock()
        )
        if not outcome.rotated:
            logger.info(
                "refresh_rotation_refused", account_id=account.id, reason=outcome.reason
            )
            if outcome.reason == "revoked":
                raise TokenRevoked()
            if outcome.reason == "expired":
                raise TokenExpired()
            raise TokenInvalid()
        self.events.emit(
            ev.TOKEN_REFRESHED,
            account_id=account.id,
            user_type=scope.user_type.value,
            tenant_id=scope.tenant_id,
            jti=pair.access_jti,
        )
        return pair

    def revoke_all(
        self, account_id: str, user_type: UserType, tenant_id: Optional[str] = None
    ) -> int:
        count = self.store.revoke_refresh_tokens(
            account_id, user_type, tenant_id, now=self._clock()
        )
        logger.info("refresh_tokens_revoked", account_id=account_id, revoked=count)
        return count

    async def revoke_access_token(self, ctx: AuthContext, reason: str = "user_logout") -> None:
        await self.revocation.revoke(
            ctx.jti,
            ctx.account_id,
            ctx.user_type,
            ctx.tenant_id,
            ctx.expires_at,
            reason=reason,
        )

    @staticmethod
    def _context(payload: dict[str, Any]) -> AuthContext:
        tenant_id = payload.get("tenant_id")
        return AuthContext(
            account_id=str(payload["sub"]),
            user_type=UserType.TENANT if tenant_id else UserType.SYSTEM,
            role=payload.get("role") or "user",
            jti=str(payload["jti"]),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            username=payload.get("username"),
            email=payload.get("email"),
            permissions=list(payload.get("permissions") or []),
            tenant_id=str(tenant_id) if tenant_id else None,
            schema_name=payload.get("schema_name"),
        )

    async def authenticate(self, access_token: str) -> AuthContext:
        payload = self.decode(access_token, "access")
        if not payload.get("sub"):
            raise TokenMalformed()
        # LookupFailed propagates: an unanswerable check is a denial
        if await self.revocation.is_revoked(str(payload["jti"])):
            raise TokenRevoked()
        return self._context(payload)
