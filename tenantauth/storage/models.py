from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from tenantauth.storage.tenancy import TenantKey


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (older rows) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserType(str, Enum):
    SYSTEM = "system_user"
    TENANT = "tenant_user"


class MfaMethod(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"


@dataclass
class PasswordPolicy:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    prevent_password_reuse: bool = False
    password_history_count: int = 0
    expiry_days: Optional[int] = None

    # Tenant settings are stored as camelCase JSON
    _KEYS = {
        "minLength": "min_length",
        "requireUppercase": "require_uppercase",
        "requireLowercase": "require_lowercase",
        "requireNumbers": "require_numbers",
        "requireSpecialChars": "require_special_chars",
        "preventPasswordReuse": "prevent_password_reuse",
        "passwordHistoryCount": "password_history_count",
        "expiryDays": "expiry_days",
    }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["PasswordPolicy"]:
        if not raw:
            return None
        kwargs = {}
        for key, value in raw.items():
            attr = cls._KEYS.get(key, key)
            if attr in cls.__dataclass_fields__ and value is not None:
                kwargs[attr] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {camel: getattr(self, attr) for camel, attr in self._KEYS.items()}


@dataclass
class AuthSettings:
    password_policy: Optional[PasswordPolicy] = None
    login_attempts: Optional[int] = None
    lockout_duration: Optional[int] = None  # minutes
    mfa_enabled: bool = False
    mfa_required: bool = False
    allowed_oauth_providers: List[str] = field(default_factory=list)
    jwt_expiration: Optional[str] = None
    refresh_token_expiration: Optional[str] = None
    session_timeout: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "AuthSettings":
        raw = raw or {}
        return cls(
            password_policy=PasswordPolicy.from_dict(raw.get("passwordPolicy")),
            login_attempts=raw.get("loginAttempts"),
            lockout_duration=raw.get("lockoutDuration"),
            mfa_enabled=bool(raw.get("mfaEnabled", False)),
            mfa_required=bool(raw.get("mfaRequired", False)),
            allowed_oauth_providers=list(raw.get("allowedOAuthProviders") or []),
            jwt_expiration=raw.get("jwtExpiration"),
            refresh_token_expiration=raw.get("refreshTokenExpiration"),
            session_timeout=raw.get("sessionTimeout"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passwordPolicy": self.password_policy.to_dict() if self.password_policy else None,
            "loginAttempts": self.login_attempts,
            "lockoutDuration": self.lockout_duration,
            "mfaEnabled": self.mfa_enabled,
            "mfaRequired": self.mfa_required,
            "allowedOAuthProviders": list(self.allowed_oauth_providers),
            "jwtExpiration": self.jwt_expiration,
            "refreshTokenExpiration": self.refresh_token_expiration,
            "sessionTimeout": self.session_timeout,
        }


@dataclass
class Tenant:
    id: str
    name: str
    schema_name: str
    status: str = "active"
    auth_settings: AuthSettings = field(default_factory=AuthSettings)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def key(self) -> TenantKey:
        return TenantKey(self.schema_name)


@dataclass(frozen=True)
class AccountScope:
    """Partition an account lives in: the system table or one tenant's schema."""

    user_type: UserType
    tenant_id: Optional[str] = None
    tenant_key: Optional[TenantKey] = None

    @classmethod
    def system(cls) -> "AccountScope":
        return cls(UserType.SYSTEM)

    @classmethod
    def for_tenant(cls, tenant: Tenant) -> "AccountScope":
        return cls(UserType.TENANT, tenant_id=tenant.id, tenant_key=tenant.key)

    @property
    def is_tenant(self) -> bool:
        return self.user_type == UserType.TENANT

    @property
    def tag(self) -> str:
        if self.is_tenant:
            return f"{self.user_type.value}:{self.tenant_id}"
        return self.user_type.value


@dataclass
class Role:
    id: str
    name: str
    permissions: List[str] = field(default_factory=list)
    is_default: bool = False


@dataclass
class Account:
    id: str
    email: str
    username: str
    password_hash: str
    user_type: UserType
    tenant_id: Optional[str] = None
    role: str = "user"
    role_id: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    status: str = "active"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    mfa_enabled: bool = False
    mfa_method: Optional[MfaMethod] = None
    mfa_secret: Optional[str] = None
    failed_login_attempts: int = 0
    is_locked: bool = False
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_history: List[str] = field(default_factory=list)
    password_changed_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_public(self) -> Dict[str, Any]:
        """External representation; credential material is never included."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role,
            "permissions": list(self.permissions),
            "isMfaEnabled": self.mfa_enabled,
            "mfaMethod": self.mfa_method.value if self.mfa_method else None,
            "tenantId": self.tenant_id,
            "userType": self.user_type.value,
        }


@dataclass
class AccountIdentity:
    provider: str
    subject: str
    account_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    account_id: str
    token_hash: str
    user_type: UserType
    expires_at: datetime
    tenant_id: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    issued_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        user_type: UserType,
        expires_at: datetime,
        *,
        tenant_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        issued_at: Optional[datetime] = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_hash=token_hash,
            user_type=user_type,
            expires_at=expires_at,
            tenant_id=tenant_id,
            issued_at=issued_at or utcnow(),
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class RevokedAccessToken:
    jti: str
    account_id: str
    user_type: UserType
    expires_at: datetime
    tenant_id: Optional[str] = None
    reason: str = "user_logout"
    revoked_at: datetime = field(default_factory=utcnow)


@dataclass
class RecoveryCode:
    id: str
    account_id: str
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RotationOutcome:
    """Result of an atomic refresh-token rotation attempt."""

    rotated: bool
    reason: Optional[str] = None  # "missing", "revoked" or "expired" when not rotated
