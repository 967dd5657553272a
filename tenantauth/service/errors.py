from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error codes. Only the API boundary maps these to HTTP statuses."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    TENANT_INACTIVE = "tenant_inactive"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_MALFORMED = "token_malformed"
    TOKEN_INVALID = "token_invalid"
    MFA_REQUIRED = "mfa_required"
    MFA_SESSION_EXPIRED = "mfa_session_expired"
    MFA_VERIFICATION_FAILED = "mfa_verification_failed"
    MFA_LOCKED = "mfa_locked"
    PASSWORD_POLICY_VIOLATION = "password_policy_violation"
    PASSWORD_REUSE_VIOLATION = "password_reuse_violation"
    RECOVERY_CODE_INVALID_OR_USED = "recovery_code_invalid_or_used"
    LOOKUP_FAILED = "lookup_failed"
    VALIDATION_ERROR = "validation_error"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SERVER_ERROR = "server_error"


class ServiceError(Exception):
    """Base class for auth-core failures.

    Each subclass pins a ``kind``; callers branch on the kind (or the class),
    never on message text. ``message`` is safe to show to end users.
    """

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    default_message: str = "Request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if kind is not None:
            self.kind = kind
        self.detail = detail or {}


class InvalidCredentials(ServiceError):
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "Invalid credentials"


class AccountLocked(ServiceError):
    kind = ErrorKind.ACCOUNT_LOCKED

    def __init__(self, locked_until: Optional[datetime]) -> None:
        self.locked_until = locked_until
        until = locked_until.isoformat() if locked_until else None
        message = (
            f"Account is locked until {until}" if until else "Account is temporarily locked"
        )
        super().__init__(message, detail={"locked_until": until})


class TenantInactive(ServiceError):
    kind = ErrorKind.TENANT_INACTIVE
    default_message = "Invalid tenant or tenant is not active"


class TokenRevoked(ServiceError):
    kind = ErrorKind.TOKEN_REVOKED
    default_message = "Token has been revoked"


class TokenExpired(ServiceError):
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "Token has expired"


class TokenMalformed(ServiceError):
    kind = ErrorKind.TOKEN_MALFORMED
    default_message = "Malformed token"


class TokenInvalid(ServiceError):
    kind = ErrorKind.TOKEN_INVALID
    default_message = "Invalid token"


class MfaRequired(ServiceError):
    kind = ErrorKind.MFA_REQUIRED
    default_message = "Multi-factor authentication is required"


class MfaSessionExpired(ServiceError):
    kind = ErrorKind.MFA_SESSION_EXPIRED
    default_message = "MFA session expired or invalid"


class MfaVerificationFailed(ServiceError):
    kind = ErrorKind.MFA_VERIFICATION_FAILED
    default_message = "Invalid verification code"


class MfaLocked(ServiceError):
    kind = ErrorKind.MFA_LOCKED
    default_message = "Too many failed verification attempts; try again later"


class PasswordPolicyViolation(ServiceError):
    kind = ErrorKind.PASSWORD_POLICY_VIOLATION

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__(
            "Password does not meet requirements: " + "; ".join(self.reasons),
            detail={"reasons": self.reasons},
        )


class PasswordReuseViolation(ServiceError):
    kind = ErrorKind.PASSWORD_REUSE_VIOLATION
    default_message = "Password was used recently and cannot be reused"


class RecoveryCodeInvalidOrUsed(ServiceError):
    kind = ErrorKind.RECOVERY_CODE_INVALID_OR_USED
    default_message = "Invalid or already used recovery code"


class LookupFailed(ServiceError):
    """A backing store or cache could not answer; callers must deny."""

    kind = ErrorKind.LOOKUP_FAILED
    default_message = "Service temporarily unavailable"


class ValidationError(ServiceError):
    kind = ErrorKind.VALIDATION_ERROR


class ForbiddenError(ServiceError):
    kind = ErrorKind.FORBIDDEN
    default_message = "Forbidden"


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Not found"


class ConflictError(ServiceError):
    kind = ErrorKind.CONFLICT
    default_message = "Conflict"


class ServerError(ServiceError):
    kind = ErrorKind.SERVER_ERROR
    default_message = "Internal server error"


__all__ = [
    "AccountLocked",
    "ConflictError",
    "ErrorKind",
    "ForbiddenError",
    "InvalidCredentials",
    "LookupFailed",
    "MfaLocked",
    "MfaRequired",
    "MfaSessionExpired",
    "MfaVerificationFailed",
    "NotFoundError",
    "PasswordPolicyViolation",
    "PasswordReuseViolation",
    "RecoveryCodeInvalidOrUsed",
    "ServerError",
    "ServiceError",
    "TenantInactive",
    "TokenExpired",
    "TokenInvalid",
    "TokenMalformed",
    "TokenRevoked",
    "ValidationError",
]
