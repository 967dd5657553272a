from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from tenantauth.storage.models import AuthSettings

DEFAULT_LOGIN_ATTEMPTS = 5
DEFAULT_LOCKOUT_MINUTES = 30


@dataclass(frozen=True)
class LockoutPolicy:
    """Failed-login threshold and lockout window; no persistence of its own."""

    threshold: int = DEFAULT_LOGIN_ATTEMPTS
    duration_minutes: int = DEFAULT_LOCKOUT_MINUTES

    @classmethod
    def for_settings(
        cls,
        auth_settings: Optional[AuthSettings],
        *,
        default_attempts: int = DEFAULT_LOGIN_ATTEMPTS,
        default_minutes: int = DEFAULT_LOCKOUT_MINUTES,
    ) -> "LockoutPolicy":
        attempts = auth_settings.login_attempts if auth_settings else None
        minutes = auth_settings.lockout_duration if auth_settings else None
        return cls(
            threshold=attempts if attempts and attempts > 0 else default_attempts,
            duration_minutes=minutes if minutes and minutes > 0 else default_minutes,
        )

    def should_lock(self, attempts: int) -> bool:
        return attempts >= self.threshold

    def lockout_expiry(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.duration_minutes)
