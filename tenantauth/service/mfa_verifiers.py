from __future__ import annotations

import secrets
from typing import Optional

import pyotp

from tenantauth.logging import get_logger
from tenantauth.service.interfaces import Cache, Clock
from tenantauth.storage.models import MfaMethod, utcnow

logger = get_logger(__name__)

CODE_DIGITS = 6


def _well_formed(code: Optional[str]) -> bool:
    return bool(code) and len(code) == CODE_DIGITS and code.isdigit()


class TotpVerifier:
    """RFC 6238 codes: 30 second step, base32 secret, one step of clock drift allowed."""

    method = MfaMethod.TOTP

    def __init__(self, issuer: str, *, clock: Optional[Clock] = None) -> None:
        self.issuer = issuer
        self._clock = clock or utcnow

    @staticmethod
    def new_secret() -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self.issuer)

    def verify(self, secret: Optional[str], code: Optional[str]) -> bool:
        if not secret or not _well_formed(code):
            return False
        try:
            return pyotp.TOTP(secret).verify(code, for_time=self._clock(), valid_window=1)
        except (ValueError, TypeError):
            # binascii.Error from a corrupt secret is a ValueError
            logger.warning("totp_secret_invalid")
            return False


class OneTimeCodeVerifier:
    """Random 6-digit codes for SMS and email, held in the shared cache.

    A code is removed by the same atomic operation that accepts it, so a
    code that verified once can never verify again.
    """

    def __init__(self, cache: Cache, *, ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"

    async def issue(self, key: str) -> str:
        code = self.generate_code()
        await self.cache.set(key, code, self.ttl_seconds)
        return code

    async def verify(self, key: str, code: Optional[str]) -> bool:
        if not _well_formed(code):
            return False
        return await self.cache.delete_if_equals(key, code)
