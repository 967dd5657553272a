"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from tenantauth.logging import get_logger

logger = get_logger(__name__)


def digest(value: str) -> str:
    """SHA-256 hex digest used to store bearer secrets (refresh/reset tokens, recovery codes)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class SecretCipher:
    """Fernet wrapper for MFA secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA cipher key material is required")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # A secret that cannot be decrypted is unusable; never hand back ciphertext
            logger.warning("mfa_secret_decrypt_failed")
            return None
