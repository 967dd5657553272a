from __future__ import annotations

import secrets
from typing import List, Optional

from tenantauth.logging import get_logger
from tenantauth.service.errors import RecoveryCodeInvalidOrUsed
from tenantauth.service.interfaces import Clock, RecoveryCodeRepository
from tenantauth.storage.common import digest
from tenantauth.storage.models import AccountScope, utcnow

logger = get_logger(__name__)

# No 0/O, 1/I: codes are read off paper and typed back in
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_COUNT = 10
DEFAULT_LENGTH = 8


def normalize_code(code: str) -> str:
    """Upper-case, drop separators and regroup as XXXX-XXXX."""
    compact = "".join(ch for ch in (code or "").upper() if ch.isalnum())
    if len(compact) != DEFAULT_LENGTH:
        return compact
    half = DEFAULT_LENGTH // 2
    return f"{compact[:half]}-{compact[half:]}"


class RecoveryCodeStore:
    def __init__(
        self, repository: RecoveryCodeRepository, *, clock: Optional[Clock] = None
    ) -> None:
        self.repository = repository
        self._clock = clock or utcnow

    @staticmethod
    def _new_code(length: int) -> str:
        raw = "".join(secrets.choice(ALPHABET) for _ in range(length))
        half = length // 2
        return f"{raw[:half]}-{raw[half:]}"

    def generate(
        self,
        scope: AccountScope,
        account_id: str,
        count: int = DEFAULT_COUNT,
        length: int = DEFAULT_LENGTH,
    ) -> List[str]:
        """Replace the account's codes with a fresh batch; plaintext is returned once."""
        codes: List[str] = []
        while len(codes) < count:
            candidate = self._new_code(length)
            if candidate not in codes:
                codes.append(candidate)
        self.repository.replace_recovery_codes(
            scope, account_id, [digest(code) for code in codes]
        )
        logger.info("recovery_codes_generated", account_id=account_id, count=count)
        return codes

    def consume(self, scope: AccountScope, account_id: str, code: str) -> None:
        consumed = self.repository.consume_recovery_code(
            scope, account_id, digest(normalize_code(code)), now=self._clock()
        )
        if not consumed:
            raise RecoveryCodeInvalidOrUsed()
        logger.info("recovery_code_consumed", account_id=account_id)

    def remaining(self, scope: AccountScope, account_id: str) -> int:
        return self.repository.count_unused_recovery_codes(scope, account_id)

    def discard(self, scope: AccountScope, account_id: str) -> None:
        self.repository.delete_recovery_codes(scope, account_id)
