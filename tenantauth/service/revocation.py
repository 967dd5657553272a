from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from tenantauth.logging import get_logger, sanitize_error_message
from tenantauth.service.errors import LookupFailed
from tenantauth.service.interfaces import Cache, Clock, TokenStore
from tenantauth.storage.models import RevokedAccessToken, UserType, as_utc, utcnow

logger = get_logger(__name__)

REVOKED_KEY_PREFIX = "revoked_token:"


class RevocationIndex:
    """Revoked access-token ids, written through to the store and cached aside.

    ``is_revoked`` never answers "not revoked" unless both layers answered; any
    error or timeout raises LookupFailed and the caller must deny.
    """

    def __init__(
        self,
        store: TokenStore,
        cache: Cache,
        *,
        clock: Optional[Clock] = None,
        lookup_timeout: float = 0.5,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock or utcnow
        self.lookup_timeout = lookup_timeout

    @staticmethod
    def cache_key(jti: str) -> str:
        return f"{REVOKED_KEY_PREFIX}{jti}"

    def _remaining_seconds(self, expires_at: datetime) -> int:
        return int((as_utc(expires_at) - self._clock()).total_seconds())

    async def _cache_entry(self, jti: str, expires_at: datetime) -> None:
        ttl = self._remaining_seconds(expires_at)
        if ttl <= 0:
            return
        try:
            await asyncio.wait_for(
                self.cache.set(self.cache_key(jti), "1", ttl), self.lookup_timeout
            )
        except Exception as exc:
            # The durable row is authoritative; a later miss repopulates the cache
            logger.warning(
                "revocation_cache_write_failed",
                jti=jti,
                error=sanitize_error_message(str(exc)),
            )

    async def revoke(
        self,
        jti: str,
        account_id: str,
        user_type: UserType,
        tenant_id: Optional[str],
        expires_at: datetime,
        reason: str = "user_logout",
    ) -> None:
        entry = RevokedAccessToken(
            jti=jti,
            account_id=account_id,
            user_type=user_type,
            tenant_id=tenant_id,
            expires_at=as_utc(expires_at),
            reason=reason,
            revoked_at=self._clock(),
        )
        try:
            await asyncio.to_thread(self.store.save_revoked_access_token, entry)
        except Exception as exc:
            logger.error(
                "revocation_store_write_failed",
                jti=jti,
                error=sanitize_error_message(str(exc)),
            )
            raise LookupFailed() from exc
        await self._cache_entry(jti, entry.expires_at)
        logger.info("access_token_revoked", jti=jti, reason=reason)

    async def is_revoked(self, jti: str) -> bool:
        try:
            cached = await asyncio.wait_for(
                self.cache.get(self.cache_key(jti)), self.lookup_timeout
            )
        except Exception as exc:
            logger.error(
                "revocation_cache_lookup_failed",
                jti=jti,
                error=sanitize_error_message(str(exc) or type(exc).__name__),
            )
            raise LookupFailed() from exc
        if cached is not None:
            return True

        try:
            entry = await asyncio.wait_for(
                asyncio.to_thread(self.store.get_revoked_access_token, jti),
                self.lookup_timeout,
            )
        except Exception as exc:
            logger.error(
                "revocation_store_lookup_failed",
                jti=jti,
                error=sanitize_error_message(str(exc) or type(exc).__name__),
            )
            raise LookupFailed() from exc
        if entry is None:
            return False
        await self._cache_entry(jti, entry.expires_at)
        return True
