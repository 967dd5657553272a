from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tenantauth.config import Settings, get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthService
from tenantauth.service.credentials import CredentialValidator
from tenantauth.service.events import DomainEvents
from tenantauth.service.interfaces import Clock, Notifier
from tenantauth.service.mfa import MfaSessionManager
from tenantauth.service.mfa_verifiers import OneTimeCodeVerifier, TotpVerifier
from tenantauth.service.notifier import LoggingNotifier
from tenantauth.service.passwords import PasswordPolicyEngine
from tenantauth.service.recovery_codes import RecoveryCodeStore
from tenantauth.service.revocation import RevocationIndex
from tenantauth.service.tokens import TokenLifecycleManager
from tenantauth.storage.memory import MemoryCache, MemoryStore
from tenantauth.storage.models import utcnow
from tenantauth.storage.postgres import PostgresStore
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, cache and service instances for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Union[MemoryStore, PostgresStore]] = None,
        cache: Optional[Union[RedisCache, MemoryCache]] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store or self._build_store()
        self.cache = cache or self._build_cache()
        self.notifier = notifier or LoggingNotifier()
        self.events = DomainEvents()

        self.passwords = PasswordPolicyEngine()
        self.credentials = CredentialValidator(
            self.store,
            self.store,
            self.passwords,
            events=self.events,
            clock=self.clock,
            default_attempts=self.settings.default_login_attempts,
            default_lockout_minutes=self.settings.default_lockout_minutes,
        )
        self.revocation = RevocationIndex(
            self.store,
            self.cache,
            clock=self.clock,
            lookup_timeout=self.settings.revocation_lookup_timeout_seconds,
        )
        self.tokens = TokenLifecycleManager(
            self.store,
            self.store,
            self.store,
            self.revocation,
            self.settings,
            events=self.events,
            clock=self.clock,
        )
        self.recovery_codes = RecoveryCodeStore(self.store, clock=self.clock)
        self.mfa = MfaSessionManager(
            self.store,
            self.store,
            self.cache,
            self.tokens,
            self.recovery_codes,
            TotpVerifier(self.settings.totp_issuer, clock=self.clock),
            OneTimeCodeVerifier(self.cache, ttl_seconds=self.settings.mfa_code_ttl_seconds),
            self.notifier,
            events=self.events,
            clock=self.clock,
            session_ttl_seconds=self.settings.mfa_session_ttl_seconds,
            setup_ttl_seconds=self.settings.mfa_setup_ttl_seconds,
            max_attempts=self.settings.mfa_max_attempts,
            lockout_seconds=self.settings.mfa_lockout_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            self.credentials,
            self.passwords,
            self.tokens,
            self.mfa,
            self.notifier,
            events=self.events,
            clock=self.clock,
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: Union[MemoryStore, PostgresStore] = MemoryStore(
                    mfa_encryption_key=self.settings.mfa_cipher_material
                )
            else:
                store = PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_cipher_material,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        # MFA sessions must be visible to every instance; a process-local cache is dev/test only
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for MFA sessions and token revocation; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryCache(clock=self.clock)

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh environment read. TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("reset_runtime_for_tests is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
