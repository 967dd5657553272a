import asyncio
import inspect
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.notifier import RecordingNotifier  # noqa: E402
from tenantauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from tenantauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from tenantauth.storage.models import (  # noqa: E402
    Account,
    AccountScope,
    AuthSettings,
    PasswordPolicy,
)

PASSWORD = "Correct-Horse-9!"


class FakeClock:
    """Settable clock shared by every component under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        jwt_access_secret="unit-access-secret-0123456789",
        jwt_refresh_secret="unit-refresh-secret-9876543210",
        mfa_secret_key="unit-mfa-key",
        app_base_url="https://app.example.test",
    )


@pytest.fixture
def store(settings):
    return MemoryStore(mfa_encryption_key=settings.mfa_cipher_material)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, store, cache, notifier, clock):
    return Runtime(settings, store=store, cache=cache, notifier=notifier, clock=clock)


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def make_account(runtime, store, clock):
    def _make(scope: AccountScope, *, email: str, username: str | None = None, password: str = PASSWORD, **fields):
        account = Account(
            id=str(uuid.uuid4()),
            email=email,
            username=username or email.split("@", 1)[0],
            password_hash=runtime.passwords.hash(password),
            user_type=scope.user_type,
            password_changed_at=clock(),
            **fields,
        )
        return store.create_account(scope, account)

    return _make


@pytest.fixture
def tenant(store):
    return store.create_tenant(
        "Acme",
        "acme",
        auth_settings=AuthSettings(
            password_policy=PasswordPolicy(
                min_length=10,
                prevent_password_reuse=True,
                password_history_count=3,
            ),
            login_attempts=3,
            lockout_duration=15,
            mfa_enabled=True,
            allowed_oauth_providers=["google"],
        ),
    )


@pytest.fixture
def tenant_scope(tenant):
    return AccountScope.for_tenant(tenant)


@pytest.fixture
def manager_role(store, tenant):
    return store.create_role(tenant, "manager", ["users:read", "users:write"], is_default=True)


@pytest.fixture
def tenant_user(make_account, tenant_scope, manager_role):
    return make_account(tenant_scope, email="dana@acme.test", role_id=manager_role.id)


@pytest.fixture
def system_user(make_account):
    return make_account(
        AccountScope.system(),
        email="root@platform.test",
        username="root",
        role="admin",
        permissions=["system:admin"],
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

