"""End-to-end auth flows through AuthService."""

from urllib.parse import parse_qs, urlparse

import pyotp
import pytest

from conftest import PASSWORD
from tenantauth.service import events as ev
from tenantauth.service.auth import RESET_REQUESTED_MESSAGE, ExternalIdentity
from tenantauth.service.errors import (
    ForbiddenError,
    InvalidCredentials,
    PasswordPolicyViolation,
    PasswordReuseViolation,
    TokenInvalid,
    TokenRevoked,
)
from tenantauth.storage.common import digest
from tenantauth.storage.models import (
    AccountScope,
    AuthSettings,
    MfaMethod,
    PasswordPolicy,
    UserType,
)

SYSTEM = AccountScope.system()


class TestLogin:
    async def test_password_login_without_mfa(self, auth, system_user):
        result = await auth.login("root@platform.test", PASSWORD)
        assert not result.requires_mfa
        body = result.to_dict()
        assert set(body) >= {"accessToken", "refreshToken", "expiresIn", "user"}
        assert body["expiresIn"] == 900
        assert body["user"]["email"] == "root@platform.test"
        assert "passwordHash" not in body["user"]
        assert "mfaSecret" not in body["user"]

    async def test_login_emits_events(self, runtime, auth, system_user):
        seen = []
        runtime.events.subscribe(lambda name, payload: seen.append(name))
        await auth.login("root", PASSWORD)
        assert ev.TOKEN_CREATED in seen
        assert ev.LOGIN_SUCCESS in seen

    async def test_failing_subscriber_does_not_break_login(self, runtime, auth, system_user):
        def explode(name, payload):
            raise RuntimeError("subscriber down")

        runtime.events.subscribe(explode)
        result = await auth.login("root", PASSWORD)
        assert result.tokens is not None

    async def test_mfa_required_tenant_flags_setup(self, auth, store, make_account):
        tenant = store.create_tenant("Strict", "strict", auth_settings=AuthSettings(mfa_required=True))
        make_account(AccountScope.for_tenant(tenant), email="lee@strict.test")
        result = await auth.login("lee", PASSWORD, "strict")
        assert result.mfa_setup_required
        assert result.to_dict()["mfaSetupRequired"] is True

    async def test_expired_password_is_flagged(self, auth, store, clock, make_account):
        tenant = store.create_tenant(
            "Rotating",
            "rotating",
            auth_settings=AuthSettings(password_policy=PasswordPolicy(expiry_days=30)),
        )
        make_account(AccountScope.for_tenant(tenant), email="kim@rotating.test")
        clock.advance(days=31)
        result = await auth.login("kim", PASSWORD, "rotating")
        assert result.password_expired


class TestLogoutAndRefresh:
    async def test_logout_revokes_access_token(self, auth, system_user):
        tokens = (await auth.login("root", PASSWORD)).tokens
        await auth.authenticate(tokens.access_token)

        await auth.logout(tokens.access_token)
        with pytest.raises(TokenRevoked):
            await auth.authenticate(tokens.access_token)
        with pytest.raises(TokenRevoked):
            await auth.refresh(tokens.refresh_token)

    async def test_refresh_twice_with_same_token(self, auth, system_user):
        tokens = (await auth.login("root", PASSWORD)).tokens
        fresh = await auth.refresh(tokens.refresh_token)
        assert fresh.access_token != tokens.access_token
        with pytest.raises(TokenRevoked):
            await auth.refresh(tokens.refresh_token)

    async def test_current_account(self, auth, tenant, tenant_user):
        tokens = (await auth.login("dana", PASSWORD, "acme")).tokens
        ctx = await auth.authenticate(tokens.access_token)
        me = await auth.current_account(ctx)
        assert me["id"] == tenant_user.id
        assert me["role"] == "manager"
        assert me["tenantId"] == tenant.id
        assert me["userType"] == UserType.TENANT.value


class TestPasswordReset:
    async def test_unknown_email_gets_generic_answer(self, auth, notifier, system_user):
        assert await auth.forgot_password("nobody@platform.test") == RESET_REQUESTED_MESSAGE
        assert await auth.forgot_password("root@platform.test", "no_such_tenant") == RESET_REQUESTED_MESSAGE
        assert notifier.sent == []

    async def test_reset_flow_revokes_sessions(self, auth, store, notifier, system_user):
        tokens = (await auth.login("root", PASSWORD)).tokens
        assert await auth.forgot_password("root@platform.test") == RESET_REQUESTED_MESSAGE

        link = notifier.last("password_reset").body
        assert link.startswith("https://app.example.test/reset-password?")
        token = parse_qs(urlparse(link).query)["token"][0]
        # Only the digest is stored
        assert store.get_account(SYSTEM, system_user.id).reset_token_hash == digest(token)

        await auth.reset_password(token, "Fresh-Start-77!")
        with pytest.raises(TokenRevoked):
            await auth.refresh(tokens.refresh_token)
        with pytest.raises(InvalidCredentials):
            await auth.login("root", PASSWORD)
        assert (await auth.login("root", "Fresh-Start-77!")).tokens is not None

        with pytest.raises(TokenInvalid):
            await auth.reset_password(token, "Another-Start-88!")

    async def test_reset_token_expires(self, auth, clock, notifier, system_user):
        await auth.forgot_password("root@platform.test")
        token = parse_qs(urlparse(notifier.last("password_reset").body).query)["token"][0]
        clock.advance(hours=25)
        with pytest.raises(TokenInvalid):
            await auth.reset_password(token, "Fresh-Start-77!")

    async def test_tenant_reset_link_carries_tenant(self, auth, notifier, tenant, tenant_user):
        await auth.forgot_password("dana@acme.test", "acme")
        query = parse_qs(urlparse(notifier.last("password_reset").body).query)
        assert query["tenant"] == ["acme"]
        await auth.reset_password(query["token"][0], "Tenant-Fresh-55!", "acme")
        assert (await auth.login("dana", "Tenant-Fresh-55!", "acme")).tokens is not None

    async def test_reset_enforces_policy(self, auth, notifier, system_user):
        await auth.forgot_password("root@platform.test")
        token = parse_qs(urlparse(notifier.last("password_reset").body).query)["token"][0]
        with pytest.raises(PasswordPolicyViolation):
            await auth.reset_password(token, "weak")


class TestChangePassword:
    async def test_change_revokes_refresh_tokens(self, auth, system_user):
        tokens = (await auth.login("root", PASSWORD)).tokens
        ctx = await auth.authenticate(tokens.access_token)
        await auth.change_password(ctx, PASSWORD, "Changed-Pass-12!")
        with pytest.raises(TokenRevoked):
            await auth.refresh(tokens.refresh_token)
        assert (await auth.login("root", "Changed-Pass-12!")).tokens is not None

    async def test_wrong_current_password(self, auth, system_user):
        ctx = await auth.authenticate((await auth.login("root", PASSWORD)).tokens.access_token)
        with pytest.raises(InvalidCredentials):
            await auth.change_password(ctx, "not-my-password", "Changed-Pass-12!")

    async def test_tenant_history_blocks_reuse(self, auth, tenant, tenant_user):
        ctx = await auth.authenticate((await auth.login("dana", PASSWORD, "acme")).tokens.access_token)
        await auth.change_password(ctx, PASSWORD, "Second-Pass-22!")
        with pytest.raises(PasswordReuseViolation):
            await auth.change_password(ctx, "Second-Pass-22!", PASSWORD)
        with pytest.raises(PasswordReuseViolation):
            await auth.change_password(ctx, "Second-Pass-22!", "Second-Pass-22!")

    async def test_tenant_policy_minimum_length(self, auth, tenant, tenant_user):
        ctx = await auth.authenticate((await auth.login("dana", PASSWORD, "acme")).tokens.access_token)
        with pytest.raises(PasswordPolicyViolation):
            await auth.change_password(ctx, PASSWORD, "Sh0rt-Pw!")


class TestExternalIdentity:
    async def test_first_login_provisions_system_account(self, auth, store):
        identity = ExternalIdentity(provider="google", subject="g-123", email="new@platform.test")
        result = await auth.login_with_external_identity(identity)
        assert result.tokens is not None
        account = store.get_account_by_identity(SYSTEM, "new@platform.test")
        assert store.get_identity(SYSTEM, "google", "g-123").account_id == account.id

        again = await auth.login_with_external_identity(identity)
        assert again.account.id == account.id

    async def test_tenant_provider_must_be_allowed(self, auth, tenant, tenant_user):
        identity = ExternalIdentity(provider="github", subject="gh-1", email="dana@acme.test")
        with pytest.raises(ForbiddenError):
            await auth.login_with_external_identity(identity, "acme")

    async def test_tenant_accounts_are_not_provisioned(self, auth, tenant):
        identity = ExternalIdentity(provider="google", subject="g-9", email="stranger@acme.test")
        with pytest.raises(InvalidCredentials):
            await auth.login_with_external_identity(identity, "acme")

    async def test_tenant_account_linked_by_email(self, auth, store, tenant, tenant_scope, tenant_user):
        identity = ExternalIdentity(provider="Google", subject="g-55", email="dana@acme.test")
        result = await auth.login_with_external_identity(identity, "acme")
        assert result.account.id == tenant_user.id
        assert store.get_identity(tenant_scope, "google", "g-55").account_id == tenant_user.id


class TestMfaManagement:
    async def _enable(self, auth, clock, ctx):
        setup = await auth.setup_mfa(ctx, MfaMethod.TOTP)
        return await auth.verify_mfa_setup(ctx, pyotp.TOTP(setup.secret).at(clock()))

    async def test_disable_requires_password(self, auth, store, clock, system_user):
        ctx = await auth.authenticate((await auth.login("root", PASSWORD)).tokens.access_token)
        await self._enable(auth, clock, ctx)
        with pytest.raises(InvalidCredentials):
            await auth.disable_mfa(ctx, "wrong-password")
        await auth.disable_mfa(ctx, PASSWORD)
        stored = store.get_account(SYSTEM, system_user.id)
        assert not stored.mfa_enabled
        assert stored.mfa_method is None
        assert stored.mfa_secret is None
        public = await auth.current_account(ctx)
        assert public["isMfaEnabled"] is False
        assert public["mfaMethod"] is None

    async def test_required_mfa_cannot_be_disabled_without_override(
        self, auth, store, clock, make_account
    ):
        tenant = store.create_tenant("Strict", "strict", auth_settings=AuthSettings(mfa_required=True))
        scope = AccountScope.for_tenant(tenant)
        make_account(scope, email="lee@strict.test")
        ctx = await auth.authenticate((await auth.login("lee", PASSWORD, "strict")).tokens.access_token)
        await self._enable(auth, clock, ctx)
        with pytest.raises(ForbiddenError):
            await auth.disable_mfa(ctx, PASSWORD)

    async def test_required_mfa_disabled_with_override(self, auth, store, clock, make_account):
        tenant = store.create_tenant("Strict", "strict", auth_settings=AuthSettings(mfa_required=True))
        role = store.create_role(tenant, "security_admin", ["admin:override_mfa"])
        scope = AccountScope.for_tenant(tenant)
        account = make_account(scope, email="ari@strict.test", role_id=role.id)
        ctx = await auth.authenticate((await auth.login("ari", PASSWORD, "strict")).tokens.access_token)
        await self._enable(auth, clock, ctx)
        await auth.disable_mfa(ctx, PASSWORD)
        assert not store.get_account(scope, account.id).mfa_enabled

    async def test_regenerate_recovery_codes(self, runtime, auth, clock, system_user):
        ctx = await auth.authenticate((await auth.login("root", PASSWORD)).tokens.access_token)
        old = await self._enable(auth, clock, ctx)
        new = await auth.regenerate_recovery_codes(ctx, PASSWORD)
        assert len(new) == 10
        assert not set(old) & set(new)
        assert runtime.recovery_codes.remaining(SYSTEM, system_user.id) == 10
