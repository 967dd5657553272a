"""Token issuance, decoding and refresh rotation."""

import asyncio
import base64
import json
import threading

import pytest

from tenantauth.service.errors import (
    TenantInactive,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from tenantauth.service.tokens import ClientMeta, parse_duration
from tenantauth.storage.common import digest
from tenantauth.storage.models import AccountScope, AuthSettings, UserType


def _claims(token: str) -> dict:
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [("15m", 900), ("7d", 604800), ("30s", 30), ("2h", 7200)],
    )
    def test_shorthand(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", [None, "", "15", "m15", "1w", "-5m"])
    def test_invalid_falls_back_to_default(self, value):
        assert parse_duration(value) == 900
        assert parse_duration(value, default=60) == 60


class TestIssue:
    def test_system_user_claims(self, runtime, system_user):
        pair = runtime.tokens.issue(system_user, AccountScope.system())
        assert pair.expires_in == 900
        claims = _claims(pair.access_token)
        assert claims["sub"] == system_user.id
        assert claims["role"] == "admin"
        assert claims["permissions"] == ["system:admin"]
        assert claims["token_type"] == "access"
        assert claims["iss"] == "tenantauth"
        assert "tenant_id" not in claims
        assert claims["exp"] - claims["iat"] == 900

    def test_tenant_user_claims_carry_tenant_and_role(self, runtime, tenant, tenant_scope, tenant_user):
        pair = runtime.tokens.issue(tenant_user, tenant_scope, tenant)
        claims = _claims(pair.access_token)
        assert claims["tenant_id"] == tenant.id
        assert claims["schema_name"] == "acme"
        assert claims["role"] == "manager"

    def test_refresh_token_is_stored_hashed(self, runtime, store, system_user):
        pair = runtime.tokens.issue(
            system_user, AccountScope.system(), client=ClientMeta(ip_address="10.0.0.8")
        )
        assert pair.refresh_token not in store.refresh_tokens
        row = store.get_refresh_token(digest(pair.refresh_token))
        assert row.account_id == system_user.id
        assert row.user_type == UserType.SYSTEM
        assert row.ip_address == "10.0.0.8"
        assert not row.revoked

    def test_tenant_lifetime_override(self, runtime, store, make_account):
        tenant = store.create_tenant(
            "Short", "short", auth_settings=AuthSettings(jwt_expiration="5m")
        )
        scope = AccountScope.for_tenant(tenant)
        account = make_account(scope, email="sam@short.test")
        pair = runtime.tokens.issue(account, scope, tenant)
        assert pair.expires_in == 300


class TestDecode:
    async def test_authenticate_round_trip(self, runtime, tenant, tenant_scope, tenant_user):
        pair = runtime.tokens.issue(tenant_user, tenant_scope, tenant)
        ctx = await runtime.tokens.authenticate(pair.access_token)
        assert ctx.account_id == tenant_user.id
        assert ctx.user_type == UserType.TENANT
        assert ctx.tenant_id == tenant.id
        assert ctx.jti == pair.access_jti
        assert ctx.has_permission("users:write")

    def test_access_and_refresh_secrets_are_not_interchangeable(self, runtime, system_user):
        pair = runtime.tokens.issue(system_user, AccountScope.system())
        with pytest.raises(TokenInvalid):
            runtime.tokens.decode(pair.refresh_token, "access")
        with pytest.raises(TokenInvalid):
            runtime.tokens.decode(pair.access_token, "refresh")

    def test_tampered_payload_is_rejected(self, runtime, system_user):
        pair = runtime.tokens.issue(system_user, AccountScope.system())
        header, payload, signature = pair.access_token.split(".")
        claims = _claims(pair.access_token)
        claims["role"] = "superuser"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
        with pytest.raises(TokenInvalid):
            runtime.tokens.decode(f"{header}.{forged}.{signature}", "access")

    def test_garbage_token_is_invalid(self, runtime):
        with pytest.raises(TokenInvalid):
            runtime.tokens.decode("not-a-jwt", "access")

    def test_expired_access_token(self, runtime, clock, system_user):
        pair = runtime.tokens.issue(system_user, AccountScope.system())
        clock.advance(minutes=16)
        with pytest.raises(TokenExpired):
            runtime.tokens.decode(pair.access_token, "access")


class TestRotate:
    async def test_refresh_token_is_single_use(self, runtime, store, system_user):
        pair = runtime.tokens.issue(system_user, AccountScope.system())
        rotated = await runtime.tokens.rotate(pair.refresh_token)
        assert rotated.refresh_token != pair.refresh_token
        assert store.get_refresh_token(digest(pair.refresh_token)).revoked

        with pytest.raises(TokenRevoked):
            await runtime.tokens.rotate(pair.refresh_token)
        # The replacement is still good
        again = await runtime.tokens.rotate(rotated.refresh_token)
        assert again.access_token

    def test_concurrent_rotation_spends_token_once(self, runtime, store, system_user):
        pair = runtime.tokens.issue(system_user, AccountScope.system())
        workers = 6
        barrier = threading.Barrier(workers)
        issued, refused = [], []

        def attempt():
            barrier.wait()
            try:
                issued.append(asyncio.run(runtime.tokens.rotate(pair.refresh_token)))
            except TokenRevoked as exc:
                refused.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(issued) == 1
        assert len(refused) == workers - 1
        live = [
            row
            for row in store.refresh_tokens.values()
            if row.account_id == system_user.id and not row.revoked
        ]
        assert [row.token_hash for row in live] == [digest(issued[0].refresh_token)]

    async def test_expired_refresh_row_is_retired(self, runtime, store, clock, system_user):
        pair = runtime.tokens.issue(system_user, AccountScope.system())
        clock.advance(days=8)
        with pytest.raises(TokenExpired):
            await runtime.tokens.rotate(pair.refresh_token)
        assert store.get_refresh_token(digest(pair.refresh_token)).revoked

    async def test_unknown_refresh_token_is_invalid(self, runtime, store, system_user):
        pair = runtime.tokens.issue(system_user, AccountScope.system())
        store.refresh_tokens.clear()
        with pytest.raises(TokenInvalid):
            await runtime.tokens.rotate(pair.refresh_token)

    async def test_rotation_refused_for_inactive_tenant(self, runtime, store, tenant, tenant_scope, tenant_user):
        pair = runtime.tokens.issue(tenant_user, tenant_scope, tenant)
        store.set_tenant_status(tenant.id, "suspended")
        with pytest.raises(TenantInactive):
            await runtime.tokens.rotate(pair.refresh_token)

    async def test_revoke_all_only_touches_one_account(self, runtime, store, system_user, make_account):
        other = make_account(AccountScope.system(), email="ops@platform.test")
        mine = runtime.tokens.issue(system_user, AccountScope.system())
        theirs = runtime.tokens.issue(other, AccountScope.system())

        assert runtime.tokens.revoke_all(system_user.id, UserType.SYSTEM) == 1
        with pytest.raises(TokenRevoked):
            await runtime.tokens.rotate(mine.refresh_token)
        assert await runtime.tokens.rotate(theirs.refresh_token)
