"""Revoked access-token index: write-through store, read-aside cache, fail closed."""

import asyncio
from datetime import timedelta

import pytest

from tenantauth.service.errors import LookupFailed
from tenantauth.service.revocation import RevocationIndex
from tenantauth.storage.models import UserType


class BrokenCache:
    async def get(self, key):
        raise ConnectionError("cache connection refused")

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache connection refused")


class SlowCache:
    async def get(self, key):
        await asyncio.sleep(1)
        return None

    async def set(self, key, value, ttl_seconds):
        return None


class BrokenStore:
    def save_revoked_access_token(self, entry):
        raise RuntimeError("database error: connection reset")

    def get_revoked_access_token(self, jti):
        raise RuntimeError("database error: connection reset")


@pytest.fixture
def index(store, cache, clock):
    return RevocationIndex(store, cache, clock=clock, lookup_timeout=0.2)


async def test_revoke_writes_both_layers(index, store, cache, clock):
    await index.revoke("jti-1", "acct-1", UserType.SYSTEM, None, clock() + timedelta(minutes=10))
    assert store.get_revoked_access_token("jti-1") is not None
    assert await cache.get("revoked_token:jti-1") == "1"
    assert await index.is_revoked("jti-1")


async def test_store_only_entry_is_found_and_cached(index, store, cache, clock):
    await index.revoke("jti-2", "acct-1", UserType.SYSTEM, None, clock() + timedelta(minutes=10))
    await cache.delete("revoked_token:jti-2")

    assert await index.is_revoked("jti-2")
    # Read-aside repopulates the cache
    assert await cache.get("revoked_token:jti-2") == "1"


async def test_cache_only_entry_counts_as_revoked(index, cache):
    await cache.set("revoked_token:jti-3", "1", 60)
    assert await index.is_revoked("jti-3")


async def test_unknown_jti_is_not_revoked(index):
    assert not await index.is_revoked("never-revoked")


async def test_cache_entry_expires_with_the_token(index, cache, clock):
    await index.revoke("jti-4", "acct-1", UserType.SYSTEM, None, clock() + timedelta(seconds=30))
    clock.advance(seconds=31)
    assert await cache.get("revoked_token:jti-4") is None


async def test_broken_cache_fails_closed(store, clock):
    index = RevocationIndex(store, BrokenCache(), clock=clock, lookup_timeout=0.2)
    with pytest.raises(LookupFailed):
        await index.is_revoked("jti-5")


async def test_slow_cache_fails_closed(store, clock):
    index = RevocationIndex(store, SlowCache(), clock=clock, lookup_timeout=0.05)
    with pytest.raises(LookupFailed):
        await index.is_revoked("jti-6")


async def test_broken_store_fails_closed(cache, clock):
    index = RevocationIndex(BrokenStore(), cache, clock=clock, lookup_timeout=0.2)
    with pytest.raises(LookupFailed):
        await index.is_revoked("jti-7")


async def test_revoke_fails_when_store_write_fails(cache, clock):
    index = RevocationIndex(BrokenStore(), cache, clock=clock, lookup_timeout=0.2)
    with pytest.raises(LookupFailed):
        await index.revoke("jti-8", "acct-1", UserType.SYSTEM, None, clock() + timedelta(minutes=5))
    assert await cache.get("revoked_token:jti-8") is None


async def test_cache_write_failure_keeps_durable_entry(store, clock):
    index = RevocationIndex(store, BrokenCache(), clock=clock, lookup_timeout=0.2)
    await index.revoke("jti-9", "acct-1", UserType.TENANT, "t-1", clock() + timedelta(minutes=5))
    entry = store.get_revoked_access_token("jti-9")
    assert entry.tenant_id == "t-1"
    assert entry.reason == "user_logout"
