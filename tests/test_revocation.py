"""Tests for the revocation registry on the in-memory cache."""

import asyncio

import pytest

from tenantauth.service.revocation import RevocationRegistry
from tenantauth.storage.models import TokenKind


@pytest.fixture
def registry(cache):
    return RevocationRegistry(cache)


async def test_revoke_then_is_revoked(registry):
    assert await registry.is_revoked(TokenKind.ACCESS, "tok-1") is False
    assert await registry.revoke(TokenKind.ACCESS, "tok-1", 60) is True
    assert await registry.is_revoked(TokenKind.ACCESS, "tok-1") is True


async def test_revoke_is_idempotent(registry):
    assert await registry.revoke(TokenKind.REFRESH, "tok-1", 60) is True
    assert await registry.revoke(TokenKind.REFRESH, "tok-1", 60) is False
    assert await registry.is_revoked(TokenKind.REFRESH, "tok-1") is True


async def test_kinds_are_separate(registry):
    await registry.revoke(TokenKind.ACCESS, "shared-id", 60)
    assert await registry.is_revoked(TokenKind.REFRESH, "shared-id") is False


async def test_entry_expires_with_token(registry, clock):
    await registry.revoke(TokenKind.ACCESS, "tok-1", 30)
    clock.advance(29)
    assert await registry.is_revoked(TokenKind.ACCESS, "tok-1") is True
    clock.advance(1)
    assert await registry.is_revoked(TokenKind.ACCESS, "tok-1") is False


async def test_non_positive_ttl_is_noop(registry, cache):
    assert await registry.revoke(TokenKind.ACCESS, "tok-0", 0) is False
    assert await registry.revoke(TokenKind.ACCESS, "tok-neg", -5) is False
    assert await cache.scan("blacklist:*") == []


async def test_key_layout(registry, cache):
    await registry.revoke(TokenKind.REFRESH, "abc", 10)
    assert await cache.exists("blacklist:refresh:abc")


async def test_concurrent_revoke_has_single_winner(registry):
    results = await asyncio.gather(
        *(registry.revoke(TokenKind.REFRESH, "race", 60) for _ in range(10))
    )
    assert results.count(True) == 1


async def test_sweep_removes_entries_without_expiry(registry, cache):
    await registry.revoke(TokenKind.ACCESS, "live", 60)
    await cache.set("blacklist:access:orphan", "1")

    removed = await registry.sweep()

    assert removed == 1
    assert await cache.exists("blacklist:access:live")
    assert not await cache.exists("blacklist:access:orphan")
