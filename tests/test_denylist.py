"""Tests for the deny list of revoked token ids."""

from datetime import timedelta

import pytest

from todoauth.service.denylist import DenyList
from todoauth.storage.memory_cache import MemoryCache


class BrokenCache:
    """Cache whose every operation fails, as an unreachable Redis would."""

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache down")

    async def exists(self, key):
        raise ConnectionError("cache down")


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def denylist(cache):
    return DenyList(cache, prefix="blacklist")


class TestRevoke:
    async def test_revoked_jti_is_reported(self, denylist):
        await denylist.revoke("jti-1", timedelta(minutes=5))

        assert await denylist.is_revoked("jti-1") is True
        assert await denylist.is_revoked("jti-2") is False

    async def test_entry_uses_prefix_and_marker(self, denylist, cache):
        await denylist.revoke("jti-1", timedelta(minutes=5))

        assert await cache.get("blacklist:jti-1") == DenyList.MARKER

    async def test_ttl_is_rounded_up(self, denylist, cache):
        await denylist.revoke("jti-1", timedelta(seconds=1.2))

        assert cache.ttl("blacklist:jti-1") == timedelta(seconds=2)

    async def test_entry_expires_with_the_token(self, denylist, clock):
        await denylist.revoke("jti-1", timedelta(seconds=30))
        clock.advance(seconds=30)

        assert await denylist.is_revoked("jti-1") is False

    async def test_non_positive_ttl_is_a_no_op(self, denylist, cache):
        await denylist.revoke("jti-1", timedelta(0))
        await denylist.revoke("jti-2", timedelta(seconds=-5))

        assert await cache.exists("blacklist:jti-1") is False
        assert await cache.exists("blacklist:jti-2") is False

    async def test_repeat_revoke_refreshes_entry(self, denylist, cache):
        await denylist.revoke("jti-1", timedelta(seconds=10))
        await denylist.revoke("jti-1", timedelta(seconds=60))

        assert cache.ttl("blacklist:jti-1") == timedelta(seconds=60)


class TestCacheFailures:
    async def test_revoke_errors_propagate(self):
        denylist = DenyList(BrokenCache())

        with pytest.raises(ConnectionError):
            await denylist.revoke("jti-1", timedelta(minutes=1))

    async def test_lookup_fails_open(self):
        denylist = DenyList(BrokenCache())

        assert await denylist.is_revoked("jti-1") is False
