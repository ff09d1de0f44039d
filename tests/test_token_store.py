"""Tests for token liveness records and the per-user index."""

import json
from datetime import timedelta

import pytest

from idgate.storage.errors import ExpiredRecordError, StorageError
from idgate.storage.memory import MemoryCache
from idgate.storage.models import TokenDetails, TokenKind
from idgate.storage.token_store import TokenStore, user_index_key


def _details(clock, token_id="t1", user_id="u1", kind=TokenKind.ACCESS, ttl=timedelta(minutes=15)):
    return TokenDetails(
        token_id=token_id, user_id=user_id, kind=kind, expiration=clock() + ttl
    )


class FailingIndexCache(MemoryCache):
    """Index writes and removals fail; primary entries work."""

    async def add_to_index(self, index_key, member, ttl_ms):
        raise StorageError("index down", operation="add_to_index", backend="memory")

    async def remove_from_index(self, index_key, member):
        raise StorageError("index down", operation="remove_from_index", backend="memory")


class FailingSetCache(MemoryCache):
    async def set(self, key, value, ttl_ms):
        raise StorageError("primary down", operation="set", backend="memory")


class FlakyDeleteCache(MemoryCache):
    """``delete_indexed`` fails a fixed number of times before recovering."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.remaining_failures = failures
        self.calls = 0

    async def delete_indexed(self, key, index_key, member):
        self.calls += 1
        if self.remaining_failures > 0:
            self.remaining_failures -= 1
            raise StorageError("flaky", operation="delete_indexed", backend="memory")
        return await super().delete_indexed(key, index_key, member)


@pytest.fixture
def token_store(cache, clock):
    return TokenStore(cache, clock=clock, retry_delay=0)


async def test_put_then_get_returns_details(token_store, clock):
    details = _details(clock)
    assert await token_store.put(details) is True
    assert await token_store.get("t1", TokenKind.ACCESS) == details


async def test_ttl_matches_expiration(token_store, cache, clock):
    await token_store.put(_details(clock, ttl=timedelta(minutes=15)))
    remaining = cache.ttl_ms("access:t1")
    assert remaining == pytest.approx(15 * 60 * 1000, abs=5)


async def test_put_adds_index_member(token_store, cache, clock):
    await token_store.put(_details(clock, token_id="a", kind=TokenKind.ACCESS))
    await token_store.put(_details(clock, token_id="r", kind=TokenKind.REFRESH))
    assert await cache.index_members(user_index_key("u1")) == {"access:a", "refresh:r"}


async def test_index_ttl_covers_longest_member(token_store, cache, clock):
    await token_store.put(_details(clock, token_id="r", kind=TokenKind.REFRESH, ttl=timedelta(days=7)))
    await token_store.put(_details(clock, token_id="a", ttl=timedelta(minutes=15)))
    clock.advance(timedelta(days=1))
    assert await cache.index_members(user_index_key("u1")) == {"access:a", "refresh:r"}


async def test_put_rejects_past_expiration_without_writing(token_store, cache, clock):
    details = _details(clock, ttl=timedelta(seconds=-1))
    with pytest.raises(ExpiredRecordError):
        await token_store.put(details)
    assert await cache.get("access:t1") is None
    assert await cache.index_members(user_index_key("u1")) == set()


async def test_put_zero_ttl_is_expired(token_store, clock):
    with pytest.raises(ExpiredRecordError):
        await token_store.put(_details(clock, ttl=timedelta(0)))


async def test_put_primary_failure_raises(clock):
    store = TokenStore(FailingSetCache(clock=clock.seconds), clock=clock)
    with pytest.raises(StorageError):
        await store.put(_details(clock))


async def test_put_index_failure_is_reported_not_raised(clock):
    cache = FailingIndexCache(clock=clock.seconds)
    store = TokenStore(cache, clock=clock)
    details = _details(clock)
    assert await store.put(details) is False
    assert await store.get("t1", TokenKind.ACCESS) == details


async def test_get_absent_returns_none(token_store):
    assert await token_store.get("missing", TokenKind.REFRESH) is None


async def test_get_distinguishes_kind(token_store, clock):
    await token_store.put(_details(clock, kind=TokenKind.ACCESS))
    assert await token_store.get("t1", TokenKind.REFRESH) is None


async def test_get_after_cache_expiry_returns_none(token_store, clock):
    await token_store.put(_details(clock, ttl=timedelta(minutes=1)))
    clock.advance(timedelta(minutes=2))
    assert await token_store.get("t1", TokenKind.ACCESS) is None


async def test_get_treats_lapsed_expiration_as_absent(cache, clock):
    # cache TTL outlives the record's own expiration (granularity race)
    details = _details(clock, ttl=timedelta(seconds=30))
    await cache.set(details.key, json.dumps(details.to_dict()), 120_000)
    store = TokenStore(cache, clock=clock)
    clock.advance(timedelta(seconds=31))
    assert await store.get("t1", TokenKind.ACCESS) is None


async def test_get_corrupt_entry_raises_storage_error(token_store, cache):
    await cache.set("access:bad", "{not json", 60_000)
    with pytest.raises(StorageError):
        await token_store.get("bad", TokenKind.ACCESS)


async def test_revoke_removes_entry_and_index_member(token_store, cache, clock):
    await token_store.put(_details(clock))
    assert await token_store.revoke("t1", TokenKind.ACCESS) is True
    assert await token_store.get("t1", TokenKind.ACCESS) is None
    assert await cache.index_members(user_index_key("u1")) == set()


async def test_revoke_is_idempotent(token_store, clock):
    await token_store.put(_details(clock))
    assert await token_store.revoke("t1", TokenKind.ACCESS) is True
    assert await token_store.revoke("t1", TokenKind.ACCESS) is True
    assert await token_store.revoke("never-existed", TokenKind.REFRESH) is True


async def test_consume_reports_only_the_first_deletion(token_store, cache, clock):
    await token_store.put(_details(clock, kind=TokenKind.REFRESH))
    assert await token_store.consume("t1", TokenKind.REFRESH) is True
    assert await token_store.consume("t1", TokenKind.REFRESH) is False
    assert await cache.index_members(user_index_key("u1")) == set()


async def test_consume_absent_record_is_false(token_store):
    assert await token_store.consume("never-existed", TokenKind.REFRESH) is False


async def test_revoke_index_failure_reported(clock):
    cache = FailingIndexCache(clock=clock.seconds)
    store = TokenStore(cache, clock=clock)
    await store.put(_details(clock))
    assert await store.revoke("t1", TokenKind.ACCESS) is False
    assert await store.get("t1", TokenKind.ACCESS) is None


async def test_revoke_all_removes_every_token(token_store, cache, clock):
    for i in range(3):
        await token_store.put(_details(clock, token_id=f"a{i}"))
        await token_store.put(_details(clock, token_id=f"r{i}", kind=TokenKind.REFRESH))
    await token_store.put(_details(clock, token_id="other", user_id="u2"))

    assert await token_store.revoke_all("u1") == 6
    for i in range(3):
        assert await token_store.get(f"a{i}", TokenKind.ACCESS) is None
        assert await token_store.get(f"r{i}", TokenKind.REFRESH) is None
    assert await cache.index_members(user_index_key("u1")) == set()
    assert await token_store.get("other", TokenKind.ACCESS) is not None


async def test_revoke_all_without_tokens_returns_zero(token_store):
    assert await token_store.revoke_all("nobody") == 0


async def test_revoke_all_removes_stale_members(token_store, cache, clock):
    await token_store.put(_details(clock))
    await cache.delete("access:t1")
    assert await token_store.revoke_all("u1") == 1
    assert await cache.index_members(user_index_key("u1")) == set()


async def test_revoke_all_retries_partial_failures(clock):
    cache = FlakyDeleteCache(failures=2, clock=clock.seconds)
    store = TokenStore(cache, clock=clock, max_attempts=3, retry_delay=0)
    await store.put(_details(clock, token_id="a"))
    await store.put(_details(clock, token_id="b"))

    assert await store.revoke_all("u1") == 2
    assert await store.get("a", TokenKind.ACCESS) is None
    assert await store.get("b", TokenKind.ACCESS) is None


async def test_revoke_all_gives_up_after_max_attempts(clock):
    cache = FlakyDeleteCache(failures=10, clock=clock.seconds)
    store = TokenStore(cache, clock=clock, max_attempts=3, retry_delay=0)
    await store.put(_details(clock))

    with pytest.raises(StorageError):
        await store.revoke_all("u1")
    assert cache.calls == 3
    assert await store.get("t1", TokenKind.ACCESS) is not None
