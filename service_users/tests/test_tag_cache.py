"""
Unit tests for the tag-aware users cache.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from service_users.app.caching.tag_cache import (
    MemoryTagStore,
    RedisTagStore,
    TagAwareCache,
    create_tag_cache,
)
from shared.errors import NotFoundError, ServiceError
from shared.test_helpers import get_test_config


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))


class TestMemoryTagStore:
    """Test cases for MemoryTagStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return MemoryTagStore(clock=clock)

    @pytest.mark.asyncio
    async def test_store_and_fetch(self, store):
        await store.store("getAllUsers-1-10", "[]", ["usersCache"], 240)
        assert await store.fetch("getAllUsers-1-10") == "[]"
        assert await store.fetch("getAllUsers-2-10") is None

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, store, clock):
        await store.store("getDetailUser-1", '{"id": 1}', ["usersCache"], 240)

        clock.advance(239)
        assert await store.fetch("getDetailUser-1") == '{"id": 1}'

        clock.advance(1)
        assert await store.fetch("getDetailUser-1") is None
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_invalidate_tag_removes_every_tagged_key(self, store):
        await store.store("getAllUsers-1-10", "[]", ["usersCache"], 240)
        await store.store("getDetailUser-7", "{}", ["usersCache"], 240)
        await store.store("unrelated", "x", ["otherCache"], 240)

        removed = await store.invalidate_tags(["usersCache"])

        assert removed == 2
        assert await store.fetch("getAllUsers-1-10") is None
        assert await store.fetch("getDetailUser-7") is None
        assert await store.fetch("unrelated") == "x"

    @pytest.mark.asyncio
    async def test_overwrite_moves_key_between_tags(self, store):
        await store.store("key", "v1", ["a"], 240)
        await store.store("key", "v2", ["b"], 240)

        assert await store.invalidate_tags(["a"]) == 0
        assert await store.fetch("key") == "v2"
        assert await store.invalidate_tags(["b"]) == 1

    @pytest.mark.asyncio
    async def test_delete_drops_tag_membership(self, store):
        await store.store("getDetailUser-1", "{}", ["usersCache"], 240)
        await store.store("getDetailUser-2", "{}", ["usersCache"], 240)

        assert await store.delete("getDetailUser-1") is True

        assert await store.fetch("getDetailUser-1") is None
        assert store._tags["usersCache"] == {"getDetailUser-2"}

        await store.delete("getDetailUser-2")
        assert "usersCache" not in store._tags
        assert await store.invalidate_tags(["usersCache"]) == 0

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, store):
        await store.store("k1", "v", ["t"], 60)
        await store.store("k2", "v", ["t"], 60)

        assert await store.delete("k1") is True
        assert await store.delete("k1") is False

        await store.clear()
        assert await store.count() == 0


class TestTagAwareCache:
    """Test cases for TagAwareCache."""

    @pytest.fixture
    def metrics(self):
        return DummyMetrics()

    @pytest.fixture
    def cache(self, metrics):
        return TagAwareCache(MemoryTagStore(), metrics=metrics)

    @pytest.mark.asyncio
    async def test_get_runs_producer_once_within_ttl(self, cache, metrics):
        producer = AsyncMock(return_value='[{"id": 1}]')

        first = await cache.get("getAllUsers-1-10", producer, tags=["usersCache"], ttl=240)
        second = await cache.get("getAllUsers-1-10", producer, tags=["usersCache"], ttl=240)

        assert first == second == '[{"id": 1}]'
        producer.assert_awaited_once()
        assert cache.hits == 1
        assert cache.misses == 1
        assert ("cache_hits_total", {"cache_type": "users"}) in metrics.counters
        assert ("cache_misses_total", {"cache_type": "users"}) in metrics.counters

    @pytest.mark.asyncio
    async def test_invalidation_forces_recompute(self, cache, metrics):
        producer = AsyncMock(side_effect=["v1", "v2"])

        assert await cache.get("getDetailUser-1", producer, tags=["usersCache"], ttl=240) == "v1"
        await cache.invalidate_tags(["usersCache"])
        assert await cache.get("getDetailUser-1", producer, tags=["usersCache"], ttl=240) == "v2"

        assert producer.await_count == 2
        assert ("cache_invalidations_total", {"tag": "usersCache"}) in metrics.counters

    @pytest.mark.asyncio
    async def test_producer_error_is_not_cached(self, cache):
        producer = AsyncMock(side_effect=NotFoundError("User not found"))

        with pytest.raises(NotFoundError):
            await cache.get("getDetailUser-404", producer, tags=["usersCache"], ttl=240)

        assert await cache.store.fetch("getDetailUser-404") is None

    @pytest.mark.asyncio
    async def test_fetch_error_is_treated_as_miss(self):
        store = MagicMock()
        store.fetch = AsyncMock(side_effect=ConnectionError("redis down"))
        store.store = AsyncMock()
        cache = TagAwareCache(store)

        result = await cache.get("k", AsyncMock(return_value="fresh"), tags=["t"], ttl=10)

        assert result == "fresh"
        store.store.assert_awaited_once_with("k", "fresh", ["t"], 10)

    @pytest.mark.asyncio
    async def test_store_error_still_returns_value(self):
        store = MagicMock()
        store.fetch = AsyncMock(return_value=None)
        store.store = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = TagAwareCache(store)

        assert await cache.get("k", AsyncMock(return_value="fresh"), tags=["t"], ttl=10) == "fresh"

    @pytest.mark.asyncio
    async def test_invalidation_error_raises_service_error(self):
        store = MagicMock()
        store.invalidate_tags = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = TagAwareCache(store)

        with pytest.raises(ServiceError):
            await cache.invalidate_tags(["usersCache"])

    @pytest.mark.asyncio
    async def test_delete_forces_recompute_of_one_key(self, cache):
        producer = AsyncMock(side_effect=["v1", "v2"])
        await cache.get("getDetailUser-1", producer, tags=["usersCache"], ttl=240)
        await cache.get("getAllUsers-1-10", AsyncMock(return_value="[]"), tags=["usersCache"], ttl=240)

        assert await cache.delete("getDetailUser-1") is True

        assert await cache.get("getDetailUser-1", producer, tags=["usersCache"], ttl=240) == "v2"
        assert await cache.store.fetch("getAllUsers-1-10") == "[]"

    @pytest.mark.asyncio
    async def test_get_stats(self, cache):
        await cache.get("k", AsyncMock(return_value="v"), tags=["t"], ttl=10)
        await cache.get("k", AsyncMock(return_value="v"), tags=["t"], ttl=10)

        stats = await cache.get_stats()

        assert stats["backend"] == "MemoryTagStore"
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["entries"] == 1


class TestRedisTagStore:
    """Test cases for RedisTagStore against a mocked client."""

    @pytest.fixture
    def pipeline(self):
        pipe = MagicMock()
        pipe.__aenter__ = AsyncMock(return_value=pipe)
        pipe.__aexit__ = AsyncMock(return_value=False)
        pipe.execute = AsyncMock(return_value=[])
        return pipe

    @pytest.fixture
    def redis_client(self, pipeline):
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.setex = AsyncMock(return_value=True)
        client.sadd = AsyncMock(return_value=1)
        client.expire = AsyncMock(return_value=True)
        client.smembers = AsyncMock(return_value=set())
        client.delete = AsyncMock(return_value=0)
        client.keys = AsyncMock(return_value=[])
        client.ping = AsyncMock(return_value=True)
        client.srem = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        client.pipeline = MagicMock(return_value=pipeline)
        return client

    @pytest.fixture
    def store(self, redis_client):
        return RedisTagStore("redis://localhost:6379/0", client=redis_client)

    @pytest.mark.asyncio
    async def test_store_sets_value_and_tag_membership(self, store, redis_client):
        await store.store("getAllUsers-1-10", "[]", ["usersCache"], 240)

        redis_client.setex.assert_awaited_once_with("users_api:item:getAllUsers-1-10", 240, "[]")
        redis_client.sadd.assert_awaited_once_with("users_api:tag:usersCache", "getAllUsers-1-10")
        redis_client.expire.assert_awaited_once_with("users_api:tag:usersCache", 240)

    @pytest.mark.asyncio
    async def test_fetch_decodes_bytes(self, store, redis_client):
        redis_client.get.return_value = b'{"id": 1}'

        assert await store.fetch("getDetailUser-1") == '{"id": 1}'
        redis_client.get.assert_awaited_once_with("users_api:item:getDetailUser-1")

    @pytest.mark.asyncio
    async def test_invalidate_reads_and_drops_tag_set_atomically(self, store, redis_client, pipeline):
        pipeline.execute.return_value = [{"getAllUsers-1-10", b"getDetailUser-3"}, 1]
        redis_client.delete.return_value = 2

        removed = await store.invalidate_tags(["usersCache"])

        assert removed == 2
        redis_client.pipeline.assert_called_once_with(transaction=True)
        pipeline.smembers.assert_called_once_with("users_api:tag:usersCache")
        pipeline.delete.assert_called_once_with("users_api:tag:usersCache")
        # Tag set reads never happen outside the transaction
        redis_client.smembers.assert_not_awaited()
        assert set(redis_client.delete.await_args.args) == {
            "users_api:item:getAllUsers-1-10",
            "users_api:item:getDetailUser-3",
        }

    @pytest.mark.asyncio
    async def test_invalidate_several_tags_in_one_transaction(self, store, redis_client, pipeline):
        pipeline.execute.return_value = [{"a"}, 1, {"a", "b"}, 1]
        redis_client.delete.return_value = 2

        assert await store.invalidate_tags(["t1", "t2"]) == 2

        pipeline.execute.assert_awaited_once()
        assert set(redis_client.delete.await_args.args) == {"users_api:item:a", "users_api:item:b"}

    @pytest.mark.asyncio
    async def test_invalidate_empty_tag(self, store, redis_client, pipeline):
        pipeline.execute.return_value = [set(), 0]

        assert await store.invalidate_tags(["usersCache"]) == 0
        pipeline.delete.assert_called_once_with("users_api:tag:usersCache")
        redis_client.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_removes_item_and_tag_membership(self, store, redis_client):
        redis_client.delete.return_value = 1
        redis_client.keys.return_value = ["users_api:tag:usersCache", "users_api:tag:otherCache"]

        assert await store.delete("getDetailUser-3") is True

        redis_client.delete.assert_awaited_once_with("users_api:item:getDetailUser-3")
        redis_client.keys.assert_awaited_once_with("users_api:tag:*")
        redis_client.srem.assert_any_await("users_api:tag:usersCache", "getDetailUser-3")
        redis_client.srem.assert_any_await("users_api:tag:otherCache", "getDetailUser-3")

    @pytest.mark.asyncio
    async def test_delete_missing_key(self, store, redis_client):
        assert await store.delete("getDetailUser-404") is False

    @pytest.mark.asyncio
    async def test_ping_failure_reports_unhealthy(self, store, redis_client):
        redis_client.ping.side_effect = ConnectionError("refused")
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_stop_closes_client(self, store, redis_client):
        await store.stop()
        redis_client.aclose.assert_awaited_once()
        assert store.redis is None


class TestCreateTagCache:
    """Backend selection from configuration."""

    def test_memory_backend(self):
        cache = create_tag_cache(get_test_config(cache_backend="memory"))
        assert isinstance(cache.store, MemoryTagStore)

    def test_redis_backend(self):
        cache = create_tag_cache(get_test_config(cache_backend="redis", redis_url="redis://cache:6379/1"))
        assert isinstance(cache.store, RedisTagStore)
        assert cache.store.redis_url == "redis://cache:6379/1"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_tag_cache(get_test_config(cache_backend="memcached"))
