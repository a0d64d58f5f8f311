"""Tests for the result cache: keys, hits, expiry, failure handling."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel
from redis.exceptions import ConnectionError as RedisConnectionError

from deepsearch.core.cache import (
    CacheLayer,
    CacheStore,
    DatabaseCacheStore,
    RedisCacheStore,
    cache_key,
    canonical_json,
)
from deepsearch.core.errors import CacheUnavailable, UpstreamOperationFailed


class Item(BaseModel):
    name: str
    score: float


class MemoryStore(CacheStore):
    def __init__(self):
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ttl_seconds, *, operation):
        self.values[key] = value
        self.ttls[key] = ttl_seconds


class BrokenStore(CacheStore):
    async def get(self, key):
        raise CacheUnavailable("get", OSError("down"))

    async def set(self, key, value, ttl_seconds, *, operation):
        raise CacheUnavailable("set", OSError("down"))


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# ── Keys ──────────────────────────────────────────────────────────


class TestCanonicalKeys:
    def test_mapping_order_does_not_matter(self):
        a = canonical_json({"q": "python", "num": 5})
        b = canonical_json({"num": 5, "q": "python"})
        assert a == b

    def test_sequence_order_matters(self):
        assert canonical_json({"urls": ["a", "b"]}) != canonical_json({"urls": ["b", "a"]})

    def test_nested_mappings_are_sorted(self):
        a = canonical_json({"outer": {"x": 1, "y": 2}})
        b = canonical_json({"outer": {"y": 2, "x": 1}})
        assert a == b

    def test_models_serialize_like_dicts(self):
        assert canonical_json(Item(name="a", score=1.0)) == canonical_json({"score": 1.0, "name": "a"})

    def test_key_layout(self):
        key = cache_key("serper.search", canonical_json({"q": "x"}), prefix="cache")
        prefix, operation, digest = key.split(":")
        assert prefix == "cache"
        assert operation == "serper.search"
        assert len(digest) == 64

    def test_operations_do_not_collide(self):
        args = canonical_json({"q": "x"})
        assert cache_key("a", args, prefix="p") != cache_key("b", args, prefix="p")


# ── Memoization ──────────────────────────────────────────────────


class TestMemoize:
    async def test_second_call_is_served_from_cache(self):
        op = AsyncMock(return_value=[Item(name="a", score=0.5)])
        layer = CacheLayer(MemoryStore(), ttl_seconds=60, key_prefix="t")
        cached = layer.memoize(
            "items",
            op,
            key=lambda q: canonical_json({"q": q}),
            result_type=list[Item],
        )

        first = await cached("x")
        second = await cached("x")

        assert op.await_count == 1
        assert first == second == [Item(name="a", score=0.5)]

    async def test_different_arguments_miss(self):
        op = AsyncMock(return_value={"ok": True})
        layer = CacheLayer(MemoryStore(), ttl_seconds=60, key_prefix="t")
        cached = layer.memoize("op", op, key=lambda q: canonical_json({"q": q}))

        await cached("x")
        await cached("y")

        assert op.await_count == 2

    async def test_exceptions_are_not_cached(self):
        store = MemoryStore()
        op = AsyncMock(side_effect=[UpstreamOperationFailed("op", "boom"), {"ok": True}])
        layer = CacheLayer(store, ttl_seconds=60, key_prefix="t")
        cached = layer.memoize("op", op, key=lambda q: canonical_json({"q": q}))

        with pytest.raises(UpstreamOperationFailed):
            await cached("x")
        assert store.values == {}

        assert await cached("x") == {"ok": True}
        assert op.await_count == 2

    async def test_ttl_override(self):
        store = MemoryStore()
        layer = CacheLayer(store, ttl_seconds=60, key_prefix="t")
        cached = layer.memoize("op", AsyncMock(return_value=1), key=lambda: "{}", ttl_seconds=5)

        await cached()

        assert list(store.ttls.values()) == [5]

    async def test_zero_ttl_override_is_not_replaced_by_default(self):
        store = MemoryStore()
        op = AsyncMock(return_value=1)
        layer = CacheLayer(store, ttl_seconds=60, key_prefix="t")
        cached = layer.memoize("op", op, key=lambda: "{}", ttl_seconds=0)

        await cached()
        await cached()

        assert store.values == {}
        assert op.await_count == 2

    async def test_zero_layer_ttl_disables_storing(self):
        store = MemoryStore()
        layer = CacheLayer(store, ttl_seconds=0, key_prefix="t")
        cached = layer.memoize("op", AsyncMock(return_value=1), key=lambda: "{}")

        assert layer.ttl_seconds == 0
        assert await cached() == 1
        assert store.ttls == {}

    async def test_store_failure_degrades_to_direct_call(self):
        op = AsyncMock(return_value={"ok": True})
        layer = CacheLayer(BrokenStore(), ttl_seconds=60, key_prefix="t")
        cached = layer.memoize("op", op, key=lambda q: canonical_json({"q": q}))

        assert await cached("x") == {"ok": True}
        assert await cached("x") == {"ok": True}
        assert op.await_count == 2

    async def test_unreadable_entry_is_recomputed(self):
        store = MemoryStore()
        layer = CacheLayer(store, ttl_seconds=60, key_prefix="t")
        op = AsyncMock(return_value=[Item(name="a", score=1.0)])
        cached = layer.memoize("items", op, key=lambda: "{}", result_type=list[Item])
        store.values[layer.key_for("items", "{}")] = '{"not": "a list"}'

        assert await cached() == [Item(name="a", score=1.0)]
        assert op.await_count == 1

    async def test_decorator_form(self):
        layer = CacheLayer(MemoryStore(), ttl_seconds=60, key_prefix="t")
        calls = []

        @layer.cached("double", key=lambda n: canonical_json({"n": n}), result_type=int)
        async def double(n: int) -> int:
            calls.append(n)
            return n * 2

        assert await double(2) == 4
        assert await double(2) == 4
        assert calls == [2]
        assert double.__name__ == "double"


# ── Stores ───────────────────────────────────────────────────────


class TestDatabaseCacheStore:
    async def test_hit_within_ttl_and_miss_after(self, session_maker):
        clock = MutableClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))
        store = DatabaseCacheStore(session_maker, clock=clock)
        layer = CacheLayer(store, ttl_seconds=60, key_prefix="t")
        op = AsyncMock(side_effect=[{"v": 1}, {"v": 2}])
        cached = layer.memoize("op", op, key=lambda: "{}")

        assert await cached() == {"v": 1}
        clock.now += timedelta(seconds=59)
        assert await cached() == {"v": 1}
        assert op.await_count == 1

        clock.now += timedelta(seconds=2)
        assert await cached() == {"v": 2}
        assert op.await_count == 2

    async def test_set_overwrites_existing_entry(self, session_maker):
        clock = MutableClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))
        store = DatabaseCacheStore(session_maker, clock=clock)

        await store.set("k", "one", 60, operation="op")
        await store.set("k", "two", 60, operation="op")

        assert await store.get("k") == "two"

    async def test_missing_key(self, session_maker):
        assert await DatabaseCacheStore(session_maker).get("missing") is None


class TestRedisCacheStore:
    async def test_get_decodes_bytes(self):
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=b'{"a":1}')

        assert await RedisCacheStore(redis).get("k") == '{"a":1}'

    async def test_set_uses_expiry(self):
        redis = AsyncMock()
        await RedisCacheStore(redis).set("k", "v", 120, operation="op")

        redis.set.assert_awaited_once_with("k", "v", ex=120)

    async def test_redis_error_becomes_cache_unavailable(self):
        redis = AsyncMock()
        redis.get = AsyncMock(side_effect=RedisConnectionError("refused"))

        with pytest.raises(CacheUnavailable):
            await RedisCacheStore(redis).get("k")

    async def test_layer_over_fake_redis(self, fake_redis):
        layer = CacheLayer(RedisCacheStore(fake_redis), ttl_seconds=30, key_prefix="t")
        op = AsyncMock(return_value=["x"])
        cached = layer.memoize("op", op, key=lambda: "{}", result_type=list[str])

        assert await cached() == ["x"]
        assert await cached() == ["x"]
        assert op.await_count == 1
        assert list(fake_redis.ttls.values()) == [30]
