"""
tests/test_cache.py — Cache Keys & CacheLayer Tests
=====================================================

Key construction rules, canonical JSON storage, namespace TTLs, pattern
invalidation, and degraded mode with reconnection (against FakeRedis).
"""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import FakeRedis, run_async

from tasklink.engine.cache import CacheLayer, dumps
from tasklink.engine.keys import CacheNamespace, cache_key, cache_pattern


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------
class TestCacheKeys:
    """Every key is a fixed namespace plus validated parts."""

    @pytest.mark.parametrize(
        "namespace, prefix, ttl",
        [
            (CacheNamespace.SESSION, "discord:session:", 86_400),
            (CacheNamespace.SERVER_MAPPING, "discord:server:", 3_600),
            (CacheNamespace.TASK_CACHE, "discord:task:", 1_800),
            (CacheNamespace.RATE_LIMITING, "discord:ratelimit:", 60),
            (CacheNamespace.TEMP_DATA, "discord:temp:", 300),
        ],
    )
    def test_namespace_prefix_and_ttl(self, namespace, prefix, ttl):
        key = cache_key(namespace, "42")
        assert key.render() == f"{prefix}42"
        assert key.default_ttl == ttl

    def test_parts_are_joined_with_colons(self):
        key = cache_key(CacheNamespace.TASK_CACHE, "list", "c1", "active")
        assert str(key) == "discord:task:list:c1:active"

    def test_integer_parts_accepted(self):
        assert cache_key(CacheNamespace.SERVER_MAPPING, 1234).render() == "discord:server:1234"

    def test_no_parts_rejected(self):
        with pytest.raises(ValueError):
            cache_key(CacheNamespace.SESSION)

    @pytest.mark.parametrize("bad", ["", "has space", "glob*", "a?b", "[x]", "x" * 129, "semi;colon"])
    def test_invalid_parts_rejected(self, bad):
        with pytest.raises(ValueError):
            cache_key(CacheNamespace.TEMP_DATA, bad)

    def test_pattern_whole_namespace(self):
        assert cache_pattern(CacheNamespace.TASK_CACHE).render() == "discord:task:*"

    def test_pattern_under_parts(self):
        assert cache_pattern(CacheNamespace.TASK_CACHE, "list", "c1").render() == "discord:task:list:c1*"


# ---------------------------------------------------------------------------
# Connected cache
# ---------------------------------------------------------------------------
class TestCacheLayer:
    """Round trips and TTLs against a connected FakeRedis."""

    def test_set_stores_canonical_json_with_namespace_ttl(self, cache, fake_redis):
        key = cache_key(CacheNamespace.SERVER_MAPPING, "5001")
        assert run_async(cache.set(key, {"b": 1, "a": [1, 2]})) is True
        assert fake_redis.store["discord:server:5001"] == '{"a":[1,2],"b":1}'
        assert fake_redis.ttls["discord:server:5001"] == 3_600

    def test_explicit_ttl_wins(self, cache, fake_redis):
        run_async(cache.set_temp("token", "abc", ttl=30))
        assert fake_redis.ttls["discord:temp:token"] == 30

    def test_get_decodes_what_was_stored(self, cache):
        value = {"community_id": "abc", "nested": {"ok": True}, "n": None}
        key = cache_key(CacheNamespace.TEMP_DATA, "value")

        async def _inner():
            await cache.set(key, value)
            return await cache.get(key)

        assert run_async(_inner()) == value

    def test_missing_key_returns_none(self, cache):
        assert run_async(cache.get(cache_key(CacheNamespace.TEMP_DATA, "missing"))) is None

    def test_non_json_value_refused(self, cache, fake_redis):
        assert run_async(cache.set(cache_key(CacheNamespace.TEMP_DATA, "obj"), object())) is False
        assert fake_redis.store == {}

    def test_undecodable_value_discarded(self, cache, fake_redis):
        fake_redis.store["discord:temp:broken"] = "{not json"
        assert run_async(cache.get_temp("broken")) is None

    def test_exists_and_delete(self, cache):
        key = cache_key(CacheNamespace.SESSION, "1001")

        async def _inner():
            await cache.set(key, {"user": "1001"})
            before = await cache.exists(key)
            deleted = await cache.delete(key)
            after = await cache.exists(key)
            return before, deleted, after

        assert run_async(_inner()) == (True, True, False)

    def test_mget_preserves_order_and_misses(self, cache):
        a = cache_key(CacheNamespace.TEMP_DATA, "a")
        b = cache_key(CacheNamespace.TEMP_DATA, "b")
        c = cache_key(CacheNamespace.TEMP_DATA, "c")

        async def _inner():
            await cache.set(a, 1)
            await cache.set(c, 3)
            return await cache.mget([a, b, c])

        assert run_async(_inner()) == [1, None, 3]

    def test_mset_uses_each_namespace_ttl(self, cache, fake_redis):
        items = {
            cache_key(CacheNamespace.SESSION, "u1"): {"s": 1},
            cache_key(CacheNamespace.TASK_CACHE, "t1"): {"t": 1},
        }
        assert run_async(cache.mset(items)) is True
        assert fake_redis.ttls["discord:session:u1"] == 86_400
        assert fake_redis.ttls["discord:task:t1"] == 1_800

    def test_invalidate_tasks_only_touches_matching_keys(self, cache, fake_redis):
        async def _inner():
            await cache.set(cache_key(CacheNamespace.TASK_CACHE, "list", "c1", "active"), [1])
            await cache.set(cache_key(CacheNamespace.TASK_CACHE, "list", "c1", "all"), [2])
            await cache.set(cache_key(CacheNamespace.TASK_CACHE, "list", "c2", "active"), [3])
            await cache.cache_task("t9", {"id": "t9"})
            return await cache.invalidate_tasks("list", "c1")

        assert run_async(_inner()) == 2
        assert sorted(fake_redis.store) == ["discord:task:list:c2:active", "discord:task:t9"]

    def test_domain_helpers(self, cache):
        async def _inner():
            await cache.cache_server_mapping("5001", {"community_id": "abc"})
            mapping = await cache.get_cached_server_mapping("5001")
            await cache.invalidate_server_mapping("5001")
            gone = await cache.get_cached_server_mapping("5001")
            await cache.set_session("1001", {"token": "x"})
            session = await cache.get_session("1001")
            await cache.delete_session("1001")
            return mapping, gone, session, await cache.get_session("1001")

        assert run_async(_inner()) == ({"community_id": "abc"}, None, {"token": "x"}, None)

    def test_dumps_is_canonical(self):
        assert dumps({"b": 2, "a": "é"}) == '{"a":"é","b":2}'
        assert json.loads(dumps([1, {"z": 0}])) == [1, {"z": 0}]


# ---------------------------------------------------------------------------
# Degraded mode
# ---------------------------------------------------------------------------
class TestDegradedMode:
    """The cache never raises; it degrades and reconnects."""

    def test_no_url_stays_degraded(self):
        layer = CacheLayer(None)

        async def _inner():
            connected = await layer.connect()
            stored = await layer.set(cache_key(CacheNamespace.TEMP_DATA, "x"), 1)
            value = await layer.get(cache_key(CacheNamespace.TEMP_DATA, "x"))
            return connected, stored, value

        assert run_async(_inner()) == (False, False, None)
        assert layer.status()["configured"] is False

    def test_failed_connect_returns_false(self):
        redis = FakeRedis()
        redis.fail = True
        layer = CacheLayer("redis://x", client=redis, reconnect_interval=0.001, max_reconnect_attempts=1)

        async def _inner():
            ok = await layer.connect()
            await layer.close()
            return ok

        assert run_async(_inner()) is False
        assert layer.is_connected is False

    def test_outage_degrades_then_reconnects(self):
        redis = FakeRedis()
        layer = CacheLayer("redis://x", client=redis, reconnect_interval=0.001)
        key = cache_key(CacheNamespace.TEMP_DATA, "k")

        async def _inner():
            await layer.connect()
            await layer.set(key, "v")
            redis.fail = True
            during = await layer.get(key)
            degraded = not layer.is_connected
            redis.fail = False
            for _ in range(100):
                if layer.is_connected:
                    break
                await asyncio.sleep(0.005)
            after = await layer.get(key)
            await layer.close()
            return during, degraded, after

        during, degraded, after = run_async(_inner())
        assert during is None
        assert degraded is True
        assert after == "v"

    def test_reconnect_gives_up_after_max_attempts(self):
        redis = FakeRedis()
        layer = CacheLayer("redis://x", client=redis, reconnect_interval=0.001, max_reconnect_attempts=2)

        async def _inner():
            await layer.connect()
            redis.fail = True
            await layer.ping()
            for _ in range(100):
                if layer.reconnect_failed:
                    break
                await asyncio.sleep(0.005)
            status = layer.status()
            await layer.close()
            return status

        status = run_async(_inner())
        assert status["connected"] is False
        assert status["reconnect_failed"] is True
        assert status["reconnect_attempts"] == 2

    def test_writes_return_false_while_degraded(self, cache, fake_redis):
        fake_redis.fail = True

        async def _inner():
            first = await cache.set_temp("a", 1)
            second = await cache.mset({cache_key(CacheNamespace.TEMP_DATA, "b"): 2})
            deleted = await cache.invalidate_tasks()
            await cache.close()
            return first, second, deleted

        assert run_async(_inner()) == (False, False, 0)

    def test_close_releases_client(self, cache, fake_redis):
        run_async(cache.close())
        assert fake_redis.closed is True
        assert cache.is_connected is False
