"""Tests for the memory and Redis attempt stores."""

import asyncio
import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from login_security.core.errors import TransientStoreError
from login_security.services.attempt_store import MemoryAttemptStore, RedisAttemptStore


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self

        return queue

    async def execute(self):
        results = []
        for name, args, kwargs in self._calls:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._calls = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the store. TTLs are recorded, not enforced."""

    def __init__(self, fail: bool = False):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail
        self.closed = False
        self.scan_calls = 0

    def _check(self):
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def pipeline(self, transaction: bool = True):
        return FakePipeline(self)

    async def incr(self, key):
        self._check()
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key, seconds, nx=False):
        self._check()
        if key not in self.data or (nx and key in self.ttls):
            return False
        self.ttls[key] = seconds
        return True

    async def ttl(self, key):
        self._check()
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None, get=False):
        self._check()
        previous = self.data.get(key)
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return previous if get else True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def ping(self):
        self._check()
        return True

    async def scan(self, cursor=0, match=None, count=None):
        self._check()
        self.scan_calls += 1
        keys = sorted(k for k in self.data if match is None or fnmatch.fnmatchcase(k, match))
        page = keys[cursor : cursor + count]
        next_cursor = cursor + count
        return (next_cursor if next_cursor < len(keys) else 0), page

    async def aclose(self):
        self.closed = True


class SlowMemoryStore(MemoryAttemptStore):
    async def _get(self, key):
        await asyncio.sleep(1)
        return await super()._get(key)


# ---------------------------------------------------------------------------
# MemoryAttemptStore
# ---------------------------------------------------------------------------


class TestMemoryAttemptStore:
    async def test_increment_counts_up(self, store):
        assert await store.increment("login_attempts:a", 60) == 1
        assert await store.increment("login_attempts:a", 60) == 2
        assert await store.get("login_attempts:a") == "2"

    async def test_increment_keeps_original_expiry(self, store, clock):
        await store.increment("k", 60)
        clock.advance(50)
        await store.increment("k", 60)
        clock.advance(11)

        assert await store.get("k") is None
        assert await store.increment("k", 60) == 1

    async def test_set_with_ttl_overwrites(self, store, clock):
        await store.set_with_ttl("k", "one", 10)
        await store.set_with_ttl("k", "two", 100)
        clock.advance(50)

        assert await store.get("k") == "two"

    async def test_delete_many(self, store):
        await store.set_with_ttl("a", "1", 10)
        await store.set_with_ttl("b", "1", 10)
        await store.set_with_ttl("c", "1", 10)

        await store.delete("a", "b", "missing")
        await store.delete()

        assert len(store) == 1
        assert await store.get("c") == "1"

    async def test_swap_returns_previous_value(self, store, clock):
        assert await store.swap_with_ttl("attempt_last_seen:a", "1.0", 60) is None
        assert await store.swap_with_ttl("attempt_last_seen:a", "2.0", 60) == "1.0"
        clock.advance(61)

        assert await store.swap_with_ttl("attempt_last_seen:a", "3.0", 60) is None
        assert await store.get("attempt_last_seen:a") == "3.0"

    async def test_ping(self, store):
        assert await store.ping() is True

    async def test_concurrent_increments(self, store):
        results = await asyncio.gather(*(store.increment("k", 60) for _ in range(50)))

        assert sorted(results) == list(range(1, 51))

    async def test_sweep_removes_only_expired(self, store, clock):
        await store.set_with_ttl("login_attempts:old", "1", 10)
        await store.set_with_ttl("login_attempts:new", "1", 1000)
        await store.set_with_ttl("other:old", "1", 10)
        clock.advance(20)

        cleaned = await store.sweep(["login_attempts:"], batch_size=500, orphan_ttl_seconds=60)

        assert cleaned == 1
        assert set(store._entries) == {"login_attempts:new", "other:old"}

    async def test_sweep_in_small_batches(self, store, clock):
        for i in range(7):
            await store.set_with_ttl(f"ip_attempts:{i}", "1", 10)
        await store.set_with_ttl("ip_attempts:live", "1", 100)
        clock.advance(11)

        cleaned = await store.sweep(["ip_attempts:"], batch_size=2, orphan_ttl_seconds=60)

        assert cleaned == 7
        assert list(store._entries) == ["ip_attempts:live"]

    async def test_timeout_returns_default(self, clock):
        slow = SlowMemoryStore(timeout=0.01, clock=clock)
        await slow.set_with_ttl("k", "v", 60)

        assert await slow.get("k") is None

    async def test_timeout_raises_when_strict(self, clock):
        slow = SlowMemoryStore(timeout=0.01, clock=clock)

        with pytest.raises(TransientStoreError) as exc_info:
            await slow.get("k", strict=True)
        assert exc_info.value.operation == "get"
        assert exc_info.value.key == "k"


# ---------------------------------------------------------------------------
# RedisAttemptStore
# ---------------------------------------------------------------------------


class TestRedisAttemptStore:
    async def test_increment_sets_ttl_once(self):
        redis = FakeRedis()
        store = RedisAttemptStore(redis)

        assert await store.increment("login_attempts:a", 900) == 1
        redis.ttls["login_attempts:a"] = 300  # time passes
        assert await store.increment("login_attempts:a", 900) == 2

        assert redis.ttls["login_attempts:a"] == 300

    async def test_get_set_delete(self):
        redis = FakeRedis()
        store = RedisAttemptStore(redis)

        await store.set_with_ttl("user_lockout:a", "{}", 1800)
        assert await store.get("user_lockout:a") == "{}"
        assert redis.ttls["user_lockout:a"] == 1800

        await store.delete("user_lockout:a", "login_attempts:a")
        assert await store.get("user_lockout:a") is None

    async def test_swap_uses_set_get(self):
        redis = FakeRedis()
        store = RedisAttemptStore(redis)

        assert await store.swap_with_ttl("attempt_last_seen:a", "1.0", 900) is None
        assert await store.swap_with_ttl("attempt_last_seen:a", "2.0", 900) == "1.0"
        assert redis.data["attempt_last_seen:a"] == "2.0"
        assert redis.ttls["attempt_last_seen:a"] == 900

    async def test_ping_and_close(self):
        redis = FakeRedis()
        store = RedisAttemptStore(redis)

        assert await store.ping() is True
        await store.close()
        assert redis.closed is True

    async def test_outage_returns_defaults(self):
        store = RedisAttemptStore(FakeRedis(fail=True))

        assert await store.increment("k", 60) == 0
        assert await store.get("k") is None
        assert await store.ping() is False
        assert await store.swap_with_ttl("k", "v", 60) is None
        await store.set_with_ttl("k", "v", 60)
        await store.delete("k")

    async def test_outage_raises_when_strict(self):
        store = RedisAttemptStore(FakeRedis(fail=True))

        with pytest.raises(TransientStoreError):
            await store.get("ip_block:203.0.113.10", strict=True)

    async def test_sweep_repairs_keys_without_ttl(self):
        redis = FakeRedis()
        store = RedisAttemptStore(redis)
        redis.data.update({
            "login_attempts:a": "3",
            "login_attempts:b": "1",
            "ip_attempts:203.0.113.10": "4",
            "cart:1": "x",
        })
        redis.ttls["login_attempts:b"] = 120

        cleaned = await store.sweep(
            ["login_attempts:", "ip_attempts:"], batch_size=500, orphan_ttl_seconds=86400
        )

        assert cleaned == 2
        assert redis.ttls["login_attempts:a"] == 86400
        assert redis.ttls["ip_attempts:203.0.113.10"] == 86400
        assert redis.ttls["login_attempts:b"] == 120
        assert "cart:1" not in redis.ttls
        # Nothing is deleted outright
        assert len(redis.data) == 4

    async def test_sweep_walks_every_scan_page(self):
        redis = FakeRedis()
        store = RedisAttemptStore(redis)
        for i in range(5):
            redis.data[f"rapid_attempts:{i}"] = "1"

        cleaned = await store.sweep(["rapid_attempts:"], batch_size=2, orphan_ttl_seconds=60)

        assert cleaned == 5
        assert redis.scan_calls == 3

    async def test_sweep_outage_raises(self):
        store = RedisAttemptStore(FakeRedis(fail=True))

        with pytest.raises(TransientStoreError):
            await store.sweep(["login_attempts:"], batch_size=10, orphan_ttl_seconds=60)
