"""
Unit Tests for State Store

Tests the in-memory backend (TTL, counters, sets, locking) and the Redis
backend's key namespacing and fallback to memory when Redis misbehaves.
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tradeguard.config import StateStoreConfig
from tradeguard.infrastructure.state_store import (
    InMemoryStateStore,
    KeyedLocks,
    RedisStateStore,
    composite_key,
    create_state_store,
)


class FakeRedis:
    """Minimal async stand-in for redis.asyncio.Redis with string values."""

    def __init__(self):
        self.data = {}
        self.sets = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, px=None):
        self.data[key] = value

    async def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def incrbyfloat(self, key, amount):
        self.data[key] = str(float(self.data.get(key, 0)) + amount)
        return float(self.data[key])

    async def pexpire(self, key, milliseconds):
        return True

    async def delete(self, key):
        self.data.pop(key, None)

    async def sadd(self, key, *members):
        current = self.sets.setdefault(key, set())
        before = len(current)
        current.update(members)
        return len(current) - before

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


class BrokenRedis(FakeRedis):
    """Every call fails as if the server were unreachable."""

    def __getattribute__(self, name):
        if name in ("get", "set", "incr", "incrbyfloat", "pexpire", "delete", "sadd", "smembers", "ping"):

            async def fail(*args, **kwargs):
                raise RedisConnectionError("Connection refused")

            return fail
        return super().__getattribute__(name)


class SlowRedis(FakeRedis):
    async def get(self, key):
        await asyncio.sleep(1)
        return None


@pytest.mark.unit
class TestInMemoryStateStore:
    """Test the dict-backed store."""

    @pytest.mark.asyncio
    async def test_get_set(self, store):
        assert await store.get("missing") is None

        await store.set("key", {"count": 1})

        assert await store.get("key") == {"count": 1}

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, store, clock):
        """Test keys expire when the clock passes their deadline."""
        await store.set("key", "value", ttl_seconds=60)

        clock.advance(seconds=59)
        assert await store.get("key") == "value"

        clock.advance(seconds=1)
        assert await store.get("key") is None

    @pytest.mark.asyncio
    async def test_set_without_ttl_clears_expiry(self, store, clock):
        await store.set("key", "a", ttl_seconds=10)
        await store.set("key", "b")

        clock.advance(seconds=60)

        assert await store.get("key") == "b"

    @pytest.mark.asyncio
    async def test_expire(self, store, clock):
        await store.set("key", "value")
        await store.expire("key", 5)

        clock.advance(seconds=5)

        assert await store.get("key") is None

    @pytest.mark.asyncio
    async def test_counters(self, store):
        assert await store.incr("hits") == 1
        assert await store.incr("hits") == 2
        assert await store.incr_by("volume", 2.5) == 2.5
        assert await store.incr_by("volume", 1.5) == 4.0

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.set("key", 1)
        await store.delete("key")
        await store.delete("never-set")

        assert await store.get("key") is None

    @pytest.mark.asyncio
    async def test_sets(self, store):
        assert await store.sadd("users", "a", "b") == 2
        assert await store.sadd("users", "b", "c") == 1
        assert await store.smembers("users") == {"a", "b", "c"}
        assert await store.smembers("nobody") == set()

    @pytest.mark.asyncio
    async def test_smembers_returns_copy(self, store):
        await store.sadd("users", "a")
        members = await store.smembers("users")
        members.add("intruder")

        assert await store.smembers("users") == {"a"}

    @pytest.mark.asyncio
    async def test_lock_serializes_same_key(self, store):
        """Test read-modify-write under the lock loses no updates."""
        await store.set("counter", 0)

        async def bump():
            async with store.lock("counter"):
                value = await store.get("counter")
                await asyncio.sleep(0)
                await store.set("counter", value + 1)

        await asyncio.gather(*(bump() for _ in range(20)))

        assert await store.get("counter") == 20

    @pytest.mark.asyncio
    async def test_locks_are_per_key(self, store):
        async with store.lock("user-1"):
            await asyncio.wait_for(self._acquire(store, "user-2"), timeout=1)

    @staticmethod
    async def _acquire(store, key):
        async with store.lock(key):
            return True

    @pytest.mark.asyncio
    async def test_ping_and_close(self, store):
        assert await store.ping() is True
        await store.close()


@pytest.mark.unit
class TestKeyedLocks:
    """Test lock lifetime."""

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        locks = KeyedLocks()

        for i in range(1000):
            async with locks.hold(f"velocity:user-{i}:deposit"):
                assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_kept_while_waiters_remain(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("profile:user-1"):
                order.append(name)
                await asyncio.sleep(0)
                assert len(locks) == 1

        await asyncio.gather(worker("a"), worker("b"), worker("c"))

        assert order == ["a", "b", "c"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_after_error(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("key"):
                raise RuntimeError("boom")

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_store_locks_do_not_accumulate(self, store):
        for i in range(100):
            async with store.lock(f"profile:user-{i}"):
                pass

        assert len(store._locks) == 0


@pytest.mark.unit
class TestRedisStateStore:
    """Test the Redis backend against fake clients."""

    @pytest.fixture
    def config(self):
        return StateStoreConfig(backend="redis", key_prefix="test", operation_timeout_seconds=0.05)

    @pytest.mark.asyncio
    async def test_values_are_json_under_prefix(self, config):
        client = FakeRedis()
        store = RedisStateStore(config, client=client)

        await store.set("profile:user-1", {"score": 0.5})

        assert client.data == {"test:profile:user-1": '{"score": 0.5}'}
        assert await store.get("profile:user-1") == {"score": 0.5}

    @pytest.mark.asyncio
    async def test_counters_and_sets(self, config):
        store = RedisStateStore(config, client=FakeRedis())

        assert await store.incr("hits") == 1
        assert await store.incr_by("volume", 2.5) == 2.5
        assert await store.sadd("users", "a", "b") == 2
        assert await store.smembers("users") == {"a", "b"}

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_on_error(self, config):
        """Test Redis errors are served from the local fallback."""
        fallback = InMemoryStateStore()
        store = RedisStateStore(config, client=BrokenRedis(), fallback=fallback)

        await store.set("key", {"a": 1})
        await store.sadd("users", "user-1")

        assert await store.get("key") == {"a": 1}
        assert await fallback.get("key") == {"a": 1}
        assert await store.smembers("users") == {"user-1"}
        assert await store.incr("hits") == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_on_timeout(self, config):
        fallback = InMemoryStateStore()
        await fallback.set("key", "local")
        store = RedisStateStore(config, client=SlowRedis(), fallback=fallback)

        assert await store.get("key") == "local"

    @pytest.mark.asyncio
    async def test_ping(self, config):
        assert await RedisStateStore(config, client=FakeRedis()).ping() is True
        assert await RedisStateStore(config, client=BrokenRedis()).ping() is False

    @pytest.mark.asyncio
    async def test_close(self, config):
        client = FakeRedis()
        store = RedisStateStore(config, client=client)

        await store.close()

        assert client.closed is True


@pytest.mark.unit
class TestStateStoreFactory:
    def test_memory_backend(self):
        assert isinstance(create_state_store(StateStoreConfig()), InMemoryStateStore)

    def test_redis_backend(self):
        store = create_state_store(StateStoreConfig(backend="redis"))
        assert isinstance(store, RedisStateStore)

    def test_composite_key(self):
        assert composite_key("velocity", "user-1", "deposit", "hourly") == "velocity:user-1:deposit:hourly"
        assert composite_key("alert", 42) == "alert:42"
