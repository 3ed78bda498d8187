"""
State Store - Shared Infrastructure Component

Holds every piece of per-entity mutable state the engine keeps: velocity
counters, device/IP/payment associations, behavior and risk profiles,
transaction and trade history, alert cooldowns.

Design Principles:
- One store instance per engine, never process-global state
- Per-key locking: same-user read-modify-write is serialized,
  different users never block each other
- Redis is optional infrastructure; failures degrade to local memory
- Every Redis call is bounded by a short timeout
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set

import structlog
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config import StateStoreConfig

logger = structlog.get_logger(__name__)


class StateStore(ABC):
    """Async key/value interface used by every analyzer."""

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the value for key, or None if missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store a JSON-compatible value, optionally expiring."""

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Increment an integer counter by one and return the new value."""

    @abstractmethod
    async def incr_by(self, key: str, amount: float) -> float:
        """Increment a numeric value by amount and return the new value."""

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: float) -> None:
        """Set a time-to-live on an existing key."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key."""

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        """Add members to a set and return how many were new."""

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]:
        """Return the members of a set (empty if missing)."""

    @abstractmethod
    def lock(self, key: str):
        """Async context manager serializing access to one logical key."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class KeyedLocks:
    """
    asyncio locks created on demand per key.

    A lock is dropped once its last holder or waiter leaves, so the map only
    holds keys that are currently in use.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class InMemoryStateStore(StateStore):
    """
    Dict-backed store for single-node deployments and tests.

    Expiry is lazy: an expired key is dropped the next time it is read.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        self._locks = KeyedLocks()

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._data

    async def get(self, key: str) -> Any:
        if not self._alive(key):
            return None
        return self._data[key]

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        self._data[key] = value
        if ttl_seconds is not None:
            self._expires[key] = self._clock() + ttl_seconds
        else:
            self._expires.pop(key, None)

    async def incr(self, key: str) -> int:
        value = int(await self.get(key) or 0) + 1
        self._data[key] = value
        return value

    async def incr_by(self, key: str, amount: float) -> float:
        value = float(await self.get(key) or 0) + amount
        self._data[key] = value
        return value

    async def expire(self, key: str, ttl_seconds: float) -> None:
        if self._alive(key):
            self._expires[key] = self._clock() + ttl_seconds

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires.pop(key, None)

    async def sadd(self, key: str, *members: str) -> int:
        current = await self.get(key)
        if current is None:
            current = set()
            self._data[key] = current
        before = len(current)
        current.update(members)
        return len(current) - before

    async def smembers(self, key: str) -> Set[str]:
        current = await self.get(key)
        return set(current) if current else set()

    def lock(self, key: str):
        return self._locks.hold(key)


class RedisStateStore(StateStore):
    """
    Redis-backed store with graceful degradation.

    Each operation is wrapped in asyncio.wait_for; on timeout or Redis error
    the call is logged and served from a local InMemoryStateStore so the
    engine never stalls on cache trouble.
    """

    def __init__(
        self,
        config: StateStoreConfig,
        client: Optional[aioredis.Redis] = None,
        fallback: Optional[InMemoryStateStore] = None,
    ):
        self.config = config
        self.timeout = config.operation_timeout_seconds
        self.prefix = config.key_prefix
        self._client = client or aioredis.from_url(
            config.redis_url,
            decode_responses=True,
            socket_timeout=config.operation_timeout_seconds,
            socket_connect_timeout=config.operation_timeout_seconds,
        )
        self._fallback = fallback or InMemoryStateStore()
        # Locks are process-local; cross-node serialization is out of scope.
        self._locks = KeyedLocks()

        logger.info("Redis state store initialized", url=config.redis_url, timeout=self.timeout)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def _call(self, operation: str, key: str, redis_call, fallback_call):
        try:
            return await asyncio.wait_for(redis_call(), timeout=self.timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            logger.warning(
                "State store operation degraded to memory",
                operation=operation,
                key=key,
                error=str(e) or type(e).__name__,
            )
            return await fallback_call()

    async def get(self, key: str) -> Any:
        async def from_redis():
            raw = await self._client.get(self._key(key))
            return json.loads(raw) if raw is not None else None

        return await self._call("get", key, from_redis, lambda: self._fallback.get(key))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        payload = json.dumps(value, default=str)

        async def to_redis():
            if ttl_seconds is not None:
                await self._client.set(self._key(key), payload, px=max(1, int(ttl_seconds * 1000)))
            else:
                await self._client.set(self._key(key), payload)

        await self._call("set", key, to_redis, lambda: self._fallback.set(key, value, ttl_seconds))

    async def incr(self, key: str) -> int:
        async def from_redis():
            return int(await self._client.incr(self._key(key)))

        return await self._call("incr", key, from_redis, lambda: self._fallback.incr(key))

    async def incr_by(self, key: str, amount: float) -> float:
        async def from_redis():
            return float(await self._client.incrbyfloat(self._key(key), amount))

        return await self._call("incr_by", key, from_redis, lambda: self._fallback.incr_by(key, amount))

    async def expire(self, key: str, ttl_seconds: float) -> None:
        async def on_redis():
            await self._client.pexpire(self._key(key), max(1, int(ttl_seconds * 1000)))

        await self._call("expire", key, on_redis, lambda: self._fallback.expire(key, ttl_seconds))

    async def delete(self, key: str) -> None:
        async def on_redis():
            await self._client.delete(self._key(key))

        await self._call("delete", key, on_redis, lambda: self._fallback.delete(key))

    async def sadd(self, key: str, *members: str) -> int:
        async def on_redis():
            return int(await self._client.sadd(self._key(key), *members))

        return await self._call("sadd", key, on_redis, lambda: self._fallback.sadd(key, *members))

    async def smembers(self, key: str) -> Set[str]:
        async def from_redis():
            return set(await self._client.smembers(self._key(key)))

        return await self._call("smembers", key, from_redis, lambda: self._fallback.smembers(key))

    def lock(self, key: str):
        return self._locks.hold(key)

    async def ping(self) -> bool:
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=self.timeout))
        except (asyncio.TimeoutError, RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._client.aclose()


def create_state_store(config: Optional[StateStoreConfig] = None) -> StateStore:
    """Build the configured state store backend."""
    config = config or StateStoreConfig()

    if config.backend == "redis":
        return RedisStateStore(config)

    return InMemoryStateStore()


def composite_key(*parts: Any) -> str:
    """Join key parts with ':' separators."""
    return ":".join(str(part) for part in parts)
