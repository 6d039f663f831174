"""Key-value persistence for fountain sessions, events and aggregates.

Two backends share the :class:`SessionStore` interface:

- :class:`RedisSessionStore` for deployments; conditional writes use
  ``SET NX`` and small Lua scripts so they are atomic server-side.
- :class:`MemorySessionStore` for local development and tests; a single
  process-wide lock serializes every operation.

Values written through ``put``/``put_if_absent`` are JSON objects encoded
canonically, so ``delete_if_equals`` can compare against a value that was
previously read back.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from threading import Lock
from typing import Any, Final

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from wish_fountain.core.settings import settings

logger = logging.getLogger(__name__)

POOL_KEY: Final[str] = "total"
GLOBAL_STATS_KEY: Final[str] = "stats:global"
LEADERBOARD_WON_KEY: Final[str] = "leaderboard:won"
LEADERBOARD_PLAYED_KEY: Final[str] = "leaderboard:played"
LEADERBOARD_BIGGEST_KEY: Final[str] = "leaderboard:biggest"


def pending_key(wallet: str) -> str:
    return f"pending:{wallet}"


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def resolving_key(session_id: str) -> str:
    return f"resolving:{session_id}"


def burn_key(signature: str) -> str:
    return f"burn:{signature}"


def event_key(wallet: str, timestamp_ms: int) -> str:
    return f"gamble:{wallet}:{timestamp_ms}"


def user_key(wallet: str) -> str:
    return f"user:{wallet}"


def event_index_key(wallet: str) -> str:
    return f"gamble-index:{wallet}"


def _dumps(value: Mapping[str, Any]) -> str:
    return json.dumps(dict(value), sort_keys=True, separators=(",", ":"))


def _loads(raw: str | bytes | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    return json.loads(raw)


class SessionStore(ABC):
    """Consistent key-value map with the conditional writes the fountain needs."""

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the JSON object stored under ``key`` or None."""

    @abstractmethod
    async def put(self, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        """Unconditionally write ``value`` under ``key``."""

    @abstractmethod
    async def put_if_absent(
        self, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None
    ) -> bool:
        """Atomically create ``key``. Returns False if it already existed."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key`` if present."""

    @abstractmethod
    async def delete_if_equals(self, key: str, expected: Mapping[str, Any]) -> bool:
        """Atomically delete ``key`` only while it still holds ``expected``."""

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int:
        """Atomically add ``amount`` to an integer counter and return the new value."""

    @abstractmethod
    async def get_int(self, key: str) -> int:
        """Return an integer counter, 0 when unset."""

    @abstractmethod
    async def hincrby_many(self, key: str, increments: Mapping[str, int]) -> dict[str, int]:
        """Atomically add to several hash fields; returns the new field values."""

    @abstractmethod
    async def hset_max(self, key: str, field: str, value: int) -> int:
        """Atomically raise a hash field to ``value`` if larger; returns the field value."""

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, int]:
        """Return all integer fields of a hash."""

    @abstractmethod
    async def zincrby(self, key: str, member: str, amount: float) -> float:
        """Add to a sorted-set member's score."""

    @abstractmethod
    async def zset_max(self, key: str, member: str, score: float) -> None:
        """Set a sorted-set member's score only if it grows (or the member is new)."""

    @abstractmethod
    async def ztop(self, key: str, limit: int) -> list[tuple[str, float]]:
        """Return up to ``limit`` members, highest score first."""

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> None:
        """Set a sorted-set member's score."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


_COMPARE_AND_DELETE: Final[str] = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_HASH_SET_MAX: Final[str] = """
local current = tonumber(redis.call('HGET', KEYS[1], ARGV[1]) or '0')
local candidate = tonumber(ARGV[2])
if candidate > current then
    redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
    return candidate
end
return current
"""


class RedisSessionStore(SessionStore):
    """Redis-backed store."""

    def __init__(self, url: str | None = None, client: redis_asyncio.Redis | None = None) -> None:
        self._redis = client or redis_asyncio.from_url(
            url or settings.redis_url,
            decode_responses=True,
        )
        self._compare_and_delete = self._redis.register_script(_COMPARE_AND_DELETE)
        self._hash_set_max = self._redis.register_script(_HASH_SET_MAX)

    async def get(self, key: str) -> dict[str, Any] | None:
        return _loads(await self._redis.get(key))

    async def put(self, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        await self._redis.set(key, _dumps(value), ex=ttl_seconds)

    async def put_if_absent(
        self, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None
    ) -> bool:
        return bool(await self._redis.set(key, _dumps(value), nx=True, ex=ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def delete_if_equals(self, key: str, expected: Mapping[str, Any]) -> bool:
        deleted = await self._compare_and_delete(keys=[key], args=[_dumps(expected)])
        return bool(deleted)

    async def incr(self, key: str, amount: int = 1) -> int:
        return int(await self._redis.incrby(key, amount))

    async def get_int(self, key: str) -> int:
        raw = await self._redis.get(key)
        return int(raw) if raw is not None else 0

    async def hincrby_many(self, key: str, increments: Mapping[str, int]) -> dict[str, int]:
        fields = list(increments)
        async with self._redis.pipeline(transaction=True) as pipe:
            for field in fields:
                pipe.hincrby(key, field, int(increments[field]))
            results = await pipe.execute()
        return {field: int(value) for field, value in zip(fields, results)}

    async def hset_max(self, key: str, field: str, value: int) -> int:
        return int(await self._hash_set_max(keys=[key], args=[field, int(value)]))

    async def hgetall(self, key: str) -> dict[str, int]:
        raw = await self._redis.hgetall(key)
        return {field: int(value) for field, value in raw.items()}

    async def zincrby(self, key: str, member: str, amount: float) -> float:
        return float(await self._redis.zincrby(key, amount, member))

    async def zset_max(self, key: str, member: str, score: float) -> None:
        await self._redis.zadd(key, {member: score}, gt=True)

    async def ztop(self, key: str, limit: int) -> list[tuple[str, float]]:
        if limit <= 0:
            return []
        rows = await self._redis.zrevrange(key, 0, limit - 1, withscores=True)
        return [(member, float(score)) for member, score in rows]

    async def zadd(self, key: str, member: str, score: float) -> None:
        await self._redis.zadd(key, {member: score})

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class MemorySessionStore(SessionStore):
    """In-process store for development and tests.

    Single-process only; every operation runs under one lock so the
    conditional writes keep the same guarantees as the Redis backend.
    """

    def __init__(self) -> None:
        self._values: dict[str, tuple[str, float | None]] = {}
        self._counters: dict[str, int] = {}
        self._hashes: dict[str, dict[str, int]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._lock = Lock()

    def _live_value(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._values.pop(key, None)
            return None
        return raw

    @staticmethod
    def _expiry(ttl_seconds: int | None) -> float | None:
        return time.monotonic() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return _loads(self._live_value(key))

    async def put(self, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        with self._lock:
            self._values[key] = (_dumps(value), self._expiry(ttl_seconds))

    async def put_if_absent(
        self, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None
    ) -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._values[key] = (_dumps(value), self._expiry(ttl_seconds))
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._counters.pop(key, None)
            self._hashes.pop(key, None)
            self._zsets.pop(key, None)

    async def delete_if_equals(self, key: str, expected: Mapping[str, Any]) -> bool:
        with self._lock:
            if self._live_value(key) != _dumps(expected):
                return False
            self._values.pop(key, None)
            return True

    async def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(amount)
            return self._counters[key]

    async def get_int(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    async def hincrby_many(self, key: str, increments: Mapping[str, int]) -> dict[str, int]:
        with self._lock:
            bucket = self._hashes.setdefault(key, {})
            for field, amount in increments.items():
                bucket[field] = bucket.get(field, 0) + int(amount)
            return {field: bucket[field] for field in increments}

    async def hset_max(self, key: str, field: str, value: int) -> int:
        with self._lock:
            bucket = self._hashes.setdefault(key, {})
            bucket[field] = max(bucket.get(field, 0), int(value))
            return bucket[field]

    async def hgetall(self, key: str) -> dict[str, int]:
        with self._lock:
            return dict(self._hashes.get(key, {}))

    async def zincrby(self, key: str, member: str, amount: float) -> float:
        with self._lock:
            zset = self._zsets.setdefault(key, {})
            zset[member] = zset.get(member, 0.0) + float(amount)
            return zset[member]

    async def zset_max(self, key: str, member: str, score: float) -> None:
        with self._lock:
            zset = self._zsets.setdefault(key, {})
            if member not in zset or float(score) > zset[member]:
                zset[member] = float(score)

    async def ztop(self, key: str, limit: int) -> list[tuple[str, float]]:
        with self._lock:
            rows = sorted(self._zsets.get(key, {}).items(), key=lambda row: (-row[1], row[0]))
        return rows[: max(0, limit)]

    async def zadd(self, key: str, member: str, score: float) -> None:
        with self._lock:
            self._zsets.setdefault(key, {})[member] = float(score)


class _SessionStoreSingleton:
    """Singleton wrapper for the configured store backend."""

    _instance: SessionStore | None = None

    @classmethod
    def get_instance(cls) -> SessionStore:
        if cls._instance is None:
            if settings.store_backend == "memory":
                cls._instance = MemorySessionStore()
            else:
                cls._instance = RedisSessionStore()
        return cls._instance


def get_session_store() -> SessionStore:
    """Return the process-wide session store."""
    return _SessionStoreSingleton.get_instance()
