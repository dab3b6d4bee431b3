"""Shared key-value state for the gate's stores.

The challenge store and replay protection keep their state behind the
``KeyValueStore`` protocol so that a single worker can run on the in-memory
implementation while a multi-instance deployment swaps in Redis, which gives
real atomic compare-and-swap across processes.

Values are JSON objects. Compare-and-swap compares canonical JSON, so two
dicts with the same content match regardless of key order.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Optional, Protocol

if TYPE_CHECKING:
    from .config import PaymentAuthSettings

logger = logging.getLogger(__name__)


def _canonical(value: Optional[dict]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class KeyValueStore(Protocol):
    """Async key-value interface with atomic compare-and-swap."""

    async def get(self, key: str) -> Optional[dict]:
        ...

    async def set(self, key: str, value: dict, ttl_ms: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[dict],
        new: Optional[dict],
        ttl_ms: Optional[int] = None,
    ) -> bool:
        """Replace ``expected`` with ``new`` atomically.

        ``expected=None`` means the key must be absent; ``new=None`` deletes
        the key. Returns False when the current value did not match.
        """
        ...

    async def scan(self, prefix: str) -> list[tuple[str, dict]]:
        ...


class InMemoryKeyValueStore:
    """Process-local store with lazy TTL eviction.

    Suitable for a single worker and for tests. Each operation runs under an
    asyncio.Lock and contains no awaits on shared state, so operations never
    interleave on one event loop.

    Args:
        max_entries: Optional bound; the oldest entries are evicted first.
    """

    def __init__(self, max_entries: Optional[int] = None):
        # key -> (canonical json, expires_at monotonic seconds or None)
        self._data: OrderedDict[str, tuple[str, Optional[float]]] = OrderedDict()
        self._max_entries = max_entries
        self._lock = asyncio.Lock()

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= now:
            del self._data[key]
            return None
        return raw

    def _store(self, key: str, raw: str, ttl_ms: Optional[int], now: float) -> None:
        expires_at = now + ttl_ms / 1000 if ttl_ms is not None else None
        self._data.pop(key, None)
        self._data[key] = (raw, expires_at)
        if self._max_entries is not None:
            while len(self._data) > self._max_entries:
                evicted, _ = self._data.popitem(last=False)
                logger.debug("Evicted %s from in-memory store (max_entries=%d)", evicted, self._max_entries)

    async def get(self, key: str) -> Optional[dict]:
        async with self._lock:
            raw = self._live(key, time.monotonic())
            return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: dict, ttl_ms: Optional[int] = None) -> None:
        async with self._lock:
            self._store(key, _canonical(value), ttl_ms, time.monotonic())

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[dict],
        new: Optional[dict],
        ttl_ms: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            now = time.monotonic()
            if self._live(key, now) != _canonical(expected):
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._store(key, _canonical(new), ttl_ms, now)
            return True

    async def scan(self, prefix: str) -> list[tuple[str, dict]]:
        async with self._lock:
            now = time.monotonic()
            result = []
            for key in [k for k in self._data if k.startswith(prefix)]:
                raw = self._live(key, now)
                if raw is not None:
                    result.append((key, json.loads(raw)))
            return result

    def size(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._data.clear()


# KEYS[1] = key; ARGV[1] = expected ("" when absent required), ARGV[2] = "1" if
# expected is set; ARGV[3] = new ("" to delete); ARGV[4] = ttl ms ("" for none)
_CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[2] == '1' then
    if current ~= ARGV[1] then return 0 end
else
    if current then return 0 end
end
if ARGV[3] == '' then
    redis.call('DEL', KEYS[1])
elseif ARGV[4] == '' then
    redis.call('SET', KEYS[1], ARGV[3])
else
    redis.call('SET', KEYS[1], ARGV[3], 'PX', tonumber(ARGV[4]))
end
return 1
"""


class RedisKeyValueStore:
    """Redis-backed store for multi-instance deployments.

    Compare-and-swap runs as a server-side Lua script so the check and the
    write are a single atomic step across all workers.
    """

    def __init__(self, redis_url: str, namespace: str = "paymentauth:"):
        self.redis_url = redis_url
        self._namespace = namespace
        self._redis = None

    async def _get_redis(self):
        """Lazy initialization of Redis connection."""
        if self._redis is None:
            import redis.asyncio as redis
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> Optional[dict]:
        redis = await self._get_redis()
        raw = await redis.get(self._make_key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: dict, ttl_ms: Optional[int] = None) -> None:
        redis = await self._get_redis()
        await redis.set(self._make_key(key), _canonical(value), px=ttl_ms)

    async def delete(self, key: str) -> bool:
        redis = await self._get_redis()
        return bool(await redis.delete(self._make_key(key)))

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[dict],
        new: Optional[dict],
        ttl_ms: Optional[int] = None,
    ) -> bool:
        redis = await self._get_redis()
        result = await redis.eval(
            _CAS_SCRIPT,
            1,
            self._make_key(key),
            _canonical(expected) or "",
            "1" if expected is not None else "0",
            _canonical(new) or "",
            str(ttl_ms) if ttl_ms is not None else "",
        )
        return bool(result)

    async def scan(self, prefix: str) -> list[tuple[str, dict]]:
        redis = await self._get_redis()
        pattern = f"{self._make_key(prefix)}*"
        result: list[tuple[str, dict]] = []
        cursor = 0
        # SCAN avoids blocking on large keyspaces
        while True:
            cursor, keys = await redis.scan(cursor, match=pattern, count=1000)
            for full_key in keys:
                raw = await redis.get(full_key)
                if raw is not None:
                    result.append((full_key[len(self._namespace):], json.loads(raw)))
            if cursor == 0:
                break
        return result

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_store(settings: "PaymentAuthSettings") -> KeyValueStore:
    """Build the store selected by ``settings.storage_backend``."""
    if settings.storage_backend == "redis":
        logger.info("Using Redis key-value store (namespace=%s)", settings.redis_namespace)
        return RedisKeyValueStore(settings.redis_url, namespace=settings.redis_namespace)
    return InMemoryKeyValueStore()


__all__ = [
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "create_store",
]
