"""
Shared TTL key-value store.

Sync state, progress, locks and cached forecasts live here so a sync
started on one process is visible from every other process. Services
depend only on the ``KVStore`` protocol; ``RedisKVStore`` is the production
backend and ``InMemoryKVStore`` serves single-process runs and tests.

Values are JSON documents (dicts). ``merge`` applies an updater function
atomically: Redis uses WATCH/MULTI optimistic transactions, the in-memory
store an asyncio lock.
"""
import asyncio
import copy
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from ledgerflow.core.clock import Clock, system_clock

logger = logging.getLogger(__name__)

Updater = Callable[[dict | None], dict | None]


class KVStore:
    """Interface, see module docstring."""

    async def get(self, key: str) -> dict | None:
        raise NotImplementedError

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def merge(self, key: str, updater: Updater, ttl_seconds: int) -> dict | None:
        """Atomically replace the value with ``updater(current)``; None deletes."""
        raise NotImplementedError

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def set_if_absent(self, key: str, value: dict, ttl_seconds: int) -> bool:
        raise NotImplementedError


def _dumps(value: dict) -> str:
    return json.dumps(value, default=str)


# ─── Redis ────────────────────────────────────────────────────────────────────

class RedisKVStore(KVStore):
    def __init__(self, client: aioredis.Redis, prefix: str = "ledgerflow:"):
        self._redis = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> dict | None:
        raw = await self._redis.get(self._key(key))
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        await self._redis.set(self._key(key), _dumps(value), ex=ttl_seconds)

    async def merge(self, key: str, updater: Updater, ttl_seconds: int) -> dict | None:
        full_key = self._key(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(full_key)
                    raw = await pipe.get(full_key)
                    updated = updater(json.loads(raw) if raw else None)
                    pipe.multi()
                    if updated is None:
                        pipe.delete(full_key)
                    else:
                        pipe.set(full_key, _dumps(updated), ex=ttl_seconds)
                    await pipe.execute()
                    return updated
                except WatchError:
                    # Another writer touched the key between WATCH and EXEC
                    logger.debug("merge retry on contended key %s", full_key)
                    continue

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._redis.expire(self._key(key), ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def set_if_absent(self, key: str, value: dict, ttl_seconds: int) -> bool:
        return bool(await self._redis.set(self._key(key), _dumps(value), ex=ttl_seconds, nx=True))


# ─── In-memory ────────────────────────────────────────────────────────────────

class InMemoryKVStore(KVStore):
    """Process-local store with the same TTL and atomicity semantics."""

    def __init__(self, clock: Clock = system_clock):
        self._clock = clock
        self._data: dict[str, tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at <= self._clock.now():
            del self._data[key]
            return None
        return raw

    def _put(self, key: str, value: dict, ttl_seconds: int) -> None:
        self._data[key] = (_dumps(value), self._clock.now() + timedelta(seconds=ttl_seconds))

    async def get(self, key: str) -> dict | None:
        raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        self._put(key, value, ttl_seconds)

    async def merge(self, key: str, updater: Updater, ttl_seconds: int) -> dict | None:
        async with self._lock:
            raw = self._live(key)
            updated = updater(json.loads(raw) if raw is not None else None)
            if updated is None:
                self._data.pop(key, None)
            else:
                self._put(key, updated, ttl_seconds)
            return copy.deepcopy(updated)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        raw = self._live(key)
        if raw is None:
            return False
        self._data[key] = (raw, self._clock.now() + timedelta(seconds=ttl_seconds))
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def set_if_absent(self, key: str, value: dict, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._put(key, value, ttl_seconds)
            return True
