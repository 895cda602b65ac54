"""
Tests for core/kvstore.py (in-memory backend) and services/sync_lock.py
"""
import asyncio

import pytest

from ledgerflow.services.sync_lock import SyncLock, lock_key


# ── TTL semantics ─────────────────────────────────────────────────────────────

class TestInMemoryKVStore:
    @pytest.mark.asyncio
    async def test_value_expires_after_ttl(self, kv, clock):
        await kv.set("k", {"a": 1}, ttl_seconds=10)
        clock.advance(9)
        assert await kv.get("k") == {"a": 1}
        clock.advance(1)
        assert await kv.get("k") is None

    @pytest.mark.asyncio
    async def test_expire_extends_live_key_only(self, kv, clock):
        await kv.set("k", {"a": 1}, ttl_seconds=5)
        assert await kv.expire("k", 60)
        clock.advance(30)
        assert await kv.get("k") == {"a": 1}
        assert not await kv.expire("missing", 60)

    @pytest.mark.asyncio
    async def test_set_if_absent(self, kv, clock):
        assert await kv.set_if_absent("k", {"v": 1}, 10)
        assert not await kv.set_if_absent("k", {"v": 2}, 10)
        assert (await kv.get("k"))["v"] == 1
        clock.advance(11)
        assert await kv.set_if_absent("k", {"v": 3}, 10)

    @pytest.mark.asyncio
    async def test_merge_returning_none_deletes(self, kv):
        await kv.set("k", {"a": 1}, 10)
        assert await kv.merge("k", lambda current: None, 10) is None
        assert await kv.get("k") is None

    @pytest.mark.asyncio
    async def test_concurrent_merges_are_serialized(self, kv):
        def bump(current):
            current = current or {"n": 0}
            current["n"] += 1
            return current

        await asyncio.gather(*[kv.merge("counter", bump, 60) for _ in range(50)])
        assert (await kv.get("counter"))["n"] == 50

    @pytest.mark.asyncio
    async def test_returned_values_are_copies(self, kv):
        await kv.set("k", {"nested": {"a": 1}}, 10)
        value = await kv.get("k")
        value["nested"]["a"] = 99
        assert (await kv.get("k"))["nested"]["a"] == 1


# ── Sync lock ─────────────────────────────────────────────────────────────────

class TestSyncLock:
    @pytest.mark.asyncio
    async def test_single_holder_per_tenant(self, kv):
        lock = SyncLock(kv, ttl_seconds=60)
        assert await lock.acquire("t1", "sync-a")
        assert not await lock.acquire("t1", "sync-b")
        assert await lock.acquire("t2", "sync-b")
        assert await lock.holder("t1") == "sync-a"

    @pytest.mark.asyncio
    async def test_reacquire_by_same_holder(self, kv):
        lock = SyncLock(kv, ttl_seconds=60)
        await lock.acquire("t1", "sync-a")
        assert await lock.acquire("t1", "sync-a")

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, kv):
        lock = SyncLock(kv, ttl_seconds=60)
        await lock.acquire("t1", "sync-a")
        await lock.release("t1", "sync-b")
        assert await lock.holder("t1") == "sync-a"
        await lock.release("t1", "sync-a")
        assert await lock.holder("t1") is None
        assert await kv.get(lock_key("t1")) is None

    @pytest.mark.asyncio
    async def test_abandoned_lock_expires(self, kv, clock):
        lock = SyncLock(kv, ttl_seconds=60)
        await lock.acquire("t1", "crashed")
        clock.advance(61)
        assert await lock.acquire("t1", "sync-b")
