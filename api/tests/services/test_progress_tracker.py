"""
Tests for services/progress.py
"""
import pytest

from ledgerflow.services.progress import ProgressTracker


@pytest.fixture
def tracker(kv, clock):
    return ProgressTracker(kv, clock=clock, ttl_seconds=3600)


class TestProgressTracker:
    @pytest.mark.asyncio
    async def test_start_reads_as_pending(self, tracker):
        await tracker.start("s1", "t1", "full", ["accounts", "contacts"])
        doc = await tracker.get("s1")
        assert doc["status"] == "pending"
        assert doc["percentage"] == 0
        assert doc["steps"] == {
            "accounts": {"status": "pending", "count": 0},
            "contacts": {"status": "pending", "count": 0},
        }
        assert "_seq" not in doc

    @pytest.mark.asyncio
    async def test_unknown_sync_is_none(self, tracker):
        assert await tracker.get("nope") is None

    @pytest.mark.asyncio
    async def test_nested_steps_merge_key_by_key(self, tracker):
        await tracker.start("s1", "t1", "full", ["accounts", "contacts"])
        await tracker.update("s1", {"steps": {"accounts": {"count": 4}}})
        await tracker.update("s1", {"steps": {"accounts": {"status": "completed"}}})
        doc = await tracker.get("s1")
        assert doc["steps"]["accounts"] == {"status": "completed", "count": 4}
        assert doc["steps"]["contacts"] == {"status": "pending", "count": 0}

    @pytest.mark.asyncio
    async def test_percentage_never_decreases(self, tracker):
        await tracker.start("s1", "t1", "full", [])
        await tracker.update("s1", {"percentage": 60})
        doc = await tracker.update("s1", {"percentage": 40, "current_step": "invoices"})
        assert doc["percentage"] == 60
        assert doc["current_step"] == "invoices"

    @pytest.mark.asyncio
    async def test_stale_sequence_is_dropped_per_leaf(self, tracker):
        await tracker.start("s1", "t1", "full", ["accounts"])
        await tracker.update("s1", {"steps": {"accounts": {"count": 10}}, "current_step": "contacts"}, seq=5)
        await tracker.update("s1", {"steps": {"accounts": {"count": 3}}, "error": "late"}, seq=4)
        doc = await tracker.get("s1")
        assert doc["steps"]["accounts"]["count"] == 10
        assert doc["current_step"] == "contacts"
        # leaf never written at seq 5 still accepts the older write
        assert doc["error"] == "late"

    @pytest.mark.asyncio
    async def test_last_updated_refreshes(self, tracker, clock):
        await tracker.start("s1", "t1", "full", [])
        clock.advance(5)
        doc = await tracker.update("s1", {"status": "in_progress"})
        assert doc["last_updated"] == clock.now().isoformat()

    @pytest.mark.asyncio
    async def test_expires_after_ttl_from_last_write(self, tracker, clock):
        await tracker.start("s1", "t1", "full", [])
        clock.advance(3000)
        await tracker.update("s1", {"percentage": 10})
        clock.advance(3000)
        assert await tracker.get("s1") is not None
        clock.advance(601)
        assert await tracker.get("s1") is None

    @pytest.mark.asyncio
    async def test_update_recreates_missing_entry(self, tracker):
        doc = await tracker.update("ghost", {"percentage": 20})
        assert doc["sync_id"] == "ghost"
        assert doc["percentage"] == 20

    @pytest.mark.asyncio
    async def test_complete_and_fail(self, tracker):
        await tracker.start("s1", "t1", "full", [])
        done = await tracker.complete("s1")
        assert done["status"] == "completed"
        assert done["percentage"] == 100
        assert done["completed_at"] is not None

        await tracker.start("s2", "t1", "full", [])
        failed = await tracker.fail("s2", "upstream unavailable", kind="upstream_unavailable")
        assert failed["status"] == "failed"
        assert failed["error"] == "upstream unavailable"
        assert failed["error_kind"] == "upstream_unavailable"
