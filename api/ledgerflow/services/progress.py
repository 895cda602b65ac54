"""
Live progress of a running sync, polled by clients.

Stored in the shared KV store under ``sync:progress:{sync_id}`` and expiring
a fixed TTL after the last write. Updates are merges: a writer sends only
the fields it knows and they are folded into the stored snapshot.

  - nested dicts (``steps``) merge key by key
  - ``last_updated`` is refreshed on every write
  - ``percentage`` never decreases
  - every leaf remembers the sequence number that last wrote it; a write
    carrying a lower sequence for that leaf is dropped

``get`` returns None for an unknown (or expired) sync. A sync that exists
but has not reported anything yet reads as status ``pending`` at 0%.
"""
import copy
import logging

from ledgerflow.core.clock import Clock, system_clock
from ledgerflow.core.config import settings
from ledgerflow.core.kvstore import KVStore

logger = logging.getLogger(__name__)

_SEQ = "_seq"


def progress_key(sync_id: str) -> str:
    return f"sync:progress:{sync_id}"


def _merge(current: dict, partial: dict, seqs: dict, seq: int | None, prefix: str = "") -> None:
    for key, value in partial.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            target = current.get(key)
            if not isinstance(target, dict):
                target = current[key] = {}
            _merge(target, value, seqs, seq, f"{path}.")
            continue
        if seq is not None:
            if seqs.get(path, -1) > seq:
                continue
            seqs[path] = seq
        current[key] = value


def _public(doc: dict | None) -> dict | None:
    if doc is None:
        return None
    return {k: v for k, v in doc.items() if k != _SEQ}


class ProgressTracker:
    def __init__(self, kv: KVStore, clock: Clock = system_clock, ttl_seconds: int | None = None):
        self._kv = kv
        self._clock = clock
        self._ttl = ttl_seconds or settings.progress_ttl_seconds

    async def start(self, sync_id: str, tenant_id: str, sync_type: str, entities: list[str]) -> dict:
        now = self._clock.now().isoformat()
        doc = {
            "sync_id": sync_id,
            "tenant_id": tenant_id,
            "sync_type": sync_type,
            "status": "pending",
            "percentage": 0,
            "current_step": None,
            "steps": {entity: {"status": "pending", "count": 0} for entity in entities},
            "started_at": now,
            "last_updated": now,
            "completed_at": None,
            "error": None,
            "error_kind": None,
            _SEQ: {},
        }
        await self._kv.set(progress_key(sync_id), doc, self._ttl)
        return _public(doc)

    async def update(self, sync_id: str, partial: dict, seq: int | None = None) -> dict | None:
        now = self._clock.now().isoformat()
        partial = copy.deepcopy(partial)

        def updater(current: dict | None) -> dict:
            if current is None:
                logger.debug("Progress for sync %s missing or expired, recreating", sync_id)
                current = {"sync_id": sync_id, "status": "pending", "percentage": 0, "steps": {}, _SEQ: {}}
            seqs = current.setdefault(_SEQ, {})
            if "percentage" in partial:
                partial["percentage"] = max(current.get("percentage") or 0, partial["percentage"])
            _merge(current, partial, seqs, seq)
            current["last_updated"] = now
            return current

        return _public(await self._kv.merge(progress_key(sync_id), updater, self._ttl))

    async def get(self, sync_id: str) -> dict | None:
        return _public(await self._kv.get(progress_key(sync_id)))

    async def complete(self, sync_id: str, seq: int | None = None) -> dict | None:
        return await self.update(
            sync_id,
            {
                "status": "completed",
                "percentage": 100,
                "current_step": None,
                "completed_at": self._clock.now().isoformat(),
                "error": None,
                "error_kind": None,
            },
            seq,
        )

    async def fail(self, sync_id: str, error: str, seq: int | None = None, kind: str | None = None) -> dict | None:
        return await self.update(sync_id, {"status": "failed", "error": error, "error_kind": kind}, seq)
