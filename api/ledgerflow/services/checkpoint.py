"""Sync checkpoints (``sync:state:{sync_id}``) in the shared KV store."""
from dataclasses import asdict, dataclass, field
from datetime import datetime

from ledgerflow.core.clock import Clock, system_clock
from ledgerflow.core.config import settings
from ledgerflow.core.kvstore import KVStore

SYNC_TYPES = ("full", "incremental", "reconciliation")


@dataclass
class EntityCursor:
    """Per-entity position: last committed page and running counts."""
    entity: str
    last_page: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    drift: int = 0
    max_modified: str | None = None     # newest upstream modification seen (ISO)

    def observe_modified(self, modified_at: datetime | None) -> None:
        if modified_at is None:
            return
        if self.max_modified is None or modified_at > datetime.fromisoformat(self.max_modified):
            self.max_modified = modified_at.isoformat()


@dataclass
class SyncState:
    sync_id: str
    tenant_id: str
    sync_type: str
    status: str = "pending"              # pending | in_progress | completed | failed
    entity_cursors: list[EntityCursor] = field(default_factory=list)
    completed_entities: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    error_kind: str | None = None        # LedgerflowError kind of the failure
    options: dict = field(default_factory=dict)
    progress_seq: int = 0                # last sequence number written to progress

    def cursor(self, entity: str) -> EntityCursor:
        for cursor in self.entity_cursors:
            if cursor.entity == entity:
                return cursor
        cursor = EntityCursor(entity=entity)
        self.entity_cursors.append(cursor)
        return cursor

    @property
    def last_completed_entity(self) -> str | None:
        return self.completed_entities[-1] if self.completed_entities else None

    def totals(self) -> dict[str, int]:
        totals = {"created": 0, "updated": 0, "skipped": 0, "drift": 0}
        for cursor in self.entity_cursors:
            for key in totals:
                totals[key] += getattr(cursor, key)
        return totals

    def to_dict(self) -> dict:
        doc = asdict(self)
        for key in ("started_at", "updated_at", "completed_at"):
            value = getattr(self, key)
            doc[key] = value.isoformat() if value else None
        return doc

    @classmethod
    def from_dict(cls, doc: dict) -> "SyncState":
        doc = dict(doc)
        doc["entity_cursors"] = [EntityCursor(**c) for c in doc.get("entity_cursors") or []]
        for key in ("started_at", "updated_at", "completed_at"):
            if doc.get(key):
                doc[key] = datetime.fromisoformat(doc[key])
        return cls(**doc)


def state_key(sync_id: str) -> str:
    return f"sync:state:{sync_id}"


class CheckpointStore:
    def __init__(self, kv: KVStore, clock: Clock = system_clock, ttl_seconds: int | None = None):
        self._kv = kv
        self._clock = clock
        self._ttl = ttl_seconds or settings.checkpoint_ttl_seconds

    async def save(self, state: SyncState) -> None:
        """Persist the state; every write restarts the retention TTL."""
        state.updated_at = self._clock.now()
        await self._kv.set(state_key(state.sync_id), state.to_dict(), self._ttl)

    async def load(self, sync_id: str) -> SyncState | None:
        doc = await self._kv.get(state_key(sync_id))
        return SyncState.from_dict(doc) if doc else None


def checkpoint_summary(state: SyncState | None) -> dict:
    if state is None:
        return {"exists": False, "timestamp": None, "last_completed_entity": None, "processed_counts": None}
    return {
        "exists": True,
        "timestamp": state.updated_at,
        "last_completed_entity": state.last_completed_entity,
        "processed_counts": {
            c.entity: {"created": c.created, "updated": c.updated, "skipped": c.skipped, "last_page": c.last_page}
            for c in state.entity_cursors
        },
    }
