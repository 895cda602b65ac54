from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class SyncStartRequest(BaseModel):
    """Full and incremental syncs take no date window; see ReconcileRequest."""
    model_config = ConfigDict(extra="forbid")

    mode: Literal["full", "incremental"] = "incremental"


class ReconcileRequest(BaseModel):
    """Window to reconcile; defaults to the last 90 days."""
    from_date: date | None = None
    to_date: date | None = None


class SyncStartedResponse(BaseModel):
    sync_id: str


class StepProgress(BaseModel):
    status: str                     # pending | in_progress | completed | failed
    count: int = 0
    error: str | None = None


class SyncProgressResponse(BaseModel):
    sync_id: str
    tenant_id: str | None = None
    sync_type: str | None = None
    status: str
    percentage: int
    current_step: str | None = None
    steps: dict[str, StepProgress] = {}
    started_at: datetime | None = None
    last_updated: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    error_kind: str | None = None


class EntityCounts(BaseModel):
    created: int
    updated: int
    skipped: int
    last_page: int


class CheckpointResponse(BaseModel):
    exists: bool
    timestamp: datetime | None = None
    last_completed_entity: str | None = None
    processed_counts: dict[str, EntityCounts] | None = None
