"""Sync control surface.

Starting a sync returns immediately with a ``sync_id``; the work runs on the
Celery worker and clients poll ``/sync/{sync_id}/progress``. Only one sync
per tenant may run at a time; a second start gets 409.
"""
import logging

from fastapi import APIRouter, Depends
from starlette.requests import Request

from ledgerflow.core.config import settings
from ledgerflow.core.deps import get_sync_service
from ledgerflow.core.rate_limit import limiter, tenant_key
from ledgerflow.schemas.sync import (
    CheckpointResponse,
    ReconcileRequest,
    SyncProgressResponse,
    SyncStartedResponse,
    SyncStartRequest,
)
from ledgerflow.services.sync import SyncOptions, SyncService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


@router.post("/tenants/{tenant_id}/sync", response_model=SyncStartedResponse, status_code=202)
async def start_sync(
    tenant_id: str,
    payload: SyncStartRequest | None = None,
    service: SyncService = Depends(get_sync_service),
):
    payload = payload or SyncStartRequest()
    sync_id = await service.start_sync(tenant_id, payload.mode)
    return SyncStartedResponse(sync_id=sync_id)


@router.post("/tenants/{tenant_id}/sync/reconcile", response_model=SyncStartedResponse, status_code=202)
@limiter.limit(settings.reconciliation_rate_limit, key_func=tenant_key)
async def start_reconciliation(
    request: Request,
    tenant_id: str,
    payload: ReconcileRequest | None = None,
    service: SyncService = Depends(get_sync_service),
):
    """Compare a date window against the accounting system and flag drift. Nothing is overwritten."""
    payload = payload or ReconcileRequest()
    sync_id = await service.start_sync(
        tenant_id, "reconciliation", SyncOptions(from_date=payload.from_date, to_date=payload.to_date)
    )
    return SyncStartedResponse(sync_id=sync_id)


@router.post("/tenants/{tenant_id}/sync/{sync_id}/resume", response_model=SyncStartedResponse, status_code=202)
async def resume_sync(tenant_id: str, sync_id: str, service: SyncService = Depends(get_sync_service)):
    await service.resume_sync(tenant_id, sync_id)
    return SyncStartedResponse(sync_id=sync_id)


@router.post("/sync/{sync_id}/cancel", status_code=202)
async def cancel_sync(sync_id: str, service: SyncService = Depends(get_sync_service)):
    await service.cancel_sync(sync_id)
    return {"sync_id": sync_id, "status": "cancelling"}


@router.get("/sync/{sync_id}/progress", response_model=SyncProgressResponse)
async def get_progress(sync_id: str, service: SyncService = Depends(get_sync_service)):
    return await service.get_progress(sync_id)


@router.get("/sync/{sync_id}/checkpoint", response_model=CheckpointResponse)
async def get_checkpoint(sync_id: str, service: SyncService = Depends(get_sync_service)):
    return await service.get_checkpoint(sync_id)
