"""
Service wiring.

``build_runtime`` assembles the sync and forecast services from their
collaborators. The API builds one runtime at startup (``app.state.runtime``);
each Celery task builds its own inside ``worker_runtime`` because every
task runs in a fresh event loop.
"""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import redis.asyncio as aioredis
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ledgerflow.core.clock import Clock, system_clock
from ledgerflow.core.config import settings
from ledgerflow.core.kvstore import KVStore, RedisKVStore
from ledgerflow.services.accounting_client import AccountingApiClient
from ledgerflow.services.checkpoint import CheckpointStore
from ledgerflow.services.credentials import CredentialProvider, DatabaseCredentialProvider
from ledgerflow.services.forecast import ForecastService
from ledgerflow.services.ledger import LedgerRepository
from ledgerflow.services.progress import ProgressTracker
from ledgerflow.services.rate_limited_invoker import InvokerRegistry
from ledgerflow.services.sync import Dispatcher, SyncOrchestrator, SyncService, celery_dispatcher
from ledgerflow.services.sync_lock import SyncLock


@dataclass
class Runtime:
    kv: KVStore
    session_factory: async_sessionmaker[AsyncSession]
    http: httpx.AsyncClient
    clock: Clock
    invokers: InvokerRegistry
    credentials: CredentialProvider
    ledger: LedgerRepository
    checkpoints: CheckpointStore
    progress: ProgressTracker
    lock: SyncLock
    orchestrator: SyncOrchestrator
    sync_service: SyncService
    forecast_service: ForecastService


def build_runtime(
    *,
    kv: KVStore,
    session_factory: async_sessionmaker[AsyncSession],
    http: httpx.AsyncClient,
    clock: Clock = system_clock,
    dispatcher: Dispatcher | None = None,
    credentials: CredentialProvider | None = None,
    invokers: InvokerRegistry | None = None,
    page_size: int | None = None,
) -> Runtime:
    invokers = invokers or InvokerRegistry(clock=clock)
    client = AccountingApiClient(http=http, invokers=invokers)
    if page_size:
        client.page_size = page_size
    credentials = credentials or DatabaseCredentialProvider(session_factory, http, clock=clock)
    ledger = LedgerRepository(session_factory, clock=clock)
    checkpoints = CheckpointStore(kv, clock=clock)
    progress = ProgressTracker(kv, clock=clock)
    lock = SyncLock(kv)
    orchestrator = SyncOrchestrator(
        client=client,
        credentials=credentials,
        ledger=ledger,
        checkpoints=checkpoints,
        progress=progress,
        lock=lock,
        kv=kv,
        session_factory=session_factory,
        clock=clock,
    )
    sync_service = SyncService(
        kv=kv,
        checkpoints=checkpoints,
        progress=progress,
        lock=lock,
        dispatcher=dispatcher or celery_dispatcher,
        credentials=credentials,
        orchestrator=orchestrator,
        clock=clock,
    )
    return Runtime(
        kv=kv,
        session_factory=session_factory,
        http=http,
        clock=clock,
        invokers=invokers,
        credentials=credentials,
        ledger=ledger,
        checkpoints=checkpoints,
        progress=progress,
        lock=lock,
        orchestrator=orchestrator,
        sync_service=sync_service,
        forecast_service=ForecastService(session_factory, kv, clock=clock),
    )


@asynccontextmanager
async def worker_runtime() -> AsyncIterator[Runtime]:
    """Runtime with loop-local Redis, HTTP and DB resources for one Celery task."""
    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    http = httpx.AsyncClient(timeout=settings.upstream_call_timeout_seconds)
    try:
        yield build_runtime(
            kv=RedisKVStore(redis_client),
            session_factory=async_sessionmaker(engine, expire_on_commit=False),
            http=http,
        )
    finally:
        await http.aclose()
        await engine.dispose()
        await redis_client.aclose()


# ─── FastAPI dependencies ───────────────────────────────────────────────────

def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_sync_service(request: Request) -> SyncService:
    return get_runtime(request).sync_service


def get_forecast_service(request: Request) -> ForecastService:
    return get_runtime(request).forecast_service
