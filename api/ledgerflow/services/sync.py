"""
Ledger sync: resumable, checkpointed, idempotent.

``SyncOrchestrator.run_sync`` pulls every entity in dependency order
(accounts before the transactions that reference them), page by page:

  1. check for cancellation
  2. get a credential (cached by the provider until it expires)
  3. fetch the page through the rate-limited invoker
  4. apply the page to the ledger in one transaction
  5. checkpoint {entity, page, counts} and refresh the tenant lock
  6. report progress

A failed page stops the whole sync; the checkpoint stays valid and a resume
continues at the first entity not yet completed, from its last committed
page. Replaying a page is harmless because upserts are keyed by external id.

Modes:
  full            ignore watermarks, pull everything
  incremental     send each entity's watermark as If-Modified-Since; the new
                  watermark is the newest modification seen in the data
  reconciliation  pull a date window and flag drift instead of writing

``SyncService`` is the control surface used by the API: it enforces one
running sync per tenant, creates the checkpoint and hands the work to a
background dispatcher (Celery in production).
"""
import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgerflow.core.clock import Clock, system_clock
from ledgerflow.core.config import settings
from ledgerflow.core.errors import AuthError, Conflict, LedgerflowError, NotFound, ValidationError
from ledgerflow.core.kvstore import KVStore
from ledgerflow.models.tenant import TenantConnection
from ledgerflow.services.accounting_client import (
    ENTITY_ORDER,
    AccountingApiClient,
    EndOfData,
    PageFailed,
    PageQuery,
)
from ledgerflow.services.checkpoint import (
    SYNC_TYPES,
    CheckpointStore,
    SyncState,
    checkpoint_summary,
)
from ledgerflow.services.credentials import CredentialProvider
from ledgerflow.services.forecast import invalidate_forecast_cache
from ledgerflow.services.ledger import LedgerRepository, ReconciliationDrift
from ledgerflow.services.payment_patterns import recalculate_payment_patterns
from ledgerflow.services.progress import ProgressTracker
from ledgerflow.services.rate_limited_invoker import UpstreamFailure
from ledgerflow.services.report_parser import extract_financial_position
from ledgerflow.services.sync_lock import SyncLock
from ledgerflow.services.tax_obligations import project_tax_obligations
from ledgerflow.worker import celery_app

logger = logging.getLogger(__name__)

FINANCIAL_POSITION_STEP = "financial_position"
CANCELLED = "cancelled"


def cancel_key(sync_id: str) -> str:
    return f"sync:cancel:{sync_id}"


def steps_for(mode: str) -> list[str]:
    if mode == "reconciliation":
        return list(ENTITY_ORDER)
    return [*ENTITY_ORDER, FINANCIAL_POSITION_STEP]


@dataclass
class SyncOptions:
    from_date: date | None = None
    to_date: date | None = None

    def validate(self, mode: str) -> None:
        if mode != "reconciliation" and (self.from_date or self.to_date):
            raise ValidationError(f"A date window only applies to reconciliation, not to {mode} syncs")
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValidationError("from_date must not be after to_date")

    def resolved(self, mode: str, today: date) -> "SyncOptions":
        """Validated options; a reconciliation without from_date covers the last
        ``reconciliation_window_days`` up to to_date (or today)."""
        self.validate(mode)
        if mode != "reconciliation" or self.from_date is not None:
            return self
        options = SyncOptions(
            from_date=today - timedelta(days=settings.reconciliation_window_days),
            to_date=self.to_date or today,
        )
        options.validate(mode)
        return options

    def to_dict(self) -> dict:
        return {
            "from_date": self.from_date.isoformat() if self.from_date else None,
            "to_date": self.to_date.isoformat() if self.to_date else None,
        }

    @classmethod
    def from_dict(cls, doc: dict | None) -> "SyncOptions":
        doc = doc or {}
        return cls(
            from_date=date.fromisoformat(doc["from_date"]) if doc.get("from_date") else None,
            to_date=date.fromisoformat(doc["to_date"]) if doc.get("to_date") else None,
        )


@dataclass
class SyncResult:
    sync_id: str
    tenant_id: str
    sync_type: str
    status: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    drift_count: int = 0
    completed_entities: list[str] = field(default_factory=list)
    drifts: list[ReconciliationDrift] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def from_state(cls, state: SyncState, drifts: list[ReconciliationDrift] | None = None) -> "SyncResult":
        totals = state.totals()
        return cls(
            sync_id=state.sync_id,
            tenant_id=state.tenant_id,
            sync_type=state.sync_type,
            status=state.status,
            created=totals["created"],
            updated=totals["updated"],
            skipped=totals["skipped"],
            drift_count=totals["drift"],
            completed_entities=list(state.completed_entities),
            drifts=drifts or [],
            error=state.error,
            error_kind=state.error_kind,
        )

    def summary(self) -> dict:
        return {
            "sync_id": self.sync_id,
            "status": self.status,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "drift_count": self.drift_count,
            "error": self.error,
            "error_kind": self.error_kind,
        }


# ─── Orchestrator ─────────────────────────────────────────────────────────────

class SyncOrchestrator:
    def __init__(
        self,
        *,
        client: AccountingApiClient,
        credentials: CredentialProvider,
        ledger: LedgerRepository,
        checkpoints: CheckpointStore,
        progress: ProgressTracker,
        lock: SyncLock,
        kv: KVStore,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = system_clock,
    ):
        self._client = client
        self._credentials = credentials
        self._ledger = ledger
        self._checkpoints = checkpoints
        self._progress = progress
        self._lock = lock
        self._kv = kv
        self._session_factory = session_factory
        self._clock = clock
        self._cancel_events: dict[str, asyncio.Event] = {}

    def _next_seq(self, state: SyncState) -> int:
        now_us = int(self._clock.now().timestamp() * 1_000_000)
        state.progress_seq = max(now_us, state.progress_seq + 1)
        return state.progress_seq

    async def _report(self, state: SyncState, partial: dict) -> None:
        await self._progress.update(state.sync_id, partial, seq=self._next_seq(state))

    def request_cancel(self, sync_id: str) -> bool:
        """Signal an in-process sync to stop before its next upstream call."""
        event = self._cancel_events.get(sync_id)
        if event is None:
            return False
        event.set()
        return True

    async def _cancel_requested(self, sync_id: str) -> bool:
        event = self._cancel_events.get(sync_id)
        if event is not None and event.is_set():
            return True
        return await self._kv.get(cancel_key(sync_id)) is not None

    async def run_sync(
        self,
        tenant_id: str,
        mode: str | None,
        options: SyncOptions | None = None,
        sync_id: str | None = None,
    ) -> SyncResult:
        state = await self._checkpoints.load(sync_id) if sync_id else None
        if state is None:
            if mode not in SYNC_TYPES:
                raise ValidationError(f"Unknown sync mode {mode!r}")
            options = (options or SyncOptions()).resolved(mode, self._clock.today())
            state = SyncState(
                sync_id=sync_id or str(uuid.uuid4()),
                tenant_id=tenant_id,
                sync_type=mode,
                started_at=self._clock.now(),
                options=options.to_dict(),
            )
            await self._progress.start(state.sync_id, tenant_id, mode, steps_for(mode))
        else:
            if state.tenant_id != tenant_id:
                raise NotFound(f"Sync {sync_id} not found for tenant {tenant_id}")
            if mode is not None and mode != state.sync_type:
                raise ValidationError(f"Sync {sync_id} is a {state.sync_type} sync and must resume as one")
            if state.status == "completed":
                logger.info("Sync %s already completed, nothing to resume", sync_id)
                return SyncResult.from_state(state)

        sync_id = state.sync_id
        mode = state.sync_type
        options = SyncOptions.from_dict(state.options)

        if not await self._lock.acquire(tenant_id, sync_id):
            raise Conflict(
                f"A sync is already running for tenant {tenant_id}",
                detail={"sync_id": await self._lock.holder(tenant_id)},
            )

        resuming = bool(state.completed_entities or state.entity_cursors)
        logger.info(
            "%s %s sync %s for tenant %s", "Resuming" if resuming else "Starting", mode, sync_id, tenant_id
        )
        self._cancel_events[sync_id] = asyncio.Event()
        state.status = "in_progress"
        state.error = None
        state.error_kind = None
        state.completed_at = None
        await self._checkpoints.save(state)
        await self._report(state, {"status": "in_progress", "error": None})

        drifts: list[ReconciliationDrift] = []
        try:
            error = await self._pull_entities(state, options, drifts)
            if error is None and mode != "reconciliation":
                error = await self._pull_financial_position(state)
            if error is None:
                await self._finish(state)
        except asyncio.CancelledError:
            logger.warning("Sync %s for tenant %s cancelled by task cancellation", sync_id, tenant_id)
            await self._fail(state, CANCELLED)
            raise
        except LedgerflowError as exc:
            logger.error("Sync %s for tenant %s failed: %s", sync_id, tenant_id, exc.message)
            error = exc.message
            state.error_kind = exc.kind
        except Exception as exc:
            logger.exception("Sync %s for tenant %s crashed", sync_id, tenant_id)
            error = f"Internal error: {exc}"
            state.error_kind = "internal"
        finally:
            self._cancel_events.pop(sync_id, None)
            await self._lock.release(tenant_id, sync_id)

        if error is not None:
            await self._fail(state, error)
        return SyncResult.from_state(state, drifts)

    async def _pull_entities(
        self, state: SyncState, options: SyncOptions, drifts: list[ReconciliationDrift]
    ) -> str | None:
        """Run every pending entity; returns an error message or None."""
        tenant_id, sync_id, mode = state.tenant_id, state.sync_id, state.sync_type
        watermarks = await self._ledger.get_watermarks(tenant_id) if mode == "incremental" else {}
        total_steps = len(steps_for(mode))

        for entity in ENTITY_ORDER:
            if entity in state.completed_entities:
                continue
            cursor = state.cursor(entity)
            await self._report(
                state,
                {
                    "current_step": entity,
                    "steps": {entity: {"status": "in_progress", "count": cursor.created + cursor.updated}},
                },
            )

            page = cursor.last_page + 1
            while True:
                if await self._cancel_requested(sync_id):
                    logger.info("Sync %s cancelled before %s page %d", sync_id, entity, page)
                    return CANCELLED

                credential = await self._credentials.get_valid_credential(tenant_id)
                query = PageQuery(page=page)
                if mode == "incremental":
                    query.modified_since = watermarks.get(entity)
                elif mode == "reconciliation":
                    query.from_date, query.to_date = options.from_date, options.to_date

                result = await self._client.fetch_page(tenant_id, credential, entity, query)
                if isinstance(result, PageFailed):
                    return await self._upstream_failed(state, entity, f"{entity} page {page}", result.failure)
                if isinstance(result, EndOfData):
                    break

                outcome = await self._ledger.apply_page(
                    tenant_id,
                    entity,
                    result.records,
                    reconcile_sync_id=sync_id if mode == "reconciliation" else None,
                )
                cursor.last_page = page
                cursor.created += outcome.created
                cursor.updated += outcome.updated
                cursor.skipped += outcome.skipped + result.skipped
                cursor.drift += len(outcome.drifts)
                for record in result.records:
                    cursor.observe_modified(record.modified_at)
                drifts.extend(outcome.drifts)

                await self._checkpoints.save(state)
                await self._lock.refresh(tenant_id, sync_id)
                await self._report(
                    state, {"steps": {entity: {"count": cursor.created + cursor.updated}}}
                )
                logger.debug(
                    "Sync %s %s page %d: +%d created, %d updated, %d skipped",
                    sync_id, entity, page, outcome.created, outcome.updated, outcome.skipped + result.skipped,
                )

                if not result.has_more:
                    break
                page += 1

            if mode == "reconciliation":
                missing = await self._ledger.flag_missing_upstream(
                    tenant_id, entity, sync_id, options.from_date, options.to_date
                )
                cursor.drift += len(missing)
                drifts.extend(missing)

            state.completed_entities.append(entity)
            await self._checkpoints.save(state)
            await self._report(
                state,
                {
                    "percentage": int(len(state.completed_entities) * 100 / total_steps),
                    "steps": {entity: {"status": "completed"}},
                },
            )
            logger.info(
                "Sync %s finished %s: %d created, %d updated, %d skipped, %d drift",
                sync_id, entity, cursor.created, cursor.updated, cursor.skipped, cursor.drift,
            )
        return None

    async def _upstream_failed(self, state: SyncState, step: str, where: str, failure: UpstreamFailure) -> str:
        error = f"{where}: {failure.message}"
        state.error_kind = failure.to_error().kind
        if failure.kind == "auth":
            # The token was refused upstream; the next attempt must reload it
            self._credentials.invalidate(state.tenant_id)
        await self._report(state, {"steps": {step: {"status": "failed", "error": error}}})
        return error

    async def _pull_financial_position(self, state: SyncState) -> str | None:
        if FINANCIAL_POSITION_STEP in state.completed_entities:
            return None
        if await self._cancel_requested(state.sync_id):
            return CANCELLED
        await self._report(
            state,
            {"current_step": FINANCIAL_POSITION_STEP, "steps": {FINANCIAL_POSITION_STEP: {"status": "in_progress"}}},
        )
        credential = await self._credentials.get_valid_credential(state.tenant_id)
        as_of = self._clock.today()
        report = await self._client.fetch_balance_sheet(state.tenant_id, credential, as_of)
        if isinstance(report, UpstreamFailure):
            return await self._upstream_failed(state, FINANCIAL_POSITION_STEP, FINANCIAL_POSITION_STEP, report)

        snapshot = extract_financial_position(report, as_of)
        await self._ledger.save_financial_position(state.tenant_id, snapshot, state.sync_id)
        taxes = project_tax_obligations(snapshot, as_of, as_of + timedelta(days=settings.forecast_max_days))
        await self._ledger.save_tax_obligations(state.tenant_id, taxes)
        state.completed_entities.append(FINANCIAL_POSITION_STEP)
        await self._checkpoints.save(state)
        await self._report(
            state,
            {
                "percentage": 100,
                "steps": {FINANCIAL_POSITION_STEP: {"status": "completed", "count": len(snapshot.bank_balances)}},
            },
        )
        return None

    async def _finish(self, state: SyncState) -> None:
        state.status = "completed"
        state.completed_at = self._clock.now()
        watermarks: dict[str, datetime] = {}
        if state.sync_type != "reconciliation":
            watermarks = {
                c.entity: datetime.fromisoformat(c.max_modified)
                for c in state.entity_cursors
                if c.max_modified
            }
            await recalculate_payment_patterns(self._session_factory, self._ledger, state.tenant_id, self._clock)
        seq = self._next_seq(state)
        await self._ledger.record_run(state, watermarks)
        await self._checkpoints.save(state)
        await invalidate_forecast_cache(self._kv, state.tenant_id)
        await self._progress.complete(state.sync_id, seq=seq)
        totals = state.totals()
        logger.info(
            "Sync %s for tenant %s completed: %d created, %d updated, %d skipped, %d drift",
            state.sync_id, state.tenant_id, totals["created"], totals["updated"], totals["skipped"], totals["drift"],
        )

    async def _fail(self, state: SyncState, error: str) -> None:
        state.status = "failed"
        state.error = error
        seq = self._next_seq(state)
        await self._checkpoints.save(state)
        await self._ledger.record_run(state)
        await self._progress.fail(state.sync_id, error, seq=seq, kind=state.error_kind)


# ─── Control surface ──────────────────────────────────────────────────────────

Dispatcher = Callable[[str, str], Awaitable[None] | None]


class SyncService:
    """start / resume / cancel / inspect syncs. One running sync per tenant; extra starts are rejected."""

    def __init__(
        self,
        *,
        kv: KVStore,
        checkpoints: CheckpointStore,
        progress: ProgressTracker,
        lock: SyncLock,
        dispatcher: Dispatcher,
        credentials: CredentialProvider,
        orchestrator: SyncOrchestrator | None = None,
        clock: Clock = system_clock,
    ):
        self._kv = kv
        self._checkpoints = checkpoints
        self._progress = progress
        self._lock = lock
        self._dispatcher = dispatcher
        self._credentials = credentials
        self._orchestrator = orchestrator
        self._clock = clock

    async def _dispatch(self, state: SyncState) -> None:
        try:
            result = self._dispatcher(state.tenant_id, state.sync_id)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Could not dispatch sync %s for tenant %s", state.sync_id, state.tenant_id)
            await self._lock.release(state.tenant_id, state.sync_id)
            state.status = "failed"
            state.error = "dispatch failed"
            await self._checkpoints.save(state)
            await self._progress.fail(state.sync_id, state.error)
            raise

    async def start_sync(self, tenant_id: str, mode: str, options: SyncOptions | None = None) -> str:
        if mode not in SYNC_TYPES:
            raise ValidationError(f"Unknown sync mode {mode!r}", detail={"allowed": list(SYNC_TYPES)})
        options = (options or SyncOptions()).resolved(mode, self._clock.today())
        # A tenant that cannot authenticate never gets a lock or a task
        await self._credentials.get_valid_credential(tenant_id)

        sync_id = str(uuid.uuid4())
        if not await self._lock.acquire(tenant_id, sync_id):
            holder = await self._lock.holder(tenant_id)
            logger.info("Rejected %s sync for tenant %s: sync %s is running", mode, tenant_id, holder)
            raise Conflict(f"A sync is already running for tenant {tenant_id}", detail={"sync_id": holder})

        state = SyncState(
            sync_id=sync_id,
            tenant_id=tenant_id,
            sync_type=mode,
            started_at=self._clock.now(),
            options=options.to_dict(),
        )
        await self._checkpoints.save(state)
        await self._progress.start(sync_id, tenant_id, mode, steps_for(mode))
        await self._dispatch(state)
        logger.info("Queued %s sync %s for tenant %s", mode, sync_id, tenant_id)
        return sync_id

    async def resume_sync(self, tenant_id: str, sync_id: str) -> str:
        state = await self._checkpoints.load(sync_id)
        if state is None or state.tenant_id != tenant_id:
            raise NotFound(f"No checkpoint for sync {sync_id}")
        if state.status == "completed":
            raise Conflict(f"Sync {sync_id} already completed")
        holder = await self._lock.holder(tenant_id)
        if holder == sync_id:
            raise Conflict(f"Sync {sync_id} is still running", detail={"sync_id": sync_id})
        await self._credentials.get_valid_credential(tenant_id)
        if not await self._lock.acquire(tenant_id, sync_id):
            raise Conflict(
                f"A sync is already running for tenant {tenant_id}",
                detail={"sync_id": await self._lock.holder(tenant_id)},
            )
        await self._kv.delete(cancel_key(sync_id))
        await self._dispatch(state)
        logger.info("Queued resume of %s sync %s for tenant %s", state.sync_type, sync_id, tenant_id)
        return sync_id

    async def cancel_sync(self, sync_id: str) -> None:
        state = await self._checkpoints.load(sync_id)
        if state is None:
            raise NotFound(f"Sync {sync_id} not found")
        if state.status in ("completed", "failed"):
            raise Conflict(f"Sync {sync_id} is already {state.status}")
        await self._kv.set(
            cancel_key(sync_id), {"requested_at": self._clock.now().isoformat()}, settings.progress_ttl_seconds
        )
        if self._orchestrator is not None:
            self._orchestrator.request_cancel(sync_id)
        logger.info("Cancellation requested for sync %s", sync_id)

    async def get_progress(self, sync_id: str) -> dict:
        progress = await self._progress.get(sync_id)
        if progress is None:
            raise NotFound(f"Sync {sync_id} not found")
        return progress

    async def get_checkpoint(self, sync_id: str) -> dict:
        return checkpoint_summary(await self._checkpoints.load(sync_id))


# ─── Celery tasks ─────────────────────────────────────────────────────────────

def celery_dispatcher(tenant_id: str, sync_id: str) -> None:
    celery_app.send_task("ledgerflow.services.sync.run_sync_task", args=[tenant_id, sync_id])


async def _run_in_worker(tenant_id: str, sync_id: str) -> dict:
    from ledgerflow.core.deps import worker_runtime

    async with worker_runtime() as runtime:
        result = await runtime.orchestrator.run_sync(tenant_id, None, sync_id=sync_id)
        return result.summary()


async def _start_for_all_tenants(mode: str) -> int:
    from ledgerflow.core.deps import worker_runtime

    started = 0
    async with worker_runtime() as runtime:
        async with runtime.session_factory() as db:
            tenant_ids = list(
                await db.scalars(select(TenantConnection.tenant_id).where(TenantConnection.is_active.is_(True)))
            )
        for tenant_id in tenant_ids:
            try:
                await runtime.sync_service.start_sync(tenant_id, mode)
                started += 1
            except Conflict:
                logger.info("Skipping scheduled %s sync for tenant %s: one is already running", mode, tenant_id)
            except AuthError as exc:
                logger.warning("Skipping scheduled %s sync for tenant %s: %s", mode, tenant_id, exc.message)
    return started


@celery_app.task(name="ledgerflow.services.sync.run_sync_task")
def run_sync_task(tenant_id: str, sync_id: str) -> dict:
    """Run (or resume) one sync from its checkpoint."""
    return asyncio.run(_run_in_worker(tenant_id, sync_id))


@celery_app.task(name="ledgerflow.services.sync.sync_all_tenants")
def sync_all_tenants(mode: str = "incremental") -> int:
    """Queue a sync for every active tenant connection (beat schedule)."""
    logger.info("Starting scheduled %s sync for all tenants", mode)
    started = asyncio.run(_start_for_all_tenants(mode))
    logger.info("Queued %d scheduled %s syncs", started, mode)
    return started
