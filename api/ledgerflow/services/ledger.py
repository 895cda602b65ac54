"""
Ledger repository: everything the sync pipeline writes to the database.

``apply_page`` is the unit of atomicity. One page of records is upserted
inside a single transaction, keyed by (tenant_id, external_id), so a reader
never sees half a page and replaying a page changes nothing but
``last_synced_at``. The local ``id`` of a row is assigned on first insert
and never touched again.

In reconciliation mode the same page is compared instead of applied:
differing fields are recorded as drift on the row, upstream values are not
written over local ones.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgerflow.core.clock import Clock, system_clock
from ledgerflow.models.cashflow import FinancialPosition, TaxObligation
from ledgerflow.models.ledger import (
    LedgerAccount,
    LedgerBankTransaction,
    LedgerContact,
    LedgerInvoice,
    LedgerRepeatingInvoice,
)
from ledgerflow.models.tenant import SyncRun, SyncWatermark, TenantConnection
from ledgerflow.services.accounting_client import NormalizedRecord
from ledgerflow.services.checkpoint import SyncState
from ledgerflow.services.forecast import TaxItem
from ledgerflow.services.report_parser import PositionSnapshot

logger = logging.getLogger(__name__)

MODELS = {
    "accounts": LedgerAccount,
    "contacts": LedgerContact,
    "bank_transactions": LedgerBankTransaction,
    "invoices": LedgerInvoice,
    "repeating_invoices": LedgerRepeatingInvoice,
}

# Column bounding the reconciliation window, per dated entity
WINDOW_COLUMNS = {
    "bank_transactions": "transaction_date",
    "invoices": "invoice_date",
}


@dataclass
class ReconciliationDrift:
    """A divergence between local and upstream state. A finding, not an error."""
    entity: str
    external_id: str
    local_id: str
    fields: dict                      # field -> {"local": ..., "upstream": ...}
    missing_upstream: bool = False


@dataclass
class PageOutcome:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    drifts: list[ReconciliationDrift] = field(default_factory=list)


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def _same(local, upstream) -> bool:
    if isinstance(local, Decimal) or isinstance(upstream, Decimal):
        if local is None or upstream is None:
            return local is None and upstream is None
        return Decimal(str(local)) == Decimal(str(upstream))
    return local == upstream


def _diff(row, fields: dict) -> dict:
    return {
        name: {"local": _jsonable(getattr(row, name)), "upstream": _jsonable(value)}
        for name, value in fields.items()
        if not _same(getattr(row, name), value)
    }


class LedgerRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock = system_clock):
        self._session_factory = session_factory
        self._clock = clock

    # ─── Page upsert / compare ───────────────────────────────────────────────

    async def apply_page(
        self,
        tenant_id: str,
        entity: str,
        records: list[NormalizedRecord],
        *,
        reconcile_sync_id: str | None = None,
    ) -> PageOutcome:
        model = MODELS[entity]
        outcome = PageOutcome()
        now = self._clock.now()

        async with self._session_factory() as db, db.begin():
            existing = {
                row.external_id: row
                for row in await db.scalars(
                    select(model).where(
                        model.tenant_id == tenant_id,
                        model.external_id.in_([r.external_id for r in records]),
                    )
                )
            }
            accounts = {}
            if entity == "bank_transactions":
                accounts = await self._account_ids(
                    db, tenant_id, {r.fields.get("account_external_id") for r in records}
                )

            for record in records:
                values = dict(record.fields)
                if entity == "bank_transactions":
                    account_ref = values.pop("account_external_id")
                    account_id = accounts.get(account_ref)
                    if account_id is None:
                        logger.warning(
                            "Skipping bank transaction %s for tenant %s: unknown account %s",
                            record.external_id, tenant_id, account_ref,
                        )
                        outcome.skipped += 1
                        continue
                    values["account_id"] = account_id

                row = existing.get(record.external_id)
                if row is None:
                    row = model(
                        id=uuid.uuid4(),
                        tenant_id=tenant_id,
                        external_id=record.external_id,
                        upstream_updated_at=record.modified_at,
                        last_synced_at=now,
                        last_reconciled_sync_id=reconcile_sync_id,
                        **values,
                    )
                    db.add(row)
                    existing[record.external_id] = row
                    outcome.created += 1
                    continue

                if reconcile_sync_id is not None:
                    row.last_reconciled_sync_id = reconcile_sync_id
                    diffs = _diff(row, values)
                    if diffs:
                        row.drift_detected = True
                        row.drift_details = diffs
                        row.drift_detected_at = now
                        outcome.drifts.append(
                            ReconciliationDrift(entity, record.external_id, str(row.id), diffs)
                        )
                    continue

                for name, value in values.items():
                    setattr(row, name, value)
                row.upstream_updated_at = record.modified_at
                row.last_synced_at = now
                outcome.updated += 1

        return outcome

    async def _account_ids(self, db: AsyncSession, tenant_id: str, external_ids: set) -> dict[str, uuid.UUID]:
        rows = await db.execute(
            select(LedgerAccount.external_id, LedgerAccount.id).where(
                LedgerAccount.tenant_id == tenant_id,
                LedgerAccount.external_id.in_([e for e in external_ids if e]),
            )
        )
        return {external_id: local_id for external_id, local_id in rows}

    async def flag_missing_upstream(
        self,
        tenant_id: str,
        entity: str,
        sync_id: str,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[ReconciliationDrift]:
        """Flag local rows in the window that this reconciliation never saw upstream."""
        model = MODELS[entity]
        stmt = select(model).where(
            model.tenant_id == tenant_id,
            or_(model.last_reconciled_sync_id.is_(None), model.last_reconciled_sync_id != sync_id),
        )
        window_column = WINDOW_COLUMNS.get(entity)
        if window_column:
            column = getattr(model, window_column)
            if from_date:
                stmt = stmt.where(column >= from_date)
            if to_date:
                stmt = stmt.where(column <= to_date)

        drifts: list[ReconciliationDrift] = []
        now = self._clock.now()
        async with self._session_factory() as db, db.begin():
            for row in await db.scalars(stmt):
                details = dict(row.drift_details or {})
                details["missing_upstream"] = True
                row.drift_detected = True
                row.drift_details = details
                row.drift_detected_at = now
                drifts.append(
                    ReconciliationDrift(entity, row.external_id, str(row.id), {"missing_upstream": True}, True)
                )
        if drifts:
            logger.warning(
                "Reconciliation %s: %d %s records missing upstream for tenant %s",
                sync_id, len(drifts), entity, tenant_id,
            )
        return drifts

    # ─── Watermarks ──────────────────────────────────────────────────────────

    async def get_watermarks(self, tenant_id: str) -> dict[str, datetime]:
        async with self._session_factory() as db:
            rows = await db.scalars(select(SyncWatermark).where(SyncWatermark.tenant_id == tenant_id))
            return {row.entity: row.watermark for row in rows}

    # ─── Sync bookkeeping ────────────────────────────────────────────────────

    async def record_run(self, state: SyncState, watermarks: dict[str, datetime] | None = None) -> None:
        """Write the sync_runs audit row; on success also advance watermarks."""
        totals = state.totals()
        async with self._session_factory() as db, db.begin():
            run = await db.get(SyncRun, state.sync_id)
            if run is None:
                run = SyncRun(id=state.sync_id, tenant_id=state.tenant_id, sync_type=state.sync_type)
                db.add(run)
            run.status = state.status
            run.started_at = state.started_at or self._clock.now()
            run.completed_at = state.completed_at
            run.records_created = totals["created"]
            run.records_updated = totals["updated"]
            run.records_skipped = totals["skipped"]
            run.drift_count = totals["drift"]
            run.error = state.error

            if state.status != "completed":
                return

            for entity, watermark in (watermarks or {}).items():
                row = await db.scalar(
                    select(SyncWatermark).where(
                        SyncWatermark.tenant_id == state.tenant_id, SyncWatermark.entity == entity
                    )
                )
                if row is None:
                    row = SyncWatermark(tenant_id=state.tenant_id, entity=entity)
                    db.add(row)
                row.watermark = watermark
                row.sync_id = state.sync_id
                row.updated_at = self._clock.now()

            conn = await db.scalar(select(TenantConnection).where(TenantConnection.tenant_id == state.tenant_id))
            if conn is not None:
                conn.last_synced_at = state.completed_at

    async def save_financial_position(self, tenant_id: str, snapshot: PositionSnapshot, sync_id: str) -> None:
        """Store the balance-sheet snapshot and carry bank balances onto BANK accounts."""
        async with self._session_factory() as db, db.begin():
            db.add(
                FinancialPosition(
                    tenant_id=tenant_id,
                    as_of=snapshot.as_of,
                    cash=snapshot.cash,
                    receivables=snapshot.receivables,
                    payables=snapshot.payables,
                    sync_id=sync_id,
                )
            )
            if snapshot.bank_balances:
                accounts = await db.scalars(
                    select(LedgerAccount).where(
                        LedgerAccount.tenant_id == tenant_id,
                        LedgerAccount.type == "BANK",
                        LedgerAccount.external_id.in_(list(snapshot.bank_balances)),
                    )
                )
                for account in accounts:
                    account.current_balance = snapshot.bank_balances[account.external_id]

    async def save_tax_obligations(self, tenant_id: str, items: list[TaxItem]) -> int:
        """Add projected obligations not already pending for the same kind and due date.

        A pending row with the same reference is an earlier projection and takes
        the new amount. Rows entered by hand are left alone.
        """
        added = 0
        async with self._session_factory() as db, db.begin():
            for item in items:
                existing = await db.scalar(
                    select(TaxObligation)
                    .where(
                        TaxObligation.tenant_id == tenant_id,
                        TaxObligation.kind == item.kind,
                        TaxObligation.due_date == item.due_date,
                        TaxObligation.status == "PENDING",
                    )
                    .limit(1)
                )
                if existing is None:
                    db.add(
                        TaxObligation(
                            tenant_id=tenant_id,
                            due_date=item.due_date,
                            amount=item.amount,
                            kind=item.kind,
                            account_code=item.account_code,
                            reference=item.reference,
                        )
                    )
                    added += 1
                elif existing.reference == item.reference:
                    existing.amount = item.amount
        logger.debug("Tenant %s: %d new tax obligations of %d projected", tenant_id, added, len(items))
        return added

    async def paid_invoices(self, tenant_id: str) -> list[LedgerInvoice]:
        async with self._session_factory() as db:
            rows = await db.scalars(
                select(LedgerInvoice).where(
                    LedgerInvoice.tenant_id == tenant_id,
                    LedgerInvoice.status == "PAID",
                    LedgerInvoice.due_date.is_not(None),
                    LedgerInvoice.fully_paid_on.is_not(None),
                    LedgerInvoice.contact_external_id.is_not(None),
                )
            )
            return list(rows)
