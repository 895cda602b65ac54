"""
Counterparty payment patterns.

For every contact with at least ``MIN_SAMPLE`` paid invoices of one kind
(sales invoices -> CUSTOMER, bills -> SUPPLIER) we record how many days
after the due date they settle. The forecast shifts open receivables and
payables by the mean.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from statistics import fmean, pvariance

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgerflow.core.clock import Clock, system_clock
from ledgerflow.models.cashflow import PaymentPattern
from ledgerflow.services.ledger import LedgerRepository

logger = logging.getLogger(__name__)

MIN_SAMPLE = 3
ON_TIME_GRACE_DAYS = 3

KIND_BY_INVOICE_TYPE = {"ACCREC": "CUSTOMER", "ACCPAY": "SUPPLIER"}


@dataclass
class PatternStats:
    contact_external_id: str
    kind: str
    mean_days_to_pay: float
    variance_days: float
    sample_size: int
    early_rate: float
    on_time_rate: float
    late_rate: float


def calculate_patterns(invoices) -> list[PatternStats]:
    """Group paid invoices by (contact, kind) and summarise days-to-pay."""
    samples: dict[tuple[str, str], list[int]] = defaultdict(list)
    for inv in invoices:
        kind = KIND_BY_INVOICE_TYPE.get(inv.type)
        if kind is None or inv.due_date is None or inv.fully_paid_on is None:
            continue
        samples[(inv.contact_external_id, kind)].append((inv.fully_paid_on - inv.due_date).days)

    patterns = []
    for (contact, kind), days in sorted(samples.items()):
        if len(days) < MIN_SAMPLE:
            continue
        n = len(days)
        early = sum(1 for d in days if d <= 0)
        on_time = sum(1 for d in days if d <= ON_TIME_GRACE_DAYS)
        patterns.append(
            PatternStats(
                contact_external_id=contact,
                kind=kind,
                mean_days_to_pay=fmean(days),
                variance_days=pvariance(days),
                sample_size=n,
                early_rate=early / n,
                on_time_rate=on_time / n,
                late_rate=(n - on_time) / n,
            )
        )
    return patterns


async def recalculate_payment_patterns(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerRepository,
    tenant_id: str,
    clock: Clock = system_clock,
) -> int:
    """Rebuild the tenant's payment_patterns rows from the synced invoices."""
    patterns = calculate_patterns(await ledger.paid_invoices(tenant_id))
    now = clock.now()
    async with session_factory() as db, db.begin():
        await db.execute(delete(PaymentPattern).where(PaymentPattern.tenant_id == tenant_id))
        for p in patterns:
            db.add(
                PaymentPattern(
                    tenant_id=tenant_id,
                    contact_external_id=p.contact_external_id,
                    kind=p.kind,
                    mean_days_to_pay=p.mean_days_to_pay,
                    variance_days=p.variance_days,
                    sample_size=p.sample_size,
                    early_rate=p.early_rate,
                    on_time_rate=p.on_time_rate,
                    late_rate=p.late_rate,
                    calculated_at=now,
                )
            )
    logger.info("Recalculated %d payment patterns for tenant %s", len(patterns), tenant_id)
    return len(patterns)
