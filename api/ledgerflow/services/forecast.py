"""
Cash-flow forecast.

``generate_forecast`` is a pure function: given a snapshot of the ledger
(``ForecastInputs``) it projects a contiguous run of days where each day
opens at the previous day's close and day 0 opens at the latest actual bank
balance.

  inflows    recurring sales invoices (firm)
             open receivables shifted by the customer's mean days-to-pay (soft)
  outflows   recurring bills (firm)
             pending tax obligations on their due date (firm)
             open payables shifted by the supplier's pattern (soft)
             the month's budget spread evenly per day (soft), except for an
             account code that already has a firm outflow that day

Confidence falls with the share of soft money in the day and with distance
from today, and never rises from one day to the next. All amounts are
Decimal, quantized to cents.

``ForecastService`` loads the snapshot, caches results in the KV store and
makes sure only one computation per tenant runs at a time.
"""
import asyncio
import calendar
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgerflow.core.clock import Clock, as_utc, system_clock
from ledgerflow.core.config import settings
from ledgerflow.core.errors import ValidationError
from ledgerflow.core.kvstore import KVStore
from ledgerflow.models.cashflow import BudgetEntry, FinancialPosition, PaymentPattern, TaxObligation
from ledgerflow.models.ledger import LedgerAccount, LedgerInvoice, LedgerRepeatingInvoice

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Confidence of a day made entirely of soft items, before distance decay
SOFT_ITEM_CONFIDENCE = 0.6
DAILY_DECAY = 0.995
ESCALATE_AFTER_DAYS = 3
OVERDUE_AFTER_DAYS = 30

OPEN_INVOICE_STATUSES = ("AUTHORISED", "SUBMITTED")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


# ─── Inputs ───────────────────────────────────────────────────────────────────

@dataclass
class RecurringItem:
    name: str
    direction: str               # in | out
    amount: Decimal
    unit: str                    # DAILY | WEEKLY | MONTHLY | YEARLY
    period: int
    next_date: date | None
    end_date: date | None = None
    account_code: str | None = None


@dataclass
class OpenInvoice:
    reference: str
    direction: str               # in (receivable) | out (payable)
    contact_external_id: str | None
    amount_due: Decimal
    due_date: date


@dataclass
class TaxItem:
    due_date: date
    amount: Decimal
    kind: str
    account_code: str | None = None
    reference: str | None = None


@dataclass
class BudgetLine:
    month_year: str              # YYYY-MM
    account_code: str
    planned_amount: Decimal


@dataclass
class ForecastInputs:
    opening_balance: Decimal
    as_of: date
    recurring: list[RecurringItem] = field(default_factory=list)
    invoices: list[OpenInvoice] = field(default_factory=list)
    # (contact_external_id, CUSTOMER | SUPPLIER) -> mean days to pay
    patterns: dict[tuple[str, str], float] = field(default_factory=dict)
    taxes: list[TaxItem] = field(default_factory=list)
    budgets: list[BudgetLine] = field(default_factory=list)


@dataclass
class ForecastThresholds:
    low_balance: Decimal
    critical_balance: Decimal
    large_payment: Decimal
    min_confidence: float

    @classmethod
    def from_settings(cls) -> "ForecastThresholds":
        return cls(
            low_balance=Decimal(settings.forecast_low_balance_threshold),
            critical_balance=Decimal(settings.forecast_critical_balance_threshold),
            large_payment=Decimal(settings.forecast_large_payment_threshold),
            min_confidence=settings.forecast_confidence_threshold,
        )


# ─── Output ───────────────────────────────────────────────────────────────────

@dataclass
class FlowItem:
    source: str                  # RECURRING | RECEIVABLE | PAYABLE | TAX | BUDGET
    description: str
    amount: Decimal
    firm: bool
    account_code: str | None = None


@dataclass
class FlowBucket:
    items: list[FlowItem] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return money(sum((i.amount for i in self.items), ZERO))

    def split(self) -> tuple[Decimal, Decimal]:
        firm = sum((i.amount for i in self.items if i.firm), ZERO)
        soft = sum((i.amount for i in self.items if not i.firm), ZERO)
        return firm, soft


@dataclass
class Alert:
    type: str                    # LOW_BALANCE | LOW_CONFIDENCE | TAX_DUE | LARGE_PAYMENT | OVERDUE_INVOICE
    severity: str                # info | warning | critical
    message: str
    amount: Decimal | None = None
    shortfall: Decimal = ZERO
    consecutive_days: int = 0


@dataclass
class ForecastDay:
    date: date
    opening_balance: Decimal
    inflows: FlowBucket
    outflows: FlowBucket
    closing_balance: Decimal
    confidence_level: float
    alerts: list[Alert] = field(default_factory=list)
    scenarios: dict[str, Decimal] | None = None


# ─── Schedules ────────────────────────────────────────────────────────────────

def _add_months(anchor: date, months: int) -> date:
    index = anchor.month - 1 + months
    year, month = anchor.year + index // 12, index % 12 + 1
    return date(year, month, min(anchor.day, calendar.monthrange(year, month)[1]))


def _nth_occurrence(item: RecurringItem, n: int) -> date | None:
    step = item.period * n
    if item.unit == "DAILY":
        return item.next_date + timedelta(days=step)
    if item.unit == "WEEKLY":
        return item.next_date + timedelta(weeks=step)
    if item.unit == "MONTHLY":
        return _add_months(item.next_date, step)
    if item.unit == "YEARLY":
        return _add_months(item.next_date, 12 * step)
    return None


def occurrences(item: RecurringItem, start: date, end: date) -> list[date]:
    """Scheduled dates of ``item`` falling in [start, end], anchored on next_date."""
    if item.next_date is None or item.period < 1:
        return []
    if item.unit not in ("DAILY", "WEEKLY", "MONTHLY", "YEARLY"):
        logger.warning("Unsupported schedule unit %r on %s", item.unit, item.name)
        return []

    dates = []
    n = 0
    current = item.next_date
    while current <= end and (item.end_date is None or current <= item.end_date):
        if current >= start:
            dates.append(current)
        n += 1
        current = _nth_occurrence(item, n)
    return dates


def projected_settlement(invoice: OpenInvoice, patterns: dict[tuple[str, str], float]) -> date:
    kind = "CUSTOMER" if invoice.direction == "in" else "SUPPLIER"
    mean = patterns.get((invoice.contact_external_id, kind))
    if mean is None:
        return invoice.due_date
    return invoice.due_date + timedelta(days=max(0, round(mean)))


def confidence_for(inflows: FlowBucket, outflows: FlowBucket, distance: int) -> float:
    in_firm, in_soft = inflows.split()
    out_firm, out_soft = outflows.split()
    soft = in_soft + out_soft
    total = in_firm + out_firm + soft
    soft_share = float(soft / total) if total else 0.0
    base = 1.0 - soft_share * (1.0 - SOFT_ITEM_CONFIDENCE)
    return round(base * DAILY_DECAY ** distance, 2)


# ─── Engine ───────────────────────────────────────────────────────────────────

def _alerts_for(
    day: ForecastDay,
    distance: int,
    low_run: int,
    inputs: ForecastInputs,
    thresholds: ForecastThresholds,
) -> list[Alert]:
    alerts: list[Alert] = []
    closing = day.closing_balance

    if closing < thresholds.low_balance:
        shortfall = money(thresholds.low_balance - closing)
        critical = closing < 0 or closing < thresholds.critical_balance or low_run >= ESCALATE_AFTER_DAYS
        alerts.append(
            Alert(
                type="LOW_BALANCE",
                severity="critical" if critical else "warning",
                message=(
                    f"Cash balance projected to be {'negative' if closing < 0 else 'low'} at {closing} "
                    f"({low_run} consecutive day{'s' if low_run != 1 else ''})"
                ),
                amount=closing,
                shortfall=shortfall,
                consecutive_days=low_run,
            )
        )

    if day.confidence_level < thresholds.min_confidence:
        alerts.append(
            Alert(
                type="LOW_CONFIDENCE",
                severity="info",
                message=f"Projection confidence {day.confidence_level:.2f} is below {thresholds.min_confidence:.2f}",
            )
        )

    tax_total = money(sum((i.amount for i in day.outflows.items if i.source == "TAX"), ZERO))
    if tax_total > 0:
        alerts.append(Alert(type="TAX_DUE", severity="warning", message=f"Tax payment of {tax_total} due", amount=tax_total))

    if day.outflows.total > thresholds.large_payment:
        alerts.append(
            Alert(
                type="LARGE_PAYMENT",
                severity="info",
                message=f"Large payments totaling {day.outflows.total} scheduled",
                amount=day.outflows.total,
            )
        )

    if distance == 0:
        overdue = [
            inv for inv in inputs.invoices
            if inv.direction == "in" and (inputs.as_of - inv.due_date).days > OVERDUE_AFTER_DAYS
        ]
        if overdue:
            amount = money(sum((inv.amount_due for inv in overdue), ZERO))
            alerts.append(
                Alert(
                    type="OVERDUE_INVOICE",
                    severity="warning",
                    message=f"{len(overdue)} invoices overdue totaling {amount}",
                    amount=amount,
                )
            )
    return alerts


def generate_forecast(
    inputs: ForecastInputs,
    start: date,
    horizon_days: int,
    thresholds: ForecastThresholds | None = None,
    include_scenarios: bool = False,
) -> list[ForecastDay]:
    if horizon_days < 1:
        raise ValidationError("Forecast horizon must be at least one day")
    thresholds = thresholds or ForecastThresholds.from_settings()
    end = start + timedelta(days=horizon_days - 1)

    inflows: dict[date, list[FlowItem]] = defaultdict(list)
    outflows: dict[date, list[FlowItem]] = defaultdict(list)

    for item in inputs.recurring:
        target = inflows if item.direction == "in" else outflows
        for when in occurrences(item, start, end):
            target[when].append(FlowItem("RECURRING", item.name, money(item.amount), True, item.account_code))

    for tax in inputs.taxes:
        if start <= tax.due_date <= end:
            description = f"{tax.kind} {tax.reference}" if tax.reference else tax.kind
            outflows[tax.due_date].append(FlowItem("TAX", description, money(tax.amount), True, tax.account_code))

    for inv in inputs.invoices:
        when = projected_settlement(inv, inputs.patterns)
        if start <= when <= end:
            if inv.direction == "in":
                inflows[when].append(FlowItem("RECEIVABLE", inv.reference, money(inv.amount_due), False))
            else:
                outflows[when].append(FlowItem("PAYABLE", inv.reference, money(inv.amount_due), False))

    budgets_by_month: dict[str, list[BudgetLine]] = defaultdict(list)
    for line in inputs.budgets:
        budgets_by_month[line.month_year].append(line)

    days: list[ForecastDay] = []
    balance = money(inputs.opening_balance)
    confidence = 1.0
    low_run = 0
    for distance in range(horizon_days):
        current = start + timedelta(days=distance)
        day_out = list(outflows.get(current, []))

        scheduled_codes = {i.account_code for i in day_out if i.account_code}
        month_lines = budgets_by_month.get(current.strftime("%Y-%m"), [])
        days_in_month = calendar.monthrange(current.year, current.month)[1]
        for line in month_lines:
            if line.account_code in scheduled_codes:
                continue
            share = money(Decimal(line.planned_amount) / days_in_month)
            if share > 0:
                day_out.append(FlowItem("BUDGET", f"Budget {line.account_code}", share, False, line.account_code))

        in_bucket = FlowBucket(list(inflows.get(current, [])))
        out_bucket = FlowBucket(day_out)
        opening = balance
        closing = money(opening + in_bucket.total - out_bucket.total)
        confidence = min(confidence, confidence_for(in_bucket, out_bucket, distance))

        day = ForecastDay(
            date=current,
            opening_balance=opening,
            inflows=in_bucket,
            outflows=out_bucket,
            closing_balance=closing,
            confidence_level=confidence,
        )
        if include_scenarios:
            day.scenarios = {
                "best_case": money(opening + in_bucket.total * Decimal("1.2") - out_bucket.total * Decimal("0.9")),
                "worst_case": money(opening + in_bucket.total * Decimal("0.8") - out_bucket.total * Decimal("1.1")),
            }

        low_run = low_run + 1 if closing < thresholds.low_balance else 0
        day.alerts = _alerts_for(day, distance, low_run, inputs, thresholds)
        days.append(day)
        balance = closing

    return days


def summarize(days: list[ForecastDay]) -> dict:
    if not days:
        return {}
    lowest = min(days, key=lambda d: d.closing_balance)
    return {
        "lowest_balance": lowest.closing_balance,
        "lowest_balance_date": lowest.date,
        "total_inflows": money(sum((d.inflows.total for d in days), ZERO)),
        "total_outflows": money(sum((d.outflows.total for d in days), ZERO)),
        "average_confidence": round(sum(d.confidence_level for d in days) / len(days), 2),
        "critical_alert_count": sum(1 for d in days for a in d.alerts if a.severity == "critical"),
    }


def _jsonable(value):
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _day_to_dict(day: ForecastDay) -> dict:
    doc = asdict(day)
    doc["inflows"]["total"] = day.inflows.total
    doc["outflows"]["total"] = day.outflows.total
    return doc


# ─── Service ──────────────────────────────────────────────────────────────────

def forecast_cache_key(tenant_id: str) -> str:
    return f"forecast:{tenant_id}"


async def invalidate_forecast_cache(kv: KVStore, tenant_id: str) -> None:
    await kv.delete(forecast_cache_key(tenant_id))
    logger.debug("Invalidated forecast cache for tenant %s", tenant_id)


class ForecastService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        kv: KVStore,
        clock: Clock = system_clock,
        thresholds: ForecastThresholds | None = None,
        ttl_seconds: int | None = None,
    ):
        self._session_factory = session_factory
        self._kv = kv
        self._clock = clock
        self._thresholds = thresholds or ForecastThresholds.from_settings()
        self._ttl = ttl_seconds or settings.forecast_cache_ttl_seconds
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _validate_days(self, days: int | None) -> int:
        if days is None:
            days = settings.forecast_default_days
        if not 1 <= days <= settings.forecast_max_days:
            raise ValidationError(
                f"days must be between 1 and {settings.forecast_max_days}",
                detail={"days": days},
            )
        return days

    async def get_forecast(self, tenant_id: str, days: int | None = None, include_scenarios: bool = False) -> dict:
        days = self._validate_days(days)
        entry = f"{days}:{int(include_scenarios)}"

        cached = await self._cached(tenant_id, entry)
        if cached is not None:
            return cached

        async with self._locks[tenant_id]:
            # A concurrent request may have filled the cache while we waited
            cached = await self._cached(tenant_id, entry)
            if cached is not None:
                return cached
            return await self._compute_and_store(tenant_id, days, include_scenarios, entry)

    async def regenerate_forecast(self, tenant_id: str, days: int | None = None, include_scenarios: bool = False) -> dict:
        days = self._validate_days(days)
        async with self._locks[tenant_id]:
            await invalidate_forecast_cache(self._kv, tenant_id)
            return await self._compute_and_store(tenant_id, days, include_scenarios, f"{days}:{int(include_scenarios)}")

    async def _cached(self, tenant_id: str, entry: str) -> dict | None:
        doc = await self._kv.get(forecast_cache_key(tenant_id))
        hit = (doc or {}).get("entries", {}).get(entry)
        if hit is None:
            return None
        age = (self._clock.now() - as_utc(datetime.fromisoformat(hit["cached_at"]))).total_seconds()
        return hit["result"] if age < self._ttl else None

    async def _compute_and_store(self, tenant_id: str, days: int, include_scenarios: bool, entry: str) -> dict:
        start = self._clock.today()
        inputs = await self.load_inputs(tenant_id, start, days)
        forecast = generate_forecast(inputs, start, days, self._thresholds, include_scenarios)
        result = _jsonable(
            {
                "tenant_id": tenant_id,
                "generated_at": self._clock.now(),
                "days": days,
                "opening_balance": inputs.opening_balance,
                "forecast": [_day_to_dict(d) for d in forecast],
                "summary": summarize(forecast),
            }
        )
        now = self._clock.now().isoformat()

        def updater(current: dict | None) -> dict:
            current = current or {"entries": {}}
            current.setdefault("entries", {})[entry] = {"cached_at": now, "result": result}
            return current

        await self._kv.merge(forecast_cache_key(tenant_id), updater, self._ttl)
        logger.info("Generated %d-day forecast for tenant %s", days, tenant_id)
        return result

    async def load_inputs(self, tenant_id: str, start: date, days: int) -> ForecastInputs:
        end = start + timedelta(days=days - 1)
        async with self._session_factory() as db:
            balances = [
                b for b in await db.scalars(
                    select(LedgerAccount.current_balance).where(
                        LedgerAccount.tenant_id == tenant_id,
                        LedgerAccount.type == "BANK",
                        LedgerAccount.status == "ACTIVE",
                        LedgerAccount.current_balance.is_not(None),
                    )
                )
            ]
            if balances:
                opening = money(sum(balances, ZERO))
            else:
                position = await db.scalar(
                    select(FinancialPosition)
                    .where(FinancialPosition.tenant_id == tenant_id)
                    .order_by(FinancialPosition.as_of.desc(), FinancialPosition.created_at.desc())
                    .limit(1)
                )
                opening = money(position.cash) if position else ZERO

            recurring = [
                RecurringItem(
                    name=r.name or r.external_id,
                    direction="in" if r.type == "ACCREC" else "out",
                    amount=r.total,
                    unit=r.schedule_unit,
                    period=r.schedule_period,
                    next_date=r.next_scheduled_date,
                    end_date=r.end_date,
                    account_code=r.account_code,
                )
                for r in await db.scalars(
                    select(LedgerRepeatingInvoice).where(
                        LedgerRepeatingInvoice.tenant_id == tenant_id,
                        LedgerRepeatingInvoice.status == "AUTHORISED",
                    )
                )
            ]

            invoices = [
                OpenInvoice(
                    reference=inv.invoice_number or inv.external_id,
                    direction="in" if inv.type == "ACCREC" else "out",
                    contact_external_id=inv.contact_external_id,
                    amount_due=inv.amount_due,
                    due_date=inv.due_date,
                )
                for inv in await db.scalars(
                    select(LedgerInvoice).where(
                        LedgerInvoice.tenant_id == tenant_id,
                        LedgerInvoice.status.in_(OPEN_INVOICE_STATUSES),
                        LedgerInvoice.amount_due > 0,
                        LedgerInvoice.due_date.is_not(None),
                    )
                )
            ]

            patterns = {
                (p.contact_external_id, p.kind): p.mean_days_to_pay
                for p in await db.scalars(select(PaymentPattern).where(PaymentPattern.tenant_id == tenant_id))
            }

            taxes = [
                TaxItem(t.due_date, t.amount, t.kind, t.account_code, t.reference)
                for t in await db.scalars(
                    select(TaxObligation).where(
                        TaxObligation.tenant_id == tenant_id,
                        TaxObligation.status == "PENDING",
                        TaxObligation.due_date >= start,
                        TaxObligation.due_date <= end,
                    )
                )
            ]

            budgets = [
                BudgetLine(b.month_year, b.account_code, b.planned_amount)
                for b in await db.scalars(
                    select(BudgetEntry).where(
                        BudgetEntry.tenant_id == tenant_id,
                        BudgetEntry.month_year >= start.strftime("%Y-%m"),
                        BudgetEntry.month_year <= end.strftime("%Y-%m"),
                    )
                )
            ]

        return ForecastInputs(
            opening_balance=opening,
            as_of=start,
            recurring=recurring,
            invoices=invoices,
            patterns=patterns,
            taxes=taxes,
            budgets=budgets,
        )
