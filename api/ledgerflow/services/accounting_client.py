"""
Accounting API client: wire mapping and paged fetches.

Each page request returns one of three explicit results so the sync loop
never has to inspect exception types:

  PageFetched   records for this page (+ whether another page follows)
  EndOfData     nothing (more) to pull for this entity
  PageFailed    the invoker gave up; carries the UpstreamFailure

Records are normalized into ``NormalizedRecord`` (external id, upstream
modification time, local column values). A record that cannot be mapped
is skipped with a warning and counted, not fatal for the page.
"""
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import format_datetime

import httpx

from ledgerflow.core.clock import as_utc
from ledgerflow.core.config import settings
from ledgerflow.services.credentials import Credential
from ledgerflow.services.rate_limited_invoker import (
    InvokerRegistry,
    UpstreamFailure,
    UpstreamResponse,
)
from ledgerflow.services.report_parser import Report, parse_report

logger = logging.getLogger(__name__)

# Accounts must be materialized before the transactions that reference them
ENTITY_ORDER = ("accounts", "contacts", "bank_transactions", "invoices", "repeating_invoices")

_CENT = Decimal("0.01")
_MS_DATE = re.compile(r"/Date\((-?\d+)([+-]\d{4})?\)/")


# ─── Page results ─────────────────────────────────────────────────────────────

@dataclass
class NormalizedRecord:
    external_id: str
    modified_at: datetime | None
    fields: dict


@dataclass
class PageQuery:
    page: int = 1
    modified_since: datetime | None = None
    from_date: date | None = None
    to_date: date | None = None


@dataclass
class PageFetched:
    page: int
    records: list[NormalizedRecord]
    has_more: bool
    skipped: int = 0


@dataclass
class EndOfData:
    page: int


@dataclass
class PageFailed:
    page: int
    failure: UpstreamFailure


PageResult = PageFetched | EndOfData | PageFailed


# ─── Wire parsing helpers ─────────────────────────────────────────────────────

def parse_upstream_datetime(value) -> datetime | None:
    """Accept both ``/Date(1573755038314+0000)/`` and ISO-8601 timestamps."""
    if value in (None, ""):
        return None
    text = str(value)
    match = _MS_DATE.fullmatch(text)
    if match:
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
    return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))


def parse_upstream_date(value) -> date | None:
    parsed = parse_upstream_datetime(value)
    return parsed.date() if parsed else None


def _money(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value)).quantize(_CENT)


def _ref(obj: dict | None, key: str) -> str | None:
    return (obj or {}).get(key) or None


# ─── Normalizers (upstream JSON -> local columns) ─────────────────────────────

def _normalize_account(raw: dict) -> dict:
    return {
        "code": raw.get("Code"),
        "name": raw["Name"],
        "type": raw["Type"],
        "status": raw.get("Status") or "ACTIVE",
        "account_class": raw.get("Class"),
        "currency_code": raw.get("CurrencyCode"),
    }


def _normalize_contact(raw: dict) -> dict:
    return {
        "name": raw["Name"],
        "email": raw.get("EmailAddress") or None,
        "status": raw.get("ContactStatus"),
        "is_customer": bool(raw.get("IsCustomer", False)),
        "is_supplier": bool(raw.get("IsSupplier", False)),
    }


def _normalize_bank_transaction(raw: dict) -> dict:
    account_ref = _ref(raw.get("BankAccount"), "AccountID")
    if account_ref is None:
        raise KeyError("BankAccount.AccountID")
    txn_date = parse_upstream_date(raw.get("DateString") or raw.get("Date"))
    if txn_date is None:
        raise KeyError("Date")
    return {
        "account_external_id": account_ref,
        "contact_external_id": _ref(raw.get("Contact"), "ContactID"),
        "type": raw["Type"],
        "status": raw.get("Status"),
        "transaction_date": txn_date,
        "total": _money(raw.get("Total")),
        "reference": raw.get("Reference") or None,
        "is_reconciled": bool(raw.get("IsReconciled", False)),
    }


def _normalize_invoice(raw: dict) -> dict:
    return {
        "type": raw["Type"],
        "contact_external_id": _ref(raw.get("Contact"), "ContactID"),
        "invoice_number": raw.get("InvoiceNumber") or None,
        "status": raw["Status"],
        "invoice_date": parse_upstream_date(raw.get("DateString") or raw.get("Date")),
        "due_date": parse_upstream_date(raw.get("DueDateString") or raw.get("DueDate")),
        "total": _money(raw.get("Total")),
        "amount_due": _money(raw.get("AmountDue")),
        "amount_paid": _money(raw.get("AmountPaid")),
        "fully_paid_on": parse_upstream_date(raw.get("FullyPaidOnDate")),
    }


def _normalize_repeating_invoice(raw: dict) -> dict:
    schedule = raw["Schedule"]
    line_items = raw.get("LineItems") or []
    return {
        "type": raw["Type"],
        "contact_external_id": _ref(raw.get("Contact"), "ContactID"),
        "name": raw.get("Reference") or _ref(raw.get("Contact"), "Name"),
        "status": raw["Status"],
        "schedule_unit": schedule["Unit"],
        "schedule_period": int(schedule.get("Period") or 1),
        "next_scheduled_date": parse_upstream_date(
            schedule.get("NextScheduledDateString") or schedule.get("NextScheduledDate")
        ),
        "end_date": parse_upstream_date(schedule.get("EndDateString") or schedule.get("EndDate")),
        "total": _money(raw.get("Total")),
        "account_code": line_items[0].get("AccountCode") if line_items else None,
    }


@dataclass(frozen=True)
class EntityResource:
    path: str
    id_field: str
    normalize: Callable[[dict], dict]
    paged: bool = True
    date_field: str | None = None      # bounds the reconciliation window


RESOURCES: dict[str, EntityResource] = {
    "accounts": EntityResource("Accounts", "AccountID", _normalize_account, paged=False),
    "contacts": EntityResource("Contacts", "ContactID", _normalize_contact),
    "bank_transactions": EntityResource(
        "BankTransactions", "BankTransactionID", _normalize_bank_transaction, date_field="Date"
    ),
    "invoices": EntityResource("Invoices", "InvoiceID", _normalize_invoice, date_field="Date"),
    "repeating_invoices": EntityResource(
        "RepeatingInvoices", "RepeatingInvoiceID", _normalize_repeating_invoice, paged=False
    ),
}


def _where_window(field_name: str, from_date: date | None, to_date: date | None) -> str | None:
    clauses = []
    if from_date:
        clauses.append(f"{field_name} >= DateTime({from_date.year}, {from_date.month:02d}, {from_date.day:02d})")
    if to_date:
        clauses.append(f"{field_name} <= DateTime({to_date.year}, {to_date.month:02d}, {to_date.day:02d})")
    return " && ".join(clauses) or None


# ─── Client ───────────────────────────────────────────────────────────────────

@dataclass
class AccountingApiClient:
    http: httpx.AsyncClient
    invokers: InvokerRegistry
    base_url: str = field(default_factory=lambda: settings.upstream_api_url)
    page_size: int = field(default_factory=lambda: settings.upstream_page_size)

    async def _get(
        self,
        tenant_id: str,
        credential: Credential,
        path: str,
        params: dict | None = None,
        modified_since: datetime | None = None,
    ) -> UpstreamResponse | UpstreamFailure:
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "xero-tenant-id": tenant_id,
            "Accept": "application/json",
        }
        if modified_since is not None:
            headers["If-Modified-Since"] = format_datetime(as_utc(modified_since), usegmt=True)
        url = f"{self.base_url.rstrip('/')}/{path}"

        async def call() -> UpstreamResponse:
            resp = await self.http.get(url, params=params, headers=headers)
            try:
                payload = resp.json() if resp.content else None
            except ValueError:
                payload = resp.text
            return UpstreamResponse(resp.status_code, resp.headers, payload)

        return await self.invokers.for_tenant(tenant_id).invoke(call)

    async def fetch_page(
        self, tenant_id: str, credential: Credential, entity: str, query: PageQuery
    ) -> PageResult:
        resource = RESOURCES[entity]
        if not resource.paged and query.page > 1:
            return EndOfData(page=query.page)

        params: dict = {}
        if resource.paged:
            params["page"] = query.page
            params["pageSize"] = self.page_size
        if resource.date_field:
            where = _where_window(resource.date_field, query.from_date, query.to_date)
            if where:
                params["where"] = where

        result = await self._get(tenant_id, credential, resource.path, params, query.modified_since)
        if isinstance(result, UpstreamFailure):
            return PageFailed(page=query.page, failure=result)
        if result.status_code == 304:
            return EndOfData(page=query.page)

        payload = result.payload if isinstance(result.payload, dict) else {}
        raw_records = payload.get(resource.path) or []
        if not raw_records:
            return EndOfData(page=query.page)

        records: list[NormalizedRecord] = []
        skipped = 0
        for raw in raw_records:
            try:
                external_id = raw[resource.id_field]
                records.append(
                    NormalizedRecord(
                        external_id=str(external_id),
                        modified_at=parse_upstream_datetime(raw.get("UpdatedDateUTC")),
                        fields=resource.normalize(raw),
                    )
                )
            except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
                skipped += 1
                logger.warning(
                    "Skipping malformed %s record for tenant %s on page %d: %r",
                    entity, tenant_id, query.page, exc,
                )

        has_more = resource.paged and len(raw_records) >= self.page_size
        return PageFetched(page=query.page, records=records, has_more=has_more, skipped=skipped)

    async def fetch_balance_sheet(
        self, tenant_id: str, credential: Credential, as_of: date
    ) -> Report | UpstreamFailure:
        """Balance-sheet report as of ``as_of``; raises ReportParseError on bad shape."""
        result = await self._get(
            tenant_id, credential, "Reports/BalanceSheet", {"date": as_of.isoformat()}
        )
        if isinstance(result, UpstreamFailure):
            return result
        return parse_report(result.payload)
