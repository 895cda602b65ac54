import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text,
    UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from ledgerflow.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerRecordMixin:
    """Columns shared by every record pulled from the accounting system.

    ``id`` is the local identity assigned on first insert; ``external_id`` is
    the immutable natural key from upstream. Upserts match on
    (tenant_id, external_id) and never reassign ``id``.
    """

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    external_id: Mapped[str] = mapped_column(String(255))
    upstream_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    # Reconciliation findings are recorded alongside, never written over the data
    drift_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    drift_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    drift_detected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_reconciled_sync_id: Mapped[str | None] = mapped_column(String(64))

    @declared_attr.directive
    def __table_args__(cls):
        return (UniqueConstraint("tenant_id", "external_id", name=f"uq_{cls.__tablename__}_tenant_external"),)


class LedgerAccount(LedgerRecordMixin, Base):
    """Chart-of-accounts entry; BANK accounts carry the actual cash balance."""
    __tablename__ = "ledger_accounts"

    code: Mapped[str | None] = mapped_column(String(20))
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(30))             # BANK, REVENUE, EXPENSE, ...
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    account_class: Mapped[str | None] = mapped_column(String(20))
    currency_code: Mapped[str | None] = mapped_column(String(3))
    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))

    transactions: Mapped[list["LedgerBankTransaction"]] = relationship(back_populates="account")


class LedgerContact(LedgerRecordMixin, Base):
    __tablename__ = "ledger_contacts"

    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str | None] = mapped_column(String(20))
    is_customer: Mapped[bool] = mapped_column(Boolean, default=False)
    is_supplier: Mapped[bool] = mapped_column(Boolean, default=False)


class LedgerBankTransaction(LedgerRecordMixin, Base):
    __tablename__ = "ledger_bank_transactions"

    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("ledger_accounts.id"), index=True)
    contact_external_id: Mapped[str | None] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(20))             # RECEIVE | SPEND
    status: Mapped[str | None] = mapped_column(String(20))
    transaction_date: Mapped[date] = mapped_column(Date, index=True)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    reference: Mapped[str | None] = mapped_column(Text)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False)

    account: Mapped["LedgerAccount"] = relationship(back_populates="transactions")


class LedgerInvoice(LedgerRecordMixin, Base):
    """Sales invoice (ACCREC, a receivable) or bill (ACCPAY, a payable)."""
    __tablename__ = "ledger_invoices"

    type: Mapped[str] = mapped_column(String(10))             # ACCREC | ACCPAY
    contact_external_id: Mapped[str | None] = mapped_column(String(255), index=True)
    invoice_number: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20))           # DRAFT, AUTHORISED, PAID, VOIDED, ...
    invoice_date: Mapped[date | None] = mapped_column(Date, index=True)
    due_date: Mapped[date | None] = mapped_column(Date)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    amount_due: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    fully_paid_on: Mapped[date | None] = mapped_column(Date)


class LedgerRepeatingInvoice(LedgerRecordMixin, Base):
    """Recurring transaction template with its schedule."""
    __tablename__ = "ledger_repeating_invoices"

    type: Mapped[str] = mapped_column(String(10))             # ACCREC | ACCPAY
    contact_external_id: Mapped[str | None] = mapped_column(String(255))
    name: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20))           # AUTHORISED | DRAFT | DELETED
    schedule_unit: Mapped[str] = mapped_column(String(10))    # DAILY | WEEKLY | MONTHLY | YEARLY
    schedule_period: Mapped[int] = mapped_column(Integer, default=1)
    next_scheduled_date: Mapped[date | None] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    account_code: Mapped[str | None] = mapped_column(String(20))
