import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Date, DateTime, Float, Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ledgerflow.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentPattern(Base):
    """How late (or early) a counterparty settles, derived from paid invoices."""
    __tablename__ = "payment_patterns"
    __table_args__ = (
        UniqueConstraint("tenant_id", "contact_external_id", "kind", name="uq_payment_patterns_contact_kind"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    contact_external_id: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(10))                # CUSTOMER | SUPPLIER
    mean_days_to_pay: Mapped[float] = mapped_column(Float)
    variance_days: Mapped[float] = mapped_column(Float)
    sample_size: Mapped[int] = mapped_column(Integer)
    on_time_rate: Mapped[float] = mapped_column(Float)
    early_rate: Mapped[float] = mapped_column(Float)
    late_rate: Mapped[float] = mapped_column(Float)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class BudgetEntry(Base):
    __tablename__ = "budget_entries"
    __table_args__ = (
        UniqueConstraint("tenant_id", "month_year", "account_code", name="uq_budget_entries_month_account"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    month_year: Mapped[str] = mapped_column(String(7))           # YYYY-MM
    account_code: Mapped[str] = mapped_column(String(20))
    planned_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))


class TaxObligation(Base):
    __tablename__ = "tax_obligations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    due_date: Mapped[date] = mapped_column(Date, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    kind: Mapped[str] = mapped_column(String(20))                # VAT | PAYE_NI | CORPORATION_TAX | OTHER
    account_code: Mapped[str | None] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(10), default="PENDING")   # PENDING | PAID
    reference: Mapped[str | None] = mapped_column(String(100))


class FinancialPosition(Base):
    """Cash / receivables / payables snapshot parsed from the balance-sheet report."""
    __tablename__ = "financial_positions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    as_of: Mapped[date] = mapped_column(Date)
    cash: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    receivables: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    payables: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    sync_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
