"""initial_ledger_schema

Revision ID: 3f9c1d2e4b5a
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "3f9c1d2e4b5a"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LEDGER_TABLES = (
    "ledger_accounts",
    "ledger_contacts",
    "ledger_bank_transactions",
    "ledger_invoices",
    "ledger_repeating_invoices",
)


def _ledger_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("upstream_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("drift_detected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("drift_details", sa.JSON(), nullable=True),
        sa.Column("drift_detected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reconciled_sync_id", sa.String(length=64), nullable=True),
    ]


def _ledger_table(name: str, *columns, constraints=()) -> None:
    op.create_table(
        name,
        *_ledger_columns(),
        *columns,
        *constraints,
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "external_id", name=f"uq_{name}_tenant_external"),
    )
    op.create_index(op.f(f"ix_{name}_tenant_id"), name, ["tenant_id"], unique=False)


def upgrade() -> None:
    # ─── Ledger records ──────────────────────────
    _ledger_table(
        "ledger_accounts",
        sa.Column("code", sa.String(length=20), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("account_class", sa.String(length=20), nullable=True),
        sa.Column("currency_code", sa.String(length=3), nullable=True),
        sa.Column("current_balance", sa.Numeric(precision=14, scale=2), nullable=True),
    )
    _ledger_table(
        "ledger_contacts",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("is_customer", sa.Boolean(), nullable=False),
        sa.Column("is_supplier", sa.Boolean(), nullable=False),
    )
    _ledger_table(
        "ledger_bank_transactions",
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("contact_external_id", sa.String(length=255), nullable=True),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("total", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("reference", sa.Text(), nullable=True),
        sa.Column("is_reconciled", sa.Boolean(), nullable=False),
        constraints=(sa.ForeignKeyConstraint(["account_id"], ["ledger_accounts.id"]),),
    )
    op.create_index(op.f("ix_ledger_bank_transactions_account_id"), "ledger_bank_transactions", ["account_id"], unique=False)
    op.create_index(op.f("ix_ledger_bank_transactions_transaction_date"), "ledger_bank_transactions", ["transaction_date"], unique=False)
    _ledger_table(
        "ledger_invoices",
        sa.Column("type", sa.String(length=10), nullable=False),
        sa.Column("contact_external_id", sa.String(length=255), nullable=True),
        sa.Column("invoice_number", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("invoice_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("total", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("amount_due", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("fully_paid_on", sa.Date(), nullable=True),
    )
    op.create_index(op.f("ix_ledger_invoices_contact_external_id"), "ledger_invoices", ["contact_external_id"], unique=False)
    op.create_index(op.f("ix_ledger_invoices_invoice_date"), "ledger_invoices", ["invoice_date"], unique=False)
    _ledger_table(
        "ledger_repeating_invoices",
        sa.Column("type", sa.String(length=10), nullable=False),
        sa.Column("contact_external_id", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("schedule_unit", sa.String(length=10), nullable=False),
        sa.Column("schedule_period", sa.Integer(), nullable=False),
        sa.Column("next_scheduled_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("total", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("account_code", sa.String(length=20), nullable=True),
    )

    # ─── Tenants & sync bookkeeping ──────────────
    op.create_table(
        "tenant_connections",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("access_token_enc", sa.Text(), nullable=False),
        sa.Column("refresh_token_enc", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scopes", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tenant_connections_tenant_id"), "tenant_connections", ["tenant_id"], unique=True)

    op.create_table(
        "sync_watermarks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("entity", sa.String(length=40), nullable=False),
        sa.Column("watermark", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sync_id", sa.String(length=64), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "entity", name="uq_sync_watermarks_tenant_entity"),
    )
    op.create_index(op.f("ix_sync_watermarks_tenant_id"), "sync_watermarks", ["tenant_id"], unique=False)

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("sync_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_created", sa.Integer(), nullable=False),
        sa.Column("records_updated", sa.Integer(), nullable=False),
        sa.Column("records_skipped", sa.Integer(), nullable=False),
        sa.Column("drift_count", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_sync_runs_tenant_id"), "sync_runs", ["tenant_id"], unique=False)

    # ─── Forecast inputs ──────────────────────────
    op.create_table(
        "payment_patterns",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("contact_external_id", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=10), nullable=False),
        sa.Column("mean_days_to_pay", sa.Float(), nullable=False),
        sa.Column("variance_days", sa.Float(), nullable=False),
        sa.Column("sample_size", sa.Integer(), nullable=False),
        sa.Column("on_time_rate", sa.Float(), nullable=False),
        sa.Column("early_rate", sa.Float(), nullable=False),
        sa.Column("late_rate", sa.Float(), nullable=False),
        sa.Column("calculated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "contact_external_id", "kind", name="uq_payment_patterns_contact_kind"),
    )
    op.create_index(op.f("ix_payment_patterns_tenant_id"), "payment_patterns", ["tenant_id"], unique=False)

    op.create_table(
        "budget_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("month_year", sa.String(length=7), nullable=False),
        sa.Column("account_code", sa.String(length=20), nullable=False),
        sa.Column("planned_amount", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "month_year", "account_code", name="uq_budget_entries_month_account"),
    )
    op.create_index(op.f("ix_budget_entries_tenant_id"), "budget_entries", ["tenant_id"], unique=False)

    op.create_table(
        "tax_obligations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("account_code", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=10), nullable=False),
        sa.Column("reference", sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tax_obligations_tenant_id"), "tax_obligations", ["tenant_id"], unique=False)
    op.create_index(op.f("ix_tax_obligations_due_date"), "tax_obligations", ["due_date"], unique=False)

    op.create_table(
        "financial_positions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("as_of", sa.Date(), nullable=False),
        sa.Column("cash", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("receivables", sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column("payables", sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column("sync_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_financial_positions_tenant_id"), "financial_positions", ["tenant_id"], unique=False)


def downgrade() -> None:
    for table in (
        "financial_positions",
        "tax_obligations",
        "budget_entries",
        "payment_patterns",
        "sync_runs",
        "sync_watermarks",
        "tenant_connections",
    ):
        op.drop_table(table)
    for table in reversed(LEDGER_TABLES):
        op.drop_table(table)
