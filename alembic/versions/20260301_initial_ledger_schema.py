"""Initial ledger schema: deposits, wallets, webhooks, reconciliation.

Revision ID: 20260301_initial
Revises:
Create Date: 2026-03-01 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20260301_initial"
down_revision = None
branch_labels = None
depends_on = None

PAYMENT_STATUSES = ("PENDING", "PAID", "FAILED", "CANCELLED", "EXPIRED", "REVERSED")
SETTLEMENT_STATUSES = ("PENDING", "COMPLETED", "FAILED")
LEDGER_ENTRY_TYPES = ("DEPOSIT", "REFUND", "PURCHASE")
DISCREPANCY_KINDS = ("STATUS_MISMATCH", "AMOUNT_MISMATCH", "UNRESOLVED_ORPHAN", "BALANCE_CLAMPED")

ENUMS = {
    "paymentstatus": PAYMENT_STATUSES,
    "settlementstatus": SETTLEMENT_STATUSES,
    "ledgerentrytype": LEDGER_ENTRY_TYPES,
    "discrepancykind": DISCREPANCY_KINDS,
}


def _enum(name: str) -> sa.types.TypeEngine:
    # Types are created once up front; tables only reference them.
    values = ENUMS[name]
    return sa.Enum(*values, name=name).with_variant(
        postgresql.ENUM(*values, name=name, create_type=False), "postgresql"
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        sa.Enum(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("username", name="uq_users_username"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "settlement_batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("settlement_reference", sa.String(length=128), nullable=False),
        sa.Column("settlement_id", sa.String(length=128), nullable=True),
        sa.Column("batch_reference", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2, asdecimal=True), nullable=True),
        sa.Column("settlement_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_count", sa.Integer(), nullable=True),
        sa.Column("transaction_references", sa.JSON(), nullable=False),
        sa.Column("status", _enum("settlementstatus"), nullable=False, server_default="PENDING"),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("matched_by_fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("raw_json", sa.JSON(), nullable=False),
        sa.UniqueConstraint("settlement_reference", name="uq_settlement_batches_settlement_reference"),
    )

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("payment_reference", sa.String(length=128), nullable=False),
        sa.Column("transaction_reference", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2, asdecimal=True), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="NGN"),
        sa.Column("status", _enum("paymentstatus"), nullable=False, server_default="PENDING"),
        sa.Column("settlement_status", _enum("settlementstatus"), nullable=False, server_default="PENDING"),
        sa.Column("amount_paid", sa.Numeric(18, 2, asdecimal=True), nullable=True),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("response_code", sa.String(length=32), nullable=True),
        sa.Column("fee", sa.Numeric(18, 2, asdecimal=True), nullable=True),
        sa.Column("settlement_amount", sa.Numeric(18, 2, asdecimal=True), nullable=True),
        sa.Column(
            "settlement_reference",
            sa.String(length=128),
            sa.ForeignKey("settlement_batches.settlement_reference"),
            nullable=True,
        ),
        sa.Column("settlement_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("checkout_url", sa.String(length=512), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_payment_transactions_positive_amount"),
        sa.UniqueConstraint("payment_reference", name="uq_payment_transactions_payment_reference"),
        sa.UniqueConstraint("transaction_reference", name="uq_payment_transactions_transaction_reference"),
    )
    op.create_index("ix_payment_transactions_user_id", "payment_transactions", ["user_id"])
    op.create_index("ix_payment_transactions_status", "payment_transactions", ["status"])
    op.create_index("ix_payment_transactions_user_status", "payment_transactions", ["user_id", "status"])
    op.create_index(
        "ix_payment_transactions_settlement",
        "payment_transactions",
        ["status", "settlement_status", "paid_at"],
    )
    op.create_index("ix_payment_transactions_expires_at", "payment_transactions", ["expires_at"])
    op.create_index(
        "ix_payment_transactions_settlement_reference", "payment_transactions", ["settlement_reference"]
    )

    op.create_table(
        "wallet_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("balance", sa.Numeric(18, 2, asdecimal=True), nullable=False, server_default="0"),
        sa.Column("total_deposited", sa.Numeric(18, 2, asdecimal=True), nullable=False, server_default="0"),
        sa.Column("deposit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_deposit_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_wallet_accounts_non_negative"),
        sa.UniqueConstraint("user_id", name="uq_wallet_accounts_user_id"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("entry_type", _enum("ledgerentrytype"), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2, asdecimal=True), nullable=False),
        sa.Column("balance_before", sa.Numeric(18, 2, asdecimal=True), nullable=False),
        sa.Column("balance_after", sa.Numeric(18, 2, asdecimal=True), nullable=False),
        sa.Column(
            "payment_transaction_id",
            sa.Integer(),
            sa.ForeignKey("payment_transactions.id"),
            nullable=True,
        ),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_ledger_entries_user_created", "ledger_entries", ["user_id", "created_at"])
    op.create_index("ix_ledger_entries_reference", "ledger_entries", ["reference"])
    op.create_index("ix_ledger_entries_payment_transaction_id", "ledger_entries", ["payment_transaction_id"])

    op.create_table(
        "webhook_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("provider", sa.String(length=50), nullable=False, server_default="gateway"),
        sa.Column("request_id", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("dedup_key", sa.String(length=255), nullable=False),
        sa.Column("transaction_reference", sa.String(length=128), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=False),
        sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("request_id", name="uq_webhook_records_request_id"),
    )
    op.create_index("ix_webhook_records_received", "webhook_records", ["received_at"])
    op.create_index("ix_webhook_records_event_type", "webhook_records", ["event_type"])
    op.create_index("ix_webhook_records_dedup_key", "webhook_records", ["dedup_key"])
    op.create_index("ix_webhook_records_processed", "webhook_records", ["processed", "attempts"])

    op.create_table(
        "webhook_dedup_keys",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("dedup_key", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column(
            "webhook_record_id",
            sa.Integer(),
            sa.ForeignKey("webhook_records.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.UniqueConstraint("dedup_key", name="uq_webhook_dedup_keys_dedup_key"),
    )

    op.create_table(
        "orphan_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("transaction_reference", sa.String(length=128), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2, asdecimal=True), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="webhook"),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("reconciled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column(
            "payment_transaction_id",
            sa.Integer(),
            sa.ForeignKey("payment_transactions.id"),
            nullable=True,
        ),
        sa.Column("resolution_note", sa.String(length=255), nullable=True),
        sa.UniqueConstraint("transaction_reference", name="uq_orphan_payments_transaction_reference"),
    )
    op.create_index("ix_orphan_payments_reconciled", "orphan_payments", ["reconciled"])
    op.create_index("ix_orphan_payments_customer_email", "orphan_payments", ["customer_email"])
    op.create_index("ix_orphan_payments_payment_reference", "orphan_payments", ["payment_reference"])

    op.create_table(
        "reconciliation_discrepancies",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("kind", _enum("discrepancykind"), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=False),
        sa.Column("local_status", sa.String(length=32), nullable=True),
        sa.Column("gateway_status", sa.String(length=32), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolution_note", sa.String(length=255), nullable=True),
        sa.UniqueConstraint("kind", "reference", name="uq_reconciliation_discrepancies_kind_reference"),
    )
    op.create_index(
        "ix_reconciliation_discrepancies_resolved", "reconciliation_discrepancies", ["resolved"]
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_timestamps(),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.UniqueConstraint("name", name="uq_scheduler_locks_name"),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_reconciliation_discrepancies_resolved", table_name="reconciliation_discrepancies")
    op.drop_table("reconciliation_discrepancies")
    op.drop_index("ix_orphan_payments_payment_reference", table_name="orphan_payments")
    op.drop_index("ix_orphan_payments_customer_email", table_name="orphan_payments")
    op.drop_index("ix_orphan_payments_reconciled", table_name="orphan_payments")
    op.drop_table("orphan_payments")
    op.drop_table("webhook_dedup_keys")
    op.drop_index("ix_webhook_records_processed", table_name="webhook_records")
    op.drop_index("ix_webhook_records_dedup_key", table_name="webhook_records")
    op.drop_index("ix_webhook_records_event_type", table_name="webhook_records")
    op.drop_index("ix_webhook_records_received", table_name="webhook_records")
    op.drop_table("webhook_records")
    op.drop_index("ix_ledger_entries_payment_transaction_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_reference", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_user_created", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("wallet_accounts")
    for index in (
        "ix_payment_transactions_settlement_reference",
        "ix_payment_transactions_expires_at",
        "ix_payment_transactions_settlement",
        "ix_payment_transactions_user_status",
        "ix_payment_transactions_status",
        "ix_payment_transactions_user_id",
    ):
        op.drop_index(index, table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_table("settlement_batches")
    op.drop_table("users")

    bind = op.get_bind()
    for name, values in ENUMS.items():
        sa.Enum(*values, name=name).drop(bind, checkfirst=True)
