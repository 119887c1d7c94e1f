"""Create payments and reconciliation_alerts tables.

Revision ID: 004
Revises: 003
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("payment_id", sa.Uuid(), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_reference", sa.String(64), nullable=False),
        sa.Column("provider_transaction_id", sa.String(64), nullable=True),
        sa.Column(
            "type",
            sa.Enum("FUNDING", "LISTING_FEE", "PAYOUT", "INSURANCE_PREMIUM", name="paymenttype"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("INITIATED", "PENDING", "SUCCESS", "FAILED", name="paymentstatus"),
            nullable=False,
            server_default="INITIATED",
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("fees", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("net_amount", sa.BigInteger(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="GHS"),
        sa.Column("payer_id", sa.Uuid(), nullable=True),
        sa.Column("payee_id", sa.Uuid(), nullable=True),
        sa.Column("transaction_id", sa.Uuid(), nullable=True),
        sa.Column("listing_id", sa.Uuid(), nullable=True),
        sa.Column("checkout_url", sa.String(2048), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("provider_payload", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("payment_id", name="pk_payments"),
        sa.UniqueConstraint("provider_reference", name="uq_payments_provider_reference"),
        sa.ForeignKeyConstraint(
            ["payer_id"], ["actors.actor_id"],
            name="fk_payments_payer_id_actors", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["payee_id"], ["actors.actor_id"],
            name="fk_payments_payee_id_actors", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["transaction_id"], ["transactions.transaction_id"],
            name="fk_payments_transaction_id_transactions", ondelete="RESTRICT",
        ),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        sa.CheckConstraint("fees >= 0 AND fees <= amount", name="ck_payments_fees_within_amount"),
    )
    op.create_index("ix_payments_transaction_id", "payments", ["transaction_id"])

    op.create_table(
        "reconciliation_alerts",
        sa.Column("alert_id", sa.Uuid(), nullable=False),
        sa.Column("payment_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_id", sa.Uuid(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("OPEN", "RESOLVED", name="alertstatus"),
            nullable=False,
            server_default="OPEN",
        ),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("alert_id", name="pk_reconciliation_alerts"),
        sa.ForeignKeyConstraint(
            ["payment_id"], ["payments.payment_id"],
            name="fk_reconciliation_alerts_payment_id_payments", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["transaction_id"], ["transactions.transaction_id"],
            name="fk_reconciliation_alerts_transaction_id_transactions", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["resolved_by"], ["actors.actor_id"],
            name="fk_reconciliation_alerts_resolved_by_actors", ondelete="RESTRICT",
        ),
    )
    op.create_index("ix_reconciliation_alerts_payment_id", "reconciliation_alerts", ["payment_id"])


def downgrade() -> None:
    op.drop_table("reconciliation_alerts")
    op.drop_table("payments")
    op.execute("DROP TYPE IF EXISTS alertstatus")
    op.execute("DROP TYPE IF EXISTS paymentstatus")
    op.execute("DROP TYPE IF EXISTS paymenttype")
