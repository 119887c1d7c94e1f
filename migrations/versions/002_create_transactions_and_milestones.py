"""Create transactions and milestones tables.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TRANSACTION_STATUSES = (
    "CREATED",
    "ESCROW_REQUESTED",
    "FUNDED",
    "VERIFICATION_PERIOD",
    "READY_TO_RELEASE",
    "DISPUTED",
    "RELEASED",
    "REFUNDED",
    "PARTIAL_SETTLED",
    "CLOSED",
)


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.Uuid(), nullable=False),
        sa.Column("offer_id", sa.Uuid(), nullable=False),
        sa.Column("listing_id", sa.Uuid(), nullable=False),
        sa.Column("buyer_id", sa.Uuid(), nullable=False),
        sa.Column("seller_id", sa.Uuid(), nullable=False),
        sa.Column("agreed_price", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="GHS"),
        sa.Column(
            "status",
            sa.Enum(*TRANSACTION_STATUSES, name="transactionstatus"),
            nullable=False,
            server_default="CREATED",
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("funded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("transaction_id", name="pk_transactions"),
        sa.UniqueConstraint("offer_id", name="uq_transactions_offer_id"),
        sa.ForeignKeyConstraint(
            ["buyer_id"], ["actors.actor_id"],
            name="fk_transactions_buyer_id_actors", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["seller_id"], ["actors.actor_id"],
            name="fk_transactions_seller_id_actors", ondelete="RESTRICT",
        ),
        sa.CheckConstraint("agreed_price > 0", name="ck_transactions_agreed_price_positive"),
        sa.CheckConstraint("buyer_id <> seller_id", name="ck_transactions_distinct_parties"),
    )
    op.create_index("ix_transactions_listing_id", "transactions", ["listing_id"])
    op.create_index("ix_transactions_buyer_id", "transactions", ["buyer_id"])
    op.create_index("ix_transactions_seller_id", "transactions", ["seller_id"])

    op.create_table(
        "milestones",
        sa.Column("milestone_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("buyer_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seller_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requires_admin_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("admin_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_approved_by", sa.Uuid(), nullable=True),
        sa.Column("checklist", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("milestone_id", name="pk_milestones"),
        sa.ForeignKeyConstraint(
            ["transaction_id"], ["transactions.transaction_id"],
            name="fk_milestones_transaction_id_transactions", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["admin_approved_by"], ["actors.actor_id"],
            name="fk_milestones_admin_approved_by_actors", ondelete="RESTRICT",
        ),
        sa.UniqueConstraint(
            "transaction_id", "sort_order", name="uq_milestones_transaction_sort_order"
        ),
        sa.CheckConstraint("amount >= 0", name="ck_milestones_amount_non_negative"),
        sa.CheckConstraint(
            "completed_at IS NULL OR (buyer_approved_at IS NOT NULL AND seller_approved_at IS NOT NULL)",
            name="ck_milestones_completed_requires_both_approvals",
        ),
    )
    op.create_index("ix_milestones_transaction_id", "milestones", ["transaction_id"])


def downgrade() -> None:
    op.drop_table("milestones")
    op.drop_table("transactions")
    op.execute("DROP TYPE IF EXISTS transactionstatus")
