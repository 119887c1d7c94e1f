"""Create escrow_insurance and insurance_claims tables.

Revision ID: 006
Revises: 005
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "006"
down_revision: Union[str, None] = "005"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("ALTER TYPE auditentity ADD VALUE IF NOT EXISTS 'insurance'")

    op.create_table(
        "escrow_insurance",
        sa.Column("policy_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_id", sa.Uuid(), nullable=False),
        sa.Column("buyer_id", sa.Uuid(), nullable=False),
        sa.Column(
            "coverage_level",
            sa.Enum("BASIC", "STANDARD", "PREMIUM", name="coveragelevel"),
            nullable=False,
        ),
        sa.Column("premium", sa.BigInteger(), nullable=False),
        sa.Column("coverage_amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("features", JSONB(), nullable=False, server_default="[]"),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING_PAYMENT", "ACTIVE", "CLAIM_FILED", "CLAIM_APPROVED", name="policystatus"
            ),
            nullable=False,
            server_default="PENDING_PAYMENT",
        ),
        sa.Column("payment_id", sa.Uuid(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("policy_id", name="pk_escrow_insurance"),
        sa.UniqueConstraint("transaction_id", name="uq_escrow_insurance_transaction_id"),
        sa.ForeignKeyConstraint(
            ["transaction_id"], ["transactions.transaction_id"],
            name="fk_escrow_insurance_transaction_id_transactions", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["buyer_id"], ["actors.actor_id"],
            name="fk_escrow_insurance_buyer_id_actors", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["payment_id"], ["payments.payment_id"],
            name="fk_escrow_insurance_payment_id_payments", ondelete="RESTRICT",
        ),
        sa.CheckConstraint("premium > 0", name="ck_escrow_insurance_premium_positive"),
        sa.CheckConstraint("coverage_amount > 0", name="ck_escrow_insurance_coverage_positive"),
    )
    op.create_index("ix_escrow_insurance_buyer_id", "escrow_insurance", ["buyer_id"])

    op.create_table(
        "insurance_claims",
        sa.Column("claim_id", sa.Uuid(), nullable=False),
        sa.Column("policy_id", sa.Uuid(), nullable=False),
        sa.Column("claimant_id", sa.Uuid(), nullable=False),
        sa.Column(
            "reason",
            sa.Enum(
                "FRAUD", "TITLE_ISSUE", "DOCUMENT_FORGERY", "SELLER_DEFAULT", "OTHER",
                name="claimreason",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence_urls", JSONB(), nullable=False, server_default="[]"),
        sa.Column(
            "status",
            sa.Enum("SUBMITTED", "APPROVED", "REJECTED", name="claimstatus"),
            nullable=False,
            server_default="SUBMITTED",
        ),
        sa.Column("claim_amount", sa.BigInteger(), nullable=False),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("claim_id", name="pk_insurance_claims"),
        sa.ForeignKeyConstraint(
            ["policy_id"], ["escrow_insurance.policy_id"],
            name="fk_insurance_claims_policy_id_escrow_insurance", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["claimant_id"], ["actors.actor_id"],
            name="fk_insurance_claims_claimant_id_actors", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["reviewed_by"], ["actors.actor_id"],
            name="fk_insurance_claims_reviewed_by_actors", ondelete="RESTRICT",
        ),
    )
    op.create_index("ix_insurance_claims_policy_id", "insurance_claims", ["policy_id"])
    op.create_index("ix_insurance_claims_claimant_id", "insurance_claims", ["claimant_id"])


def downgrade() -> None:
    op.drop_table("insurance_claims")
    op.drop_table("escrow_insurance")
    op.execute("DROP TYPE IF EXISTS claimstatus")
    op.execute("DROP TYPE IF EXISTS claimreason")
    op.execute("DROP TYPE IF EXISTS policystatus")
    op.execute("DROP TYPE IF EXISTS coveragelevel")
    # Postgres cannot drop a single enum value; 'insurance' stays on auditentity.
