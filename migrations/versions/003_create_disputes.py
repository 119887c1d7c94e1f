"""Create disputes and dispute_evidence tables.

At most one open dispute per transaction, enforced by a partial unique index.

Revision ID: 003
Revises: 002
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_id", sa.Uuid(), nullable=False),
        sa.Column("raised_by", sa.Uuid(), nullable=True),
        sa.Column("raised_by_system", sa.String(64), nullable=True),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("OPEN", "UNDER_REVIEW", "MEDIATION", "RESOLVED", "CLOSED", name="disputestatus"),
            nullable=False,
            server_default="OPEN",
        ),
        sa.Column(
            "outcome",
            sa.Enum("RELEASE", "REFUND", "PARTIAL", "TERMINATE", name="disputeoutcome"),
            nullable=True,
        ),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("buyer_amount", sa.BigInteger(), nullable=True),
        sa.Column("seller_amount", sa.BigInteger(), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("dispute_id", name="pk_disputes"),
        sa.ForeignKeyConstraint(
            ["transaction_id"], ["transactions.transaction_id"],
            name="fk_disputes_transaction_id_transactions", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["raised_by"], ["actors.actor_id"],
            name="fk_disputes_raised_by_actors", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["resolved_by"], ["actors.actor_id"],
            name="fk_disputes_resolved_by_actors", ondelete="RESTRICT",
        ),
    )
    op.create_index("ix_disputes_transaction_id", "disputes", ["transaction_id"])
    op.create_index(
        "uq_disputes_one_open_per_transaction",
        "disputes",
        ["transaction_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('OPEN', 'UNDER_REVIEW', 'MEDIATION')"),
    )

    op.create_table(
        "dispute_evidence",
        sa.Column("evidence_id", sa.Uuid(), nullable=False),
        sa.Column("dispute_id", sa.Uuid(), nullable=False),
        sa.Column("submitted_by", sa.Uuid(), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("PHOTO", "DOCUMENT", "VIDEO", "OTHER", name="evidencekind"),
            nullable=False,
        ),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("mime_type", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("evidence_id", name="pk_dispute_evidence"),
        sa.ForeignKeyConstraint(
            ["dispute_id"], ["disputes.dispute_id"],
            name="fk_dispute_evidence_dispute_id_disputes", ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["submitted_by"], ["actors.actor_id"],
            name="fk_dispute_evidence_submitted_by_actors", ondelete="RESTRICT",
        ),
    )
    op.create_index("ix_dispute_evidence_dispute_id", "dispute_evidence", ["dispute_id"])


def downgrade() -> None:
    op.drop_table("dispute_evidence")
    op.drop_table("disputes")
    op.execute("DROP TYPE IF EXISTS evidencekind")
    op.execute("DROP TYPE IF EXISTS disputeoutcome")
    op.execute("DROP TYPE IF EXISTS disputestatus")
