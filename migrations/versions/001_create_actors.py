"""Create actors table.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "actors",
        sa.Column("actor_id", sa.Uuid(), nullable=False),
        sa.Column("public_key", sa.String(128), nullable=False),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("roles", sa.ARRAY(sa.String(32)), nullable=False, server_default="{}"),
        sa.Column("kyc_tier", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("active", "suspended", name="actorstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("actor_id", name="pk_actors"),
        sa.UniqueConstraint("public_key", name="uq_actors_public_key"),
    )


def downgrade() -> None:
    op.drop_table("actors")
    op.execute("DROP TYPE IF EXISTS actorstatus")
