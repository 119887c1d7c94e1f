"""Milestone model: one dual-approved checkpoint within a transaction."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database import Base


class Milestone(Base):
    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("transaction_id", "sort_order", name="uq_milestones_transaction_sort_order"),
        CheckConstraint("amount >= 0", name="amount_non_negative"),
        CheckConstraint(
            "completed_at IS NULL OR (buyer_approved_at IS NOT NULL AND seller_approved_at IS NOT NULL)",
            name="completed_requires_both_approvals",
        ),
    )

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.transaction_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    buyer_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    seller_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    requires_admin_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_approved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=True
    )
    # Tagged by "level"; parsed through escrow_engine.schemas.checklist.
    checklist: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    @property
    def completed(self) -> bool:
        return self.completed_at is not None

    @property
    def awaiting_admin(self) -> bool:
        return self.requires_admin_approval and self.admin_approved_at is None
