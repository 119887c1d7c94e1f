"""Dispute and dispute evidence models."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database import Base


class DisputeStatus(enum.Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    MEDIATION = "MEDIATION"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class DisputeOutcome(enum.Enum):
    RELEASE = "RELEASE"
    REFUND = "REFUND"
    PARTIAL = "PARTIAL"
    TERMINATE = "TERMINATE"


class EvidenceKind(enum.Enum):
    PHOTO = "PHOTO"
    DOCUMENT = "DOCUMENT"
    VIDEO = "VIDEO"
    OTHER = "OTHER"


OPEN_DISPUTE_STATUSES = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.UNDER_REVIEW,
    DisputeStatus.MEDIATION,
})

# RESOLVED is only reachable through resolve().
VALID_DISPUTE_TRANSITIONS: dict[DisputeStatus, set[DisputeStatus]] = {
    DisputeStatus.OPEN: {DisputeStatus.UNDER_REVIEW, DisputeStatus.MEDIATION, DisputeStatus.RESOLVED},
    DisputeStatus.UNDER_REVIEW: {DisputeStatus.MEDIATION, DisputeStatus.RESOLVED},
    DisputeStatus.MEDIATION: {DisputeStatus.RESOLVED},
    DisputeStatus.RESOLVED: {DisputeStatus.CLOSED},
    DisputeStatus.CLOSED: set(),
}


class Dispute(Base):
    __tablename__ = "disputes"
    __table_args__ = (
        Index(
            "uq_disputes_one_open_per_transaction",
            "transaction_id",
            unique=True,
            postgresql_where=text("status IN ('OPEN', 'UNDER_REVIEW', 'MEDIATION')"),
        ),
    )

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.transaction_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    # Null when raised by an automated path (see raised_by_system).
    raised_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=True
    )
    raised_by_system: Mapped[str | None] = mapped_column(String(64), nullable=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeStatus.OPEN,
    )
    outcome: Mapped[DisputeOutcome | None] = mapped_column(
        Enum(DisputeOutcome, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    seller_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_DISPUTE_STATUSES


class DisputeEvidence(Base):
    __tablename__ = "dispute_evidence"

    evidence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    submitted_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[EvidenceKind] = mapped_column(
        Enum(EvidenceKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
