"""Escrow insurance policies and the claims filed against them."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database import Base


class CoverageLevel(enum.Enum):
    BASIC = "BASIC"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


class PolicyStatus(enum.Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    ACTIVE = "ACTIVE"
    CLAIM_FILED = "CLAIM_FILED"
    CLAIM_APPROVED = "CLAIM_APPROVED"


class ClaimReason(enum.Enum):
    FRAUD = "FRAUD"
    TITLE_ISSUE = "TITLE_ISSUE"
    DOCUMENT_FORGERY = "DOCUMENT_FORGERY"
    SELLER_DEFAULT = "SELLER_DEFAULT"
    OTHER = "OTHER"


class ClaimStatus(enum.Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class EscrowInsurance(Base):
    """One policy per transaction, bought by the buyer."""
    __tablename__ = "escrow_insurance"
    __table_args__ = (
        CheckConstraint("premium > 0", name="premium_positive"),
        CheckConstraint("coverage_amount > 0", name="coverage_positive"),
    )

    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.transaction_id", ondelete="RESTRICT"),
        nullable=False, unique=True,
    )
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    coverage_level: Mapped[CoverageLevel] = mapped_column(
        Enum(CoverageLevel, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    premium: Mapped[int] = mapped_column(BigInteger, nullable=False)
    coverage_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    features: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    status: Mapped[PolicyStatus] = mapped_column(
        Enum(PolicyStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PolicyStatus.PENDING_PAYMENT,
    )
    # The premium payment that activated the policy, or the latest attempt.
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at


class InsuranceClaim(Base):
    __tablename__ = "insurance_claims"

    claim_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_insurance.policy_id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    claimant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    reason: Mapped[ClaimReason] = mapped_column(
        Enum(ClaimReason, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_urls: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    status: Mapped[ClaimStatus] = mapped_column(
        Enum(ClaimStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ClaimStatus.SUBMITTED,
    )
    claim_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
