"""Payment and reconciliation alert models."""

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


class PaymentType(enum.Enum):
    FUNDING = "FUNDING"
    LISTING_FEE = "LISTING_FEE"
    PAYOUT = "PAYOUT"
    INSURANCE_PREMIUM = "INSURANCE_PREMIUM"


class PaymentStatus(enum.Enum):
    INITIATED = "INITIATED"
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED})

# Monotonic: initiated -> pending -> {success | failed}, never reversed.
VALID_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.INITIATED: {PaymentStatus.PENDING, PaymentStatus.SUCCESS, PaymentStatus.FAILED},
    PaymentStatus.PENDING: {PaymentStatus.SUCCESS, PaymentStatus.FAILED},
    PaymentStatus.SUCCESS: set(),
    PaymentStatus.FAILED: set(),
}


class AlertStatus(enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint("fees >= 0 AND fees <= amount", name="fees_within_amount"),
    )

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[PaymentType] = mapped_column(
        Enum(PaymentType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentStatus.INITIATED,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fees: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GHS")
    # Null payer on payouts: funds leave escrow, not an actor's account.
    payer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=True
    )
    payee_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=True
    )
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("transactions.transaction_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    listing_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES


class ReconciliationAlert(Base):
    """A successful payment whose transaction could not advance. Resolved by an operator."""
    __tablename__ = "reconciliation_alerts"

    alert_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("transactions.transaction_id", ondelete="RESTRICT"), nullable=True
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[AlertStatus] = mapped_column(
        Enum(AlertStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AlertStatus.OPEN,
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
