"""Escrow transaction model and its transition table."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database import Base


class TransactionStatus(enum.Enum):
    CREATED = "CREATED"
    ESCROW_REQUESTED = "ESCROW_REQUESTED"
    FUNDED = "FUNDED"
    VERIFICATION_PERIOD = "VERIFICATION_PERIOD"
    READY_TO_RELEASE = "READY_TO_RELEASE"
    DISPUTED = "DISPUTED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    PARTIAL_SETTLED = "PARTIAL_SETTLED"
    CLOSED = "CLOSED"


# The only place transaction status edges are defined.
ALLOWED_EDGES: dict[TransactionStatus, set[TransactionStatus]] = {
    TransactionStatus.CREATED: {
        TransactionStatus.ESCROW_REQUESTED,
        TransactionStatus.CLOSED,
    },
    TransactionStatus.ESCROW_REQUESTED: {
        TransactionStatus.FUNDED,
        TransactionStatus.CLOSED,
    },
    TransactionStatus.FUNDED: {TransactionStatus.VERIFICATION_PERIOD},
    TransactionStatus.VERIFICATION_PERIOD: {
        TransactionStatus.READY_TO_RELEASE,
        TransactionStatus.DISPUTED,
    },
    TransactionStatus.READY_TO_RELEASE: {
        TransactionStatus.RELEASED,
        TransactionStatus.DISPUTED,
    },
    TransactionStatus.DISPUTED: {
        TransactionStatus.READY_TO_RELEASE,
        TransactionStatus.RELEASED,
        TransactionStatus.REFUNDED,
        TransactionStatus.PARTIAL_SETTLED,
        TransactionStatus.CLOSED,
    },
    TransactionStatus.RELEASED: {TransactionStatus.CLOSED},
    TransactionStatus.REFUNDED: {TransactionStatus.CLOSED},
    TransactionStatus.PARTIAL_SETTLED: {TransactionStatus.CLOSED},
    TransactionStatus.CLOSED: set(),
}

SETTLED_STATUSES = frozenset({
    TransactionStatus.RELEASED,
    TransactionStatus.REFUNDED,
    TransactionStatus.PARTIAL_SETTLED,
})

# Entering any of these stamps closed_at.
TERMINAL_STATUSES = SETTLED_STATUSES | {TransactionStatus.CLOSED}


class EscrowTransaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("agreed_price > 0", name="agreed_price_positive"),
        CheckConstraint("buyer_id <> seller_id", name="distinct_parties"),
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    offer_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    listing_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("actors.actor_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    agreed_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GHS")
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TransactionStatus.CREATED,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    def party_role(self, actor_id: uuid.UUID | None) -> str | None:
        """Return ``"buyer"``, ``"seller"`` or None for a non-party."""
        if actor_id is None:
            return None
        if actor_id == self.buyer_id:
            return "buyer"
        if actor_id == self.seller_id:
            return "seller"
        return None
