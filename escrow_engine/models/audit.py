"""Append-only audit log shared by every escrow component."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Index, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database import Base


class AuditEntity(enum.Enum):
    TRANSACTION = "transaction"
    MILESTONE = "milestone"
    DISPUTE = "dispute"
    PAYMENT = "payment"
    ALERT = "alert"
    INSURANCE = "insurance"


class AuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )

    audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    entity_type: Mapped[AuditEntity] = mapped_column(
        Enum(AuditEntity, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    # Transaction the entity belongs to, for per-transaction history.
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    actor_system: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
