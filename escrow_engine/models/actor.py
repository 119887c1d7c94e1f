"""Actor SQLAlchemy model: buyers, sellers and staff."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import ARRAY, DateTime, Enum, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from escrow_engine.database import Base


class ActorStatus(enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class Role(enum.Enum):
    ADMIN = "admin"
    FINANCE = "finance"
    SUPPORT = "support"
    COMPLIANCE = "compliance"
    VERIFIER = "verifier"


class Actor(Base):
    __tablename__ = "actors"

    actor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    public_key: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    roles: Mapped[list[str]] = mapped_column(
        ARRAY(String(32)), nullable=False, default=list
    )
    kyc_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[ActorStatus] = mapped_column(
        Enum(ActorStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ActorStatus.ACTIVE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
