"""Pydantic v2 schemas for disputes and evidence."""

import uuid
from datetime import datetime

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, field_validator

from escrow_engine.models.dispute import DisputeOutcome, DisputeStatus, EvidenceKind


class DisputeCreate(BaseModel):
    summary: str = Field(..., min_length=1, max_length=4096)


class FraudFlagCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=4096)


class DisputeStatusUpdate(BaseModel):
    """Move a dispute to UNDER_REVIEW, MEDIATION or CLOSED."""
    status: DisputeStatus
    notes: str | None = Field(None, max_length=4096)


class DisputeResolve(BaseModel):
    """Resolver's decision. Amounts are minor units and only accepted for PARTIAL."""
    outcome: DisputeOutcome
    notes: str = Field(..., max_length=8192)
    buyer_amount: int | None = Field(None, ge=0)
    seller_amount: int | None = Field(None, ge=0)


class DisputeWithdraw(BaseModel):
    notes: str = Field("", max_length=4096)


class EvidenceCreate(BaseModel):
    kind: EvidenceKind
    url: AnyHttpUrl
    description: str | None = Field(None, max_length=4096)
    mime_type: str | None = Field(None, max_length=128)


class EvidenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    evidence_id: uuid.UUID
    dispute_id: uuid.UUID
    submitted_by: uuid.UUID
    kind: str
    url: str
    description: str | None
    mime_type: str | None
    created_at: datetime

    @field_validator("kind", mode="before")
    @classmethod
    def serialize_kind(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    transaction_id: uuid.UUID
    raised_by: uuid.UUID | None
    raised_by_system: str | None
    summary: str
    status: str
    outcome: str | None
    resolution_notes: str | None
    buyer_amount: int | None
    seller_amount: int | None
    resolved_by: uuid.UUID | None
    created_at: datetime
    reviewed_at: datetime | None
    resolved_at: datetime | None
    closed_at: datetime | None

    @field_validator("status", "outcome", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str | None:
        if v is None:
            return None
        if hasattr(v, "value"):
            return v.value
        return str(v)
