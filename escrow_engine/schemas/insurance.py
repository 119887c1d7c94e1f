"""Pydantic v2 schemas for escrow insurance policies and claims."""

import uuid
from datetime import datetime

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, field_validator

from escrow_engine.models.insurance import ClaimReason, ClaimStatus, CoverageLevel


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class PolicyPurchase(BaseModel):
    transaction_id: uuid.UUID
    coverage_level: CoverageLevel


class PolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    policy_id: uuid.UUID
    transaction_id: uuid.UUID
    buyer_id: uuid.UUID
    coverage_level: str
    premium: int
    coverage_amount: int
    currency: str
    features: list[str]
    status: str
    payment_id: uuid.UUID | None
    expires_at: datetime
    created_at: datetime
    activated_at: datetime | None

    @field_validator("coverage_level", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class PolicyPurchaseResponse(BaseModel):
    """The new policy plus the INSURANCE_PREMIUM payment it is waiting for."""
    policy: PolicyResponse
    payment_required: bool = True
    amount: int
    currency: str


class ClaimCreate(BaseModel):
    reason: ClaimReason
    description: str = Field(..., max_length=8192)
    evidence_urls: list[AnyHttpUrl] = Field(default_factory=list, max_length=20)


class ClaimReview(BaseModel):
    decision: ClaimStatus
    notes: str = Field(..., min_length=1, max_length=4096)


class ClaimResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    claim_id: uuid.UUID
    policy_id: uuid.UUID
    claimant_id: uuid.UUID
    reason: str
    description: str
    evidence_urls: list[str]
    status: str
    claim_amount: int
    review_notes: str | None
    reviewed_by: uuid.UUID | None
    created_at: datetime
    reviewed_at: datetime | None

    @field_validator("reason", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)
