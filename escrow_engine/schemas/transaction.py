"""Pydantic v2 schemas for transactions and the high-value gate."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow_engine.models.transaction import TransactionStatus
from escrow_engine.schemas.milestone import MilestoneResponse


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: uuid.UUID
    offer_id: uuid.UUID
    listing_id: uuid.UUID
    buyer_id: uuid.UUID
    seller_id: uuid.UUID
    agreed_price: int
    currency: str
    status: str
    version: int
    created_at: datetime
    funded_at: datetime | None
    verification_started_at: datetime | None
    closed_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class TransactionDetailResponse(TransactionResponse):
    milestones: list[MilestoneResponse] = []


class OfferSagaResponse(BaseModel):
    transaction: TransactionResponse
    milestones: list[MilestoneResponse]
    created: bool


class TransitionRequest(BaseModel):
    status: TransactionStatus
    reason: str | None = Field(None, max_length=2048)


class ReleaseCheckResponse(BaseModel):
    transaction_id: uuid.UUID
    status: str
    is_high_value: bool
    milestones_complete: bool
    pending_admin_milestones: list[uuid.UUID]
    verification_ends_at: datetime | None
    verification_period_elapsed: bool
    can_release: bool
    ready_for_release: bool
    blocking_reasons: list[str]


class HighValueStatusResponse(BaseModel):
    transaction_id: uuid.UUID
    status: str
    agreed_price: int
    threshold: int
    is_high_value: bool
    requires_approval: bool
    can_release: bool
    flagged_milestones: list[MilestoneResponse]
    pending_milestones: list[MilestoneResponse]

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class HighValueActionRequest(BaseModel):
    """``approve`` with ``milestone_id`` signs off one milestone; without it, releases."""
    action: Literal["approve", "reject"]
    notes: str | None = Field(None, max_length=4096)
    milestone_id: uuid.UUID | None = None


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    audit_id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    action: str
    actor_id: uuid.UUID | None
    actor_system: str | None
    metadata: dict | None = Field(None, validation_alias="metadata_")
    timestamp: datetime

    @field_validator("entity_type", mode="before")
    @classmethod
    def serialize_entity(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class HighValueActionResponse(BaseModel):
    action: str
    transaction: TransactionResponse
    milestone: MilestoneResponse | None = None
    dispute_id: uuid.UUID | None = None
