"""Pydantic v2 schemas for payments, provider webhooks and reconciliation alerts."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from escrow_engine.models.payment import PaymentType


class PaymentInitiate(BaseModel):
    """Amount in minor units. FUNDING needs transaction_id; LISTING_FEE needs listing_id."""
    amount: int = Field(..., gt=0)
    type: PaymentType = PaymentType.FUNDING
    transaction_id: uuid.UUID | None = None
    listing_id: uuid.UUID | None = None

    @model_validator(mode="after")
    def target_present(self) -> "PaymentInitiate":
        if self.transaction_id is None and self.listing_id is None:
            raise ValueError("transaction_id or listing_id is required")
        return self


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    provider: str
    provider_reference: str
    provider_transaction_id: str | None
    type: str
    status: str
    amount: int
    fees: int
    net_amount: int | None
    currency: str
    payer_id: uuid.UUID | None
    payee_id: uuid.UUID | None
    transaction_id: uuid.UUID | None
    listing_id: uuid.UUID | None
    checkout_url: str | None
    failure_reason: str | None
    created_at: datetime
    completed_at: datetime | None

    @field_validator("type", "status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class FlutterwaveChargeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | str | None = None
    tx_ref: str
    status: str
    amount: float | None = None
    currency: str | None = None


class FlutterwaveWebhook(BaseModel):
    """``charge.completed`` delivery. Other events are acknowledged and ignored."""
    model_config = ConfigDict(extra="allow")

    event: str
    data: FlutterwaveChargeData


class ReconcileResponse(BaseModel):
    received: bool = True
    provider_reference: str | None = None
    outcome: str
    payment_status: str | None = None
    detail: str | None = None


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    alert_id: uuid.UUID
    payment_id: uuid.UUID
    transaction_id: uuid.UUID | None
    reason: str
    status: str
    resolution_notes: str | None
    resolved_by: uuid.UUID | None
    created_at: datetime
    resolved_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class AlertResolve(BaseModel):
    notes: str = Field(..., min_length=1, max_length=4096)
