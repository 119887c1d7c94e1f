"""Pydantic v2 schemas for the offer-accepted event."""

import uuid

from pydantic import BaseModel, Field, model_validator

from escrow_engine.schemas.milestone import MilestonePlanItem


class OfferAccepted(BaseModel):
    """Emitted by the marketplace when a seller accepts a buyer's offer.

    ``milestones`` is optional; without it the default three-step plan is used.
    ``verification_level`` selects the checklist on the document milestone.
    """
    offer_id: uuid.UUID
    listing_id: uuid.UUID
    buyer_id: uuid.UUID
    seller_id: uuid.UUID
    agreed_price: int = Field(..., gt=0)
    verification_level: int = Field(1, ge=1, le=3)
    milestones: list[MilestonePlanItem] | None = None

    @model_validator(mode="after")
    def distinct_parties(self) -> "OfferAccepted":
        if self.buyer_id == self.seller_id:
            raise ValueError("buyer_id and seller_id must differ")
        return self
