"""Pydantic v2 schemas for milestones."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow_engine.schemas.checklist import VerificationChecklist, parse_checklist


class MilestonePlanItem(BaseModel):
    """One milestone in a transaction's plan. Order in the plan is the sort order."""
    name: str = Field(..., min_length=1, max_length=128)
    description: str | None = Field(None, max_length=2048)
    amount: int = Field(0, ge=0)
    requires_admin_approval: bool = False
    checklist: VerificationChecklist | None = None


class MilestoneApprovalRequest(BaseModel):
    approve: bool


class ChecklistUpdate(BaseModel):
    checklist: VerificationChecklist


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    milestone_id: uuid.UUID
    transaction_id: uuid.UUID
    name: str
    description: str | None
    amount: int
    sort_order: int
    buyer_approved_at: datetime | None
    seller_approved_at: datetime | None
    completed_at: datetime | None
    completed: bool
    requires_admin_approval: bool
    admin_approved_at: datetime | None
    checklist: VerificationChecklist | None = None

    @field_validator("checklist", mode="before")
    @classmethod
    def parse_stored_checklist(cls, v: object) -> object:
        if isinstance(v, dict):
            return parse_checklist(v)
        return v


class MilestoneApprovalResponse(BaseModel):
    milestone: MilestoneResponse
    completed: bool
    changed: bool
    transaction_status: str
