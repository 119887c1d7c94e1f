"""Dispute review, resolution and evidence endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.auth.middleware import AuthenticatedActor, verify_request
from escrow_engine.auth.rate_limit import check_rate_limit
from escrow_engine.database import get_db
from escrow_engine.schemas.dispute import (
    DisputeResolve,
    DisputeResponse,
    DisputeStatusUpdate,
    DisputeWithdraw,
    EvidenceCreate,
    EvidenceResponse,
)
from escrow_engine.services import disputes as dispute_service
from escrow_engine.services.authorizer import Authorizer, get_authorizer
from escrow_engine.services.state_machine import get_transaction

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.get("/{dispute_id}", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)])
async def get_dispute(
    dispute_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> DisputeResponse:
    dispute = await dispute_service.get_dispute(db, dispute_id)
    transaction = await get_transaction(db, dispute.transaction_id)
    await dispute_service.assert_can_view(dispute, transaction, auth.actor_id, authorizer)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/status", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)]
)
async def update_dispute_status(
    dispute_id: uuid.UUID,
    data: DisputeStatusUpdate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> DisputeResponse:
    dispute = await dispute_service.advance(
        db, dispute_id, data.status, auth.ref, authorizer, notes=data.notes
    )
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/resolve", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)]
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    data: DisputeResolve,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> DisputeResponse:
    """Settle the dispute. Amounts apply to PARTIAL only and must sum to the agreed price."""
    dispute = await dispute_service.resolve(
        db,
        dispute_id,
        data.outcome,
        auth.ref,
        authorizer,
        data.notes,
        buyer_amount=data.buyer_amount,
        seller_amount=data.seller_amount,
    )
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/withdraw", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)]
)
async def withdraw_dispute(
    dispute_id: uuid.UUID,
    data: DisputeWithdraw,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> DisputeResponse:
    dispute = await dispute_service.withdraw(db, dispute_id, auth.ref, authorizer, data.notes)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/evidence",
    response_model=EvidenceResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def add_evidence(
    dispute_id: uuid.UUID,
    data: EvidenceCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> EvidenceResponse:
    evidence = await dispute_service.add_evidence(db, dispute_id, auth.ref, data, authorizer)
    return EvidenceResponse.model_validate(evidence)


@router.get(
    "/{dispute_id}/evidence",
    response_model=list[EvidenceResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_evidence(
    dispute_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> list[EvidenceResponse]:
    dispute = await dispute_service.get_dispute(db, dispute_id)
    transaction = await get_transaction(db, dispute.transaction_id)
    await dispute_service.assert_can_view(dispute, transaction, auth.actor_id, authorizer)
    evidence = await dispute_service.list_evidence(db, dispute_id)
    return [EvidenceResponse.model_validate(e) for e in evidence]
