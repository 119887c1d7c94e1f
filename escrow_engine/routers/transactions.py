"""Transaction lifecycle, milestone and high-value approval endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.auth.middleware import AuthenticatedActor, verify_request
from escrow_engine.auth.rate_limit import check_rate_limit
from escrow_engine.database import get_db
from escrow_engine.errors import NotFound, ValidationError
from escrow_engine.models.transaction import EscrowTransaction, TransactionStatus
from escrow_engine.schemas.dispute import DisputeCreate, DisputeResponse, FraudFlagCreate
from escrow_engine.schemas.milestone import (
    ChecklistUpdate,
    MilestoneApprovalRequest,
    MilestoneApprovalResponse,
    MilestoneResponse,
)
from escrow_engine.schemas.payment import PaymentResponse
from escrow_engine.schemas.transaction import (
    AuditEntryResponse,
    HighValueActionRequest,
    HighValueActionResponse,
    HighValueStatusResponse,
    ReleaseCheckResponse,
    TransactionDetailResponse,
    TransactionResponse,
    TransitionRequest,
)
from escrow_engine.services import disputes as dispute_service
from escrow_engine.services import high_value as gate
from escrow_engine.services import milestones as ledger
from escrow_engine.services import payments as payment_service
from escrow_engine.services import state_machine
from escrow_engine.services.audit import list_transaction_history
from escrow_engine.services.authorizer import Authorizer, get_authorizer

router = APIRouter(prefix="/transactions", tags=["transactions"])


async def _viewable(
    db: AsyncSession, transaction_id: uuid.UUID, auth: AuthenticatedActor, authorizer: Authorizer
) -> EscrowTransaction:
    transaction = await state_machine.get_transaction(db, transaction_id)
    await state_machine.assert_can_view(transaction, auth.actor_id, authorizer)
    return transaction


async def _milestone_in(db: AsyncSession, transaction_id: uuid.UUID, milestone_id: uuid.UUID):
    milestone = await ledger.get_milestone(db, milestone_id)
    if milestone.transaction_id != transaction_id:
        raise NotFound("Milestone", milestone_id)
    return milestone


def _release_check_response(
    transaction: EscrowTransaction, check: gate.ReleaseCheck
) -> ReleaseCheckResponse:
    return ReleaseCheckResponse(
        transaction_id=transaction.transaction_id,
        status=transaction.status.value,
        is_high_value=check.is_high_value,
        milestones_complete=check.milestones_complete,
        pending_admin_milestones=[m.milestone_id for m in check.pending_admin_milestones],
        verification_ends_at=check.verification_ends_at,
        verification_period_elapsed=check.verification_period_elapsed,
        can_release=check.can_release,
        ready_for_release=check.ready_for_release,
        blocking_reasons=check.blocking_reasons(),
    )


@router.get("", response_model=list[TransactionResponse], dependencies=[Depends(check_rate_limit)])
async def list_transactions(
    status: TransactionStatus | None = Query(None),
    include_all: bool = Query(False, alias="all", description="Every transaction; staff only"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> list[TransactionResponse]:
    transactions = await state_machine.list_transactions_for_actor(
        db, auth.actor_id, authorizer, status=status, include_all=include_all, limit=limit, offset=offset
    )
    return [TransactionResponse.model_validate(t) for t in transactions]


@router.get(
    "/{transaction_id}",
    response_model=TransactionDetailResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def get_transaction(
    transaction_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> TransactionDetailResponse:
    transaction = await _viewable(db, transaction_id, auth, authorizer)
    milestones = await ledger.list_milestones(db, transaction_id)
    response = TransactionDetailResponse.model_validate(transaction)
    response.milestones = [MilestoneResponse.model_validate(m) for m in milestones]
    return response


@router.post(
    "/{transaction_id}/transition",
    response_model=TransactionResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def transition_transaction(
    transaction_id: uuid.UUID,
    data: TransitionRequest,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> TransactionResponse:
    """Request a status change. Edge, authorization and gate rules apply."""
    transaction = await state_machine.transition(
        db, transaction_id, data.status, auth.ref, authorizer, reason=data.reason
    )
    return TransactionResponse.model_validate(transaction)


@router.post(
    "/{transaction_id}/ready",
    response_model=ReleaseCheckResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def attempt_ready(
    transaction_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> ReleaseCheckResponse:
    """Try VERIFICATION_PERIOD -> READY_TO_RELEASE; the check explains any block."""
    transaction, check = await gate.request_release(db, transaction_id, auth.ref, authorizer)
    return _release_check_response(transaction, check)


@router.get(
    "/{transaction_id}/history",
    response_model=list[AuditEntryResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def transaction_history(
    transaction_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> list[AuditEntryResponse]:
    await _viewable(db, transaction_id, auth, authorizer)
    entries = await list_transaction_history(db, transaction_id)
    return [AuditEntryResponse.model_validate(e) for e in entries]


# --- Milestones ---

@router.get(
    "/{transaction_id}/milestones",
    response_model=list[MilestoneResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_milestones(
    transaction_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> list[MilestoneResponse]:
    await _viewable(db, transaction_id, auth, authorizer)
    milestones = await ledger.list_milestones(db, transaction_id)
    return [MilestoneResponse.model_validate(m) for m in milestones]


@router.put(
    "/{transaction_id}/milestones/{milestone_id}",
    response_model=MilestoneApprovalResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def approve_milestone(
    transaction_id: uuid.UUID,
    milestone_id: uuid.UUID,
    data: MilestoneApprovalRequest,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> MilestoneApprovalResponse:
    """Buyer or seller approval. Approvals cannot be withdrawn."""
    if not data.approve:
        raise ValidationError("Milestone approvals cannot be withdrawn")
    await _milestone_in(db, transaction_id, milestone_id)
    approval = await ledger.approve(db, milestone_id, auth.ref)
    return MilestoneApprovalResponse(
        milestone=MilestoneResponse.model_validate(approval.milestone),
        completed=approval.completed,
        changed=approval.changed,
        transaction_status=approval.transaction_status.value,
    )


@router.put(
    "/{transaction_id}/milestones/{milestone_id}/checklist",
    response_model=MilestoneResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def update_checklist(
    transaction_id: uuid.UUID,
    milestone_id: uuid.UUID,
    data: ChecklistUpdate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> MilestoneResponse:
    await _milestone_in(db, transaction_id, milestone_id)
    milestone = await ledger.update_checklist(db, milestone_id, data.checklist, auth.ref, authorizer)
    return MilestoneResponse.model_validate(milestone)


# --- High-value approval ---

@router.get(
    "/{transaction_id}/high-value-approval",
    response_model=HighValueStatusResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def high_value_status(
    transaction_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> HighValueStatusResponse:
    await _viewable(db, transaction_id, auth, authorizer)
    status = await gate.approval_status(db, transaction_id)
    return HighValueStatusResponse(
        transaction_id=status.transaction_id,
        status=status.status,
        agreed_price=status.agreed_price,
        threshold=status.threshold,
        is_high_value=status.is_high_value,
        requires_approval=status.requires_approval,
        can_release=status.can_release,
        flagged_milestones=[MilestoneResponse.model_validate(m) for m in status.flagged_milestones],
        pending_milestones=[MilestoneResponse.model_validate(m) for m in status.pending_milestones],
    )


@router.post(
    "/{transaction_id}/high-value-approval",
    response_model=HighValueActionResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def high_value_action(
    transaction_id: uuid.UUID,
    data: HighValueActionRequest,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> HighValueActionResponse:
    """Administrative decision.

    - ``approve`` with ``milestone_id``: sign off one flagged milestone
    - ``approve`` alone: sign off everything outstanding and release
    - ``reject``: open a dispute (``notes`` required)
    """
    if data.action == "reject":
        if not data.notes:
            raise ValidationError("Rejecting a release requires notes")
        dispute = await gate.reject_release(db, transaction_id, auth.ref, data.notes, authorizer)
        transaction = await state_machine.get_transaction(db, transaction_id)
        return HighValueActionResponse(
            action="rejected",
            transaction=TransactionResponse.model_validate(transaction),
            dispute_id=dispute.dispute_id,
        )
    if data.milestone_id is not None:
        await _milestone_in(db, transaction_id, data.milestone_id)
        milestone = await gate.approve_milestone(db, data.milestone_id, auth.ref, authorizer)
        transaction = await state_machine.get_transaction(db, transaction_id)
        return HighValueActionResponse(
            action="milestone_approved",
            transaction=TransactionResponse.model_validate(transaction),
            milestone=MilestoneResponse.model_validate(milestone),
        )
    transaction = await gate.approve_release(db, transaction_id, auth.ref, authorizer)
    return HighValueActionResponse(
        action="released",
        transaction=TransactionResponse.model_validate(transaction),
    )


# --- Payments and disputes on a transaction ---

@router.get(
    "/{transaction_id}/payments",
    response_model=list[PaymentResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_transaction_payments(
    transaction_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> list[PaymentResponse]:
    await _viewable(db, transaction_id, auth, authorizer)
    payments = await payment_service.list_payments_for_transaction(db, transaction_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get(
    "/{transaction_id}/disputes",
    response_model=list[DisputeResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_transaction_disputes(
    transaction_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> list[DisputeResponse]:
    await _viewable(db, transaction_id, auth, authorizer)
    disputes = await dispute_service.list_disputes(db, transaction_id)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.post(
    "/{transaction_id}/disputes",
    response_model=DisputeResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def raise_dispute(
    transaction_id: uuid.UUID,
    data: DisputeCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.raise_dispute(db, transaction_id, auth.ref, data.summary)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{transaction_id}/fraud-flags",
    response_model=DisputeResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def flag_fraud(
    transaction_id: uuid.UUID,
    data: FraudFlagCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> DisputeResponse:
    dispute = await dispute_service.flag_fraud(db, transaction_id, auth.ref, data.reason, authorizer)
    return DisputeResponse.model_validate(dispute)
