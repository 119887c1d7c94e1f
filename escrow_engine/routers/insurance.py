"""Escrow insurance: coverage levels, policy purchase and claims."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.auth.middleware import AuthenticatedActor, verify_request
from escrow_engine.auth.rate_limit import check_rate_limit
from escrow_engine.database import get_db
from escrow_engine.schemas.insurance import (
    ClaimCreate,
    ClaimResponse,
    ClaimReview,
    PolicyPurchase,
    PolicyPurchaseResponse,
    PolicyResponse,
)
from escrow_engine.services import insurance as insurance_service
from escrow_engine.services.authorizer import Authorizer, get_authorizer

router = APIRouter(prefix="/insurance", tags=["insurance"])


@router.get("/levels")
async def coverage_levels() -> dict:
    """Coverage percent, premium in basis points and coverage cap (minor units) per level."""
    return insurance_service.coverage_levels()


@router.post(
    "/policies",
    response_model=PolicyPurchaseResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def purchase_policy(
    data: PolicyPurchase,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> PolicyPurchaseResponse:
    policy = await insurance_service.purchase(db, data.transaction_id, data.coverage_level, auth.ref)
    return PolicyPurchaseResponse(
        policy=PolicyResponse.model_validate(policy),
        amount=policy.premium,
        currency=policy.currency,
    )


@router.get(
    "/policies", response_model=list[PolicyResponse], dependencies=[Depends(check_rate_limit)]
)
async def list_policies(
    transaction_id: uuid.UUID | None = Query(None),
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> list[PolicyResponse]:
    """The caller's policies, or the policy on one transaction."""
    if transaction_id is None:
        policies = await insurance_service.list_policies_for_actor(db, auth.actor_id)
        return [PolicyResponse.model_validate(p) for p in policies]
    policy = await insurance_service.get_policy_for_transaction(db, transaction_id)
    if policy is None:
        return []
    await insurance_service.assert_can_view_policy(db, policy, auth.ref, authorizer)
    return [PolicyResponse.model_validate(policy)]


@router.post(
    "/policies/{policy_id}/claims",
    response_model=ClaimResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def file_claim(
    policy_id: uuid.UUID,
    data: ClaimCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ClaimResponse:
    claim = await insurance_service.file_claim(
        db,
        policy_id,
        auth.ref,
        data.reason,
        data.description,
        [str(url) for url in data.evidence_urls],
    )
    return ClaimResponse.model_validate(claim)


@router.get("/claims", response_model=list[ClaimResponse], dependencies=[Depends(check_rate_limit)])
async def list_claims(
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[ClaimResponse]:
    claims = await insurance_service.list_claims_for_actor(db, auth.actor_id)
    return [ClaimResponse.model_validate(c) for c in claims]


@router.post(
    "/claims/{claim_id}/review",
    response_model=ClaimResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def review_claim(
    claim_id: uuid.UUID,
    data: ClaimReview,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> ClaimResponse:
    claim = await insurance_service.review_claim(
        db, claim_id, data.decision, auth.ref, authorizer, data.notes
    )
    return ClaimResponse.model_validate(claim)
