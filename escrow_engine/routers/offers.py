"""Offer-accepted event intake."""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.auth.middleware import AuthenticatedActor, verify_request
from escrow_engine.auth.rate_limit import check_rate_limit
from escrow_engine.database import get_db
from escrow_engine.schemas.milestone import MilestoneResponse
from escrow_engine.schemas.offer import OfferAccepted
from escrow_engine.schemas.transaction import OfferSagaResponse, TransactionResponse
from escrow_engine.services.offers import handle_offer_accepted

router = APIRouter(prefix="/offers", tags=["offers"])


@router.post("/accepted", response_model=OfferSagaResponse, dependencies=[Depends(check_rate_limit)])
async def offer_accepted(
    data: OfferAccepted,
    response: Response,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> OfferSagaResponse:
    """Create the escrow transaction for an accepted offer. Replays return the same transaction."""
    transaction, milestones, created = await handle_offer_accepted(db, data, auth.ref)
    response.status_code = 201 if created else 200
    return OfferSagaResponse(
        transaction=TransactionResponse.model_validate(transaction),
        milestones=[MilestoneResponse.model_validate(m) for m in milestones],
        created=created,
    )
