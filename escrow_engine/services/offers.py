"""Offer-accepted saga: creates the escrow transaction and its milestone plan.

Each step is idempotent and commits on its own, so a retried event picks up
where the previous attempt stopped.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.config import settings
from escrow_engine.errors import AuthorizationError, ConflictError, NotFound
from escrow_engine.models.actor import Actor
from escrow_engine.models.audit import AuditEntity
from escrow_engine.models.milestone import Milestone
from escrow_engine.models.transaction import EscrowTransaction, TransactionStatus
from escrow_engine.schemas.checklist import empty_checklist
from escrow_engine.schemas.milestone import MilestonePlanItem
from escrow_engine.schemas.offer import OfferAccepted
from escrow_engine.services import milestones as ledger
from escrow_engine.services.audit import record_audit
from escrow_engine.services.authorizer import ActorRef
from escrow_engine.services.high_value import is_high_value
from escrow_engine.services.notifications import notify_parties

logger = logging.getLogger(__name__)


def default_plan(agreed_price: int, verification_level: int = 1) -> list[MilestonePlanItem]:
    high_value = is_high_value(agreed_price)
    return [
        MilestonePlanItem(
            name="Initial Deposit",
            description="Buyer funds held in escrow",
            amount=agreed_price,
        ),
        MilestonePlanItem(
            name="Document Verification",
            description="Title and supporting documents verified",
            amount=0,
            requires_admin_approval=high_value,
            checklist=empty_checklist(verification_level),
        ),
        MilestonePlanItem(
            name="Final Transfer",
            description="Ownership transfer completed",
            amount=0,
            requires_admin_approval=high_value,
        ),
    ]


async def _find_by_offer(db: AsyncSession, offer_id: uuid.UUID) -> EscrowTransaction | None:
    result = await db.execute(
        select(EscrowTransaction).where(EscrowTransaction.offer_id == offer_id)
    )
    return result.scalar_one_or_none()


def _assert_same_terms(transaction: EscrowTransaction, event: OfferAccepted) -> None:
    if (
        transaction.listing_id != event.listing_id
        or transaction.buyer_id != event.buyer_id
        or transaction.seller_id != event.seller_id
        or transaction.agreed_price != event.agreed_price
    ):
        raise ConflictError(
            f"Offer {event.offer_id} already produced transaction "
            f"{transaction.transaction_id} with different terms"
        )


async def ensure_transaction(
    db: AsyncSession, event: OfferAccepted
) -> tuple[EscrowTransaction, bool]:
    """Return the offer's transaction, creating it if needed, and whether it was created."""
    existing = await _find_by_offer(db, event.offer_id)
    if existing is not None:
        _assert_same_terms(existing, event)
        return existing, False

    for actor_id in (event.buyer_id, event.seller_id):
        if await db.get(Actor, actor_id) is None:
            raise NotFound("Actor", actor_id)

    transaction = EscrowTransaction(
        transaction_id=uuid.uuid4(),
        offer_id=event.offer_id,
        listing_id=event.listing_id,
        buyer_id=event.buyer_id,
        seller_id=event.seller_id,
        agreed_price=event.agreed_price,
        currency=settings.currency,
        status=TransactionStatus.CREATED,
    )
    db.add(transaction)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same offer won the insert.
        await db.rollback()
        existing = await _find_by_offer(db, event.offer_id)
        if existing is None:
            raise
        _assert_same_terms(existing, event)
        return existing, False
    await db.refresh(transaction)
    logger.info("Transaction %s created for offer %s", transaction.transaction_id, event.offer_id)
    return transaction, True


async def ensure_milestones(
    db: AsyncSession, transaction: EscrowTransaction, event: OfferAccepted
) -> tuple[list[Milestone], bool]:
    existing = await ledger.list_milestones(db, transaction.transaction_id)
    if existing:
        return existing, False
    plan = event.milestones or default_plan(event.agreed_price, event.verification_level)
    transaction_id = transaction.transaction_id
    await ledger.create_milestones(db, transaction, plan)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return await ledger.list_milestones(db, transaction_id), False
    return await ledger.list_milestones(db, transaction_id), True


async def handle_offer_accepted(
    db: AsyncSession, event: OfferAccepted, actor: ActorRef
) -> tuple[EscrowTransaction, list[Milestone], bool]:
    """Run the saga. Returns the transaction, its milestones, and whether this call created it."""
    if actor.is_system or actor.actor_id not in (event.buyer_id, event.seller_id):
        raise AuthorizationError("Only the buyer or seller can report an accepted offer")
    if event.milestones:
        ledger.validate_plan(event.milestones, event.agreed_price)

    transaction, created = await ensure_transaction(db, event)
    milestones, _ = await ensure_milestones(db, transaction, event)

    if created:
        record_audit(
            db,
            AuditEntity.TRANSACTION,
            transaction.transaction_id,
            "transaction.created",
            actor,
            transaction_id=transaction.transaction_id,
            metadata={
                "offer_id": str(event.offer_id),
                "agreed_price": event.agreed_price,
                "milestones": len(milestones),
            },
        )
        notify_parties(db, transaction, "transaction.created", {"offer_id": str(event.offer_id)})
        await db.commit()
    return transaction, milestones, created
