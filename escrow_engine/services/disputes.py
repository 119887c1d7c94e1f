"""Dispute resolution engine.

Disputes are raised against transactions in VERIFICATION_PERIOD,
READY_TO_RELEASE or DISPUTED. A resolution is single-shot: it is validated
in full before anything is written, then drives the owning transaction to
its terminal status through the state machine.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.config import settings
from escrow_engine.errors import (
    AuthorizationError,
    ConflictError,
    DisputeAlreadyResolved,
    InvalidTransition,
    NotFound,
    TransactionAlreadyClosed,
    ValidationError,
)
from escrow_engine.models.audit import AuditEntity
from escrow_engine.models.dispute import (
    OPEN_DISPUTE_STATUSES,
    VALID_DISPUTE_TRANSITIONS,
    Dispute,
    DisputeEvidence,
    DisputeOutcome,
    DisputeStatus,
)
from escrow_engine.models.transaction import EscrowTransaction, TransactionStatus
from escrow_engine.schemas.dispute import EvidenceCreate
from escrow_engine.services.audit import record_audit
from escrow_engine.services.authorizer import ActorRef, Authorizer, Capability, SystemActor
from escrow_engine.services.notifications import notify_parties
from escrow_engine.services.state_machine import (
    Settlement,
    apply_transition,
    commit_or_conflict,
    is_lock_conflict,
    lock_transaction,
    validate_settlement,
)

logger = logging.getLogger(__name__)

RAISABLE_STATUSES = frozenset({
    TransactionStatus.VERIFICATION_PERIOD,
    TransactionStatus.READY_TO_RELEASE,
    TransactionStatus.DISPUTED,
})

OUTCOME_TARGETS: dict[DisputeOutcome, TransactionStatus] = {
    DisputeOutcome.RELEASE: TransactionStatus.RELEASED,
    DisputeOutcome.REFUND: TransactionStatus.REFUNDED,
    DisputeOutcome.PARTIAL: TransactionStatus.PARTIAL_SETTLED,
    DisputeOutcome.TERMINATE: TransactionStatus.CLOSED,
}


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    result = await db.execute(select(Dispute).where(Dispute.dispute_id == dispute_id))
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFound("Dispute", dispute_id)
    return dispute


async def _lock_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    try:
        result = await db.execute(
            select(Dispute)
            .where(Dispute.dispute_id == dispute_id)
            .with_for_update(nowait=True)
            .execution_options(populate_existing=True)
        )
    except DBAPIError as exc:
        if not is_lock_conflict(exc):
            raise
        await db.rollback()
        raise ConflictError(f"Dispute {dispute_id} is being modified by another request") from exc
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFound("Dispute", dispute_id)
    return dispute


async def get_open_dispute(db: AsyncSession, transaction_id: uuid.UUID) -> Dispute | None:
    result = await db.execute(
        select(Dispute).where(
            Dispute.transaction_id == transaction_id,
            Dispute.status.in_(OPEN_DISPUTE_STATUSES),
        )
    )
    return result.scalar_one_or_none()


async def list_disputes(db: AsyncSession, transaction_id: uuid.UUID) -> list[Dispute]:
    result = await db.execute(
        select(Dispute)
        .where(Dispute.transaction_id == transaction_id)
        .order_by(Dispute.created_at)
    )
    return list(result.scalars().all())


async def _is_resolver(actor: ActorRef, authorizer: Authorizer) -> bool:
    return not actor.is_system and await authorizer.has_capability(
        actor.actor_id, Capability.RESOLVE_DISPUTES
    )


async def assert_can_view(
    dispute: Dispute, transaction: EscrowTransaction, actor_id: uuid.UUID, authorizer: Authorizer
) -> None:
    if transaction.party_role(actor_id) is not None:
        return
    if await authorizer.has_capability(actor_id, Capability.RESOLVE_DISPUTES):
        return
    raise AuthorizationError(f"Not permitted to view dispute {dispute.dispute_id}")


async def open_dispute(
    db: AsyncSession,
    transaction: EscrowTransaction,
    summary: str,
    *,
    raised_by: uuid.UUID | None = None,
    raised_by_system: SystemActor | None = None,
) -> Dispute:
    """Create a dispute on a locked transaction and move it to DISPUTED. Does not commit."""
    if transaction.status not in RAISABLE_STATUSES:
        raise InvalidTransition(transaction.status, TransactionStatus.DISPUTED)
    existing = await get_open_dispute(db, transaction.transaction_id)
    if existing is not None:
        raise ConflictError(
            f"Transaction {transaction.transaction_id} already has an open dispute "
            f"({existing.dispute_id})"
        )

    dispute = Dispute(
        dispute_id=uuid.uuid4(),
        transaction_id=transaction.transaction_id,
        raised_by=raised_by,
        raised_by_system=raised_by_system.value if raised_by_system is not None else None,
        summary=summary,
        status=DisputeStatus.OPEN,
    )
    db.add(dispute)

    engine = ActorRef.of_system(SystemActor.DISPUTE_ENGINE, on_behalf_of=raised_by)
    if transaction.status != TransactionStatus.DISPUTED:
        await apply_transition(
            db, transaction, TransactionStatus.DISPUTED, engine, None, reason=summary
        )
    record_audit(
        db,
        AuditEntity.DISPUTE,
        dispute.dispute_id,
        "dispute.opened",
        engine,
        transaction_id=transaction.transaction_id,
        metadata={"summary": summary},
    )
    notify_parties(
        db, transaction, "dispute.opened",
        {"dispute_id": str(dispute.dispute_id), "summary": summary},
    )
    logger.info("Dispute %s opened on transaction %s", dispute.dispute_id, transaction.transaction_id)
    return dispute


async def _commit_new_dispute(db: AsyncSession, transaction_id: uuid.UUID) -> None:
    try:
        await commit_or_conflict(db)
    except IntegrityError as exc:
        # The partial unique index caught a concurrent open dispute.
        await db.rollback()
        raise ConflictError(
            f"Transaction {transaction_id} already has an open dispute"
        ) from exc


async def raise_dispute(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    actor: ActorRef,
    summary: str,
) -> Dispute:
    """Buyer or seller disputes the transaction."""
    transaction = await lock_transaction(db, transaction_id)
    role = transaction.party_role(actor.actor_id) if not actor.is_system else None
    if role is None:
        raise AuthorizationError("Only the buyer or seller can raise a dispute")
    dispute = await open_dispute(
        db, transaction, summary or f"Dispute raised by {role}", raised_by=actor.actor_id
    )
    await _commit_new_dispute(db, transaction_id)
    await db.refresh(dispute)
    return dispute


async def flag_fraud(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    actor: ActorRef,
    reason: str,
    authorizer: Authorizer,
) -> Dispute:
    """Automated or compliance-raised fraud flag; opens a dispute with no party raiser."""
    allowed = actor.system == SystemActor.FRAUD_DETECTION or (
        not actor.is_system
        and await authorizer.has_capability(actor.actor_id, Capability.FLAG_FRAUD)
    )
    if not allowed:
        raise AuthorizationError("Only fraud detection or compliance staff can flag fraud")
    transaction = await lock_transaction(db, transaction_id)
    dispute = await open_dispute(
        db,
        transaction,
        f"Fraud flag: {reason}",
        raised_by=actor.actor_id,
        raised_by_system=SystemActor.FRAUD_DETECTION if actor.is_system else None,
    )
    await _commit_new_dispute(db, transaction_id)
    await db.refresh(dispute)
    return dispute


async def advance(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    target: DisputeStatus,
    resolver: ActorRef,
    authorizer: Authorizer,
    notes: str | None = None,
) -> Dispute:
    """Move a dispute through review/mediation, or close a resolved one."""
    if not await _is_resolver(resolver, authorizer):
        raise AuthorizationError("Only dispute resolvers can change a dispute's status")
    if target == DisputeStatus.RESOLVED:
        raise ValidationError("Disputes are resolved through the resolution endpoint")
    dispute = await _lock_dispute(db, dispute_id)
    current = dispute.status
    if target not in VALID_DISPUTE_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, target)

    now = datetime.now(UTC)
    dispute.status = target
    if target == DisputeStatus.UNDER_REVIEW:
        dispute.reviewed_at = now
    if target == DisputeStatus.CLOSED:
        dispute.closed_at = now

    record_audit(
        db,
        AuditEntity.DISPUTE,
        dispute.dispute_id,
        f"dispute.{target.value.lower()}",
        resolver,
        transaction_id=dispute.transaction_id,
        metadata={"from": current.value, "to": target.value, "notes": notes},
    )
    await commit_or_conflict(db)
    await db.refresh(dispute)
    logger.info("Dispute %s: %s -> %s", dispute_id, current.value, target.value)
    return dispute


async def resolve(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    outcome: DisputeOutcome,
    resolver: ActorRef,
    authorizer: Authorizer,
    notes: str,
    buyer_amount: int | None = None,
    seller_amount: int | None = None,
) -> Dispute:
    """Resolve a dispute and settle its transaction. Single-shot."""
    if not await _is_resolver(resolver, authorizer):
        raise AuthorizationError("Resolving disputes requires the dispute-resolution capability")
    notes = (notes or "").strip()
    if len(notes) < settings.dispute_resolution_notes_min_length:
        raise ValidationError(
            f"Resolution notes must be at least {settings.dispute_resolution_notes_min_length} characters"
        )
    if outcome == DisputeOutcome.PARTIAL:
        if buyer_amount is None or seller_amount is None:
            raise ValidationError("A partial settlement needs both buyer_amount and seller_amount")
    elif buyer_amount is not None or seller_amount is not None:
        raise ValidationError("Settlement amounts are only accepted for a PARTIAL outcome")

    dispute = await _lock_dispute(db, dispute_id)
    if dispute.status in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED):
        raise DisputeAlreadyResolved(f"Dispute {dispute_id} is already {dispute.status.value}")
    transaction = await lock_transaction(db, dispute.transaction_id)
    if transaction.status == TransactionStatus.CLOSED:
        raise TransactionAlreadyClosed(transaction.transaction_id)

    price = transaction.agreed_price
    if outcome == DisputeOutcome.PARTIAL:
        settlement = Settlement(buyer_amount=buyer_amount, seller_amount=seller_amount)
    elif outcome == DisputeOutcome.RELEASE:
        settlement = Settlement(buyer_amount=0, seller_amount=price)
    else:
        # REFUND and TERMINATE both return the escrowed funds to the buyer.
        settlement = Settlement(buyer_amount=price, seller_amount=0)
    validate_settlement(transaction, settlement)

    engine = ActorRef.of_system(SystemActor.DISPUTE_ENGINE, on_behalf_of=resolver.actor_id)
    await apply_transition(
        db,
        transaction,
        OUTCOME_TARGETS[outcome],
        engine,
        None,
        reason=f"Dispute {dispute_id} resolved: {outcome.value}",
        settlement=settlement,
    )

    dispute.status = DisputeStatus.RESOLVED
    dispute.outcome = outcome
    dispute.resolution_notes = notes
    dispute.buyer_amount = settlement.buyer_amount
    dispute.seller_amount = settlement.seller_amount
    dispute.resolved_by = resolver.actor_id
    dispute.resolved_at = datetime.now(UTC)

    record_audit(
        db,
        AuditEntity.DISPUTE,
        dispute.dispute_id,
        "dispute.resolved",
        resolver,
        transaction_id=transaction.transaction_id,
        metadata={"outcome": outcome.value, "notes": notes, **settlement.to_dict()},
    )
    notify_parties(
        db,
        transaction,
        "dispute.resolved",
        {"dispute_id": str(dispute.dispute_id), "outcome": outcome.value},
        per_party={
            transaction.buyer_id: {"your_amount": settlement.buyer_amount},
            transaction.seller_id: {"your_amount": settlement.seller_amount},
        },
    )
    await commit_or_conflict(db)
    await db.refresh(dispute)
    logger.info(
        "Dispute %s resolved %s (buyer %d, seller %d)",
        dispute_id, outcome.value, settlement.buyer_amount, settlement.seller_amount,
    )
    return dispute


async def withdraw(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    actor: ActorRef,
    authorizer: Authorizer,
    notes: str,
) -> Dispute:
    """Drop a dispute without moving funds and return the transaction to READY_TO_RELEASE.

    Allowed for the party who raised it or a resolver, and only when the
    release gate passes; otherwise ReleaseBlocked and nothing changes.
    """
    dispute = await _lock_dispute(db, dispute_id)
    is_raiser = not actor.is_system and dispute.raised_by == actor.actor_id
    if not (is_raiser or await _is_resolver(actor, authorizer)):
        raise AuthorizationError("Only the raising party or a resolver can withdraw a dispute")
    if not dispute.is_open:
        raise DisputeAlreadyResolved(f"Dispute {dispute_id} is already {dispute.status.value}")
    transaction = await lock_transaction(db, dispute.transaction_id)
    if transaction.status == TransactionStatus.CLOSED:
        raise TransactionAlreadyClosed(transaction.transaction_id)

    engine = ActorRef.of_system(SystemActor.DISPUTE_ENGINE, on_behalf_of=actor.actor_id)
    await apply_transition(
        db, transaction, TransactionStatus.READY_TO_RELEASE, engine, None,
        reason=f"Dispute {dispute_id} withdrawn",
    )
    dispute.status = DisputeStatus.RESOLVED
    dispute.resolution_notes = notes
    dispute.resolved_by = actor.actor_id
    dispute.resolved_at = datetime.now(UTC)
    record_audit(
        db,
        AuditEntity.DISPUTE,
        dispute.dispute_id,
        "dispute.withdrawn",
        actor,
        transaction_id=transaction.transaction_id,
        metadata={"notes": notes},
    )
    await commit_or_conflict(db)
    await db.refresh(dispute)
    return dispute


async def add_evidence(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    actor: ActorRef,
    data: EvidenceCreate,
    authorizer: Authorizer,
) -> DisputeEvidence:
    dispute = await get_dispute(db, dispute_id)
    result = await db.execute(
        select(EscrowTransaction).where(EscrowTransaction.transaction_id == dispute.transaction_id)
    )
    transaction = result.scalar_one()
    if actor.is_system or (
        transaction.party_role(actor.actor_id) is None
        and not await _is_resolver(actor, authorizer)
    ):
        raise AuthorizationError("Only parties or resolvers can submit evidence")
    if not dispute.is_open:
        raise ValidationError(f"Evidence cannot be added to a {dispute.status.value} dispute")

    evidence = DisputeEvidence(
        evidence_id=uuid.uuid4(),
        dispute_id=dispute.dispute_id,
        submitted_by=actor.actor_id,
        kind=data.kind,
        url=str(data.url),
        description=data.description,
        mime_type=data.mime_type,
    )
    db.add(evidence)
    record_audit(
        db,
        AuditEntity.DISPUTE,
        dispute.dispute_id,
        "dispute.evidence_added",
        actor,
        transaction_id=dispute.transaction_id,
        metadata={"evidence_id": str(evidence.evidence_id), "kind": data.kind.value},
    )
    await db.commit()
    await db.refresh(evidence)
    return evidence


async def list_evidence(db: AsyncSession, dispute_id: uuid.UUID) -> list[DisputeEvidence]:
    result = await db.execute(
        select(DisputeEvidence)
        .where(DisputeEvidence.dispute_id == dispute_id)
        .order_by(DisputeEvidence.created_at)
    )
    return list(result.scalars().all())
