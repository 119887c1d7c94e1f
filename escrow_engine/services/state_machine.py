"""Transaction state machine: the only writer of ``EscrowTransaction.status``.

Every status change goes through ``apply_transition``, which checks the edge
table, the per-edge authorization rule and the release gate before mutating.
``transition`` wraps it in a row lock and a commit so each change is a single
read-modify-write.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import or_, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from escrow_engine.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransition,
    NotFound,
    ReleaseBlocked,
    SettlementAmountMismatch,
    ValidationError,
)
from escrow_engine.models.audit import AuditEntity
from escrow_engine.models.transaction import (
    ALLOWED_EDGES,
    SETTLED_STATUSES,
    TERMINAL_STATUSES,
    EscrowTransaction,
    TransactionStatus,
)
from escrow_engine.services.audit import record_audit
from escrow_engine.services.authorizer import ActorRef, Authorizer, Capability, SystemActor
from escrow_engine.services.notifications import STATUS_EVENTS, notify_parties

logger = logging.getLogger(__name__)

# Postgres SQLSTATE for "could not obtain lock on row" (FOR UPDATE NOWAIT).
LOCK_NOT_AVAILABLE = "55P03"

S = TransactionStatus


@dataclass(frozen=True)
class EdgeRule:
    """Who may drive one edge: parties, capability holders, system actors."""
    parties: frozenset[str] = frozenset()
    capabilities: frozenset[Capability] = frozenset()
    systems: frozenset[SystemActor] = frozenset()


_BOTH = frozenset({"buyer", "seller"})
_CLOSE = EdgeRule(parties=_BOTH, capabilities=frozenset({Capability.CLOSE_TRANSACTIONS}))
_DISPUTE_ENGINE_ONLY = EdgeRule(systems=frozenset({SystemActor.DISPUTE_ENGINE}))

EDGE_RULES: dict[tuple[TransactionStatus, TransactionStatus], EdgeRule] = {
    (S.CREATED, S.ESCROW_REQUESTED): EdgeRule(parties=frozenset({"buyer"})),
    (S.CREATED, S.CLOSED): _CLOSE,
    (S.ESCROW_REQUESTED, S.FUNDED): EdgeRule(systems=frozenset({SystemActor.PAYMENT_RECONCILER})),
    (S.ESCROW_REQUESTED, S.CLOSED): _CLOSE,
    (S.FUNDED, S.VERIFICATION_PERIOD): EdgeRule(parties=_BOTH),
    (S.VERIFICATION_PERIOD, S.READY_TO_RELEASE): EdgeRule(
        parties=_BOTH, systems=frozenset({SystemActor.MILESTONE_LEDGER})
    ),
    (S.VERIFICATION_PERIOD, S.DISPUTED): _DISPUTE_ENGINE_ONLY,
    (S.READY_TO_RELEASE, S.DISPUTED): _DISPUTE_ENGINE_ONLY,
    (S.READY_TO_RELEASE, S.RELEASED): EdgeRule(
        parties=frozenset({"buyer"}), capabilities=frozenset({Capability.RELEASE_FUNDS})
    ),
    (S.DISPUTED, S.READY_TO_RELEASE): _DISPUTE_ENGINE_ONLY,
    (S.DISPUTED, S.RELEASED): _DISPUTE_ENGINE_ONLY,
    (S.DISPUTED, S.REFUNDED): _DISPUTE_ENGINE_ONLY,
    (S.DISPUTED, S.PARTIAL_SETTLED): _DISPUTE_ENGINE_ONLY,
    (S.DISPUTED, S.CLOSED): _DISPUTE_ENGINE_ONLY,
    (S.RELEASED, S.CLOSED): _CLOSE,
    (S.REFUNDED, S.CLOSED): _CLOSE,
    (S.PARTIAL_SETTLED, S.CLOSED): _CLOSE,
}


@dataclass(frozen=True)
class Settlement:
    """How escrowed funds leave: the buyer's and the seller's share."""
    buyer_amount: int
    seller_amount: int

    @property
    def total(self) -> int:
        return self.buyer_amount + self.seller_amount

    def to_dict(self) -> dict:
        return {"buyer_amount": self.buyer_amount, "seller_amount": self.seller_amount}


def validate_settlement(transaction: EscrowTransaction, settlement: Settlement) -> None:
    """Shares must be non-negative and sum exactly to the agreed price."""
    if settlement.buyer_amount < 0 or settlement.seller_amount < 0:
        raise ValidationError("Settlement amounts cannot be negative")
    if settlement.total != transaction.agreed_price:
        raise SettlementAmountMismatch(expected=transaction.agreed_price, actual=settlement.total)


def _default_settlement(
    transaction: EscrowTransaction, target: TransactionStatus
) -> Settlement:
    if target == S.RELEASED:
        return Settlement(buyer_amount=0, seller_amount=transaction.agreed_price)
    if target == S.REFUNDED:
        return Settlement(buyer_amount=transaction.agreed_price, seller_amount=0)
    raise ValidationError(
        f"A {target.value} transition needs explicit buyer and seller amounts"
    )


def is_lock_conflict(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == LOCK_NOT_AVAILABLE


async def get_transaction(db: AsyncSession, transaction_id: uuid.UUID) -> EscrowTransaction:
    result = await db.execute(
        select(EscrowTransaction).where(EscrowTransaction.transaction_id == transaction_id)
    )
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFound("Transaction", transaction_id)
    return transaction


async def lock_transaction(
    db: AsyncSession, transaction_id: uuid.UUID, *, nowait: bool = True
) -> EscrowTransaction:
    """SELECT ... FOR UPDATE the transaction row, re-reading its current state.

    With ``nowait`` a row already locked by another caller raises
    ConflictError instead of waiting.
    """
    stmt = (
        select(EscrowTransaction)
        .where(EscrowTransaction.transaction_id == transaction_id)
        .with_for_update(nowait=nowait)
        .execution_options(populate_existing=True)
    )
    try:
        result = await db.execute(stmt)
    except DBAPIError as exc:
        if not is_lock_conflict(exc):
            raise
        await db.rollback()
        raise ConflictError(
            f"Transaction {transaction_id} is being modified by another request; retry"
        ) from exc
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFound("Transaction", transaction_id)
    return transaction


async def commit_or_conflict(db: AsyncSession) -> None:
    """Commit, translating a lost optimistic-version race into ConflictError."""
    try:
        await db.commit()
    except StaleDataError as exc:
        await db.rollback()
        raise ConflictError("Transaction was modified concurrently; retry") from exc


async def _authorize_edge(
    transaction: EscrowTransaction,
    current: TransactionStatus,
    target: TransactionStatus,
    actor: ActorRef,
    authorizer: Authorizer | None,
) -> None:
    rule = EDGE_RULES[(current, target)]
    if actor.is_system:
        if actor.system in rule.systems:
            return
    else:
        if transaction.party_role(actor.actor_id) in rule.parties:
            return
        if authorizer is not None:
            for capability in rule.capabilities:
                if await authorizer.has_capability(actor.actor_id, capability):
                    return
    raise AuthorizationError(
        f"{actor} may not move transaction {transaction.transaction_id} "
        f"from {current.value} to {target.value}"
    )


async def _check_release_gate(
    db: AsyncSession,
    transaction: EscrowTransaction,
    current: TransactionStatus,
    target: TransactionStatus,
) -> None:
    if target not in (S.READY_TO_RELEASE, S.RELEASED):
        return
    from escrow_engine.services.high_value import evaluate_release

    check = await evaluate_release(db, transaction)
    if target == S.READY_TO_RELEASE or current == S.READY_TO_RELEASE:
        reasons = check.blocking_reasons()
    else:
        # A dispute outcome may release with milestones outstanding, but never
        # past a missing high-value sign-off.
        reasons = check.admin_blocking_reasons()
    if reasons:
        raise ReleaseBlocked(reasons)


async def apply_transition(
    db: AsyncSession,
    transaction: EscrowTransaction,
    target: TransactionStatus,
    actor: ActorRef,
    authorizer: Authorizer | None,
    *,
    reason: str | None = None,
    settlement: Settlement | None = None,
) -> EscrowTransaction:
    """Validate and apply one transition on an already-locked row. Does not commit.

    All checks run before the first mutation, so a failure leaves the row and
    session untouched.
    """
    current = transaction.status
    if target not in ALLOWED_EDGES.get(current, set()):
        raise InvalidTransition(current, target)
    await _authorize_edge(transaction, current, target, actor, authorizer)

    if settlement is None and target in SETTLED_STATUSES:
        settlement = _default_settlement(transaction, target)
    if settlement is not None:
        validate_settlement(transaction, settlement)
    await _check_release_gate(db, transaction, current, target)

    now = datetime.now(UTC)
    transaction.status = target
    if target == S.FUNDED:
        transaction.funded_at = now
    if target == S.VERIFICATION_PERIOD:
        transaction.verification_started_at = now
    if target in TERMINAL_STATUSES:
        transaction.closed_at = now

    if settlement is not None:
        from escrow_engine.services.payments import schedule_payouts
        await schedule_payouts(db, transaction, settlement.buyer_amount, settlement.seller_amount)

    metadata: dict = {"from": current.value, "to": target.value}
    if reason:
        metadata["reason"] = reason
    if settlement is not None:
        metadata.update(settlement.to_dict())
    record_audit(
        db,
        AuditEntity.TRANSACTION,
        transaction.transaction_id,
        f"transition.{target.value.lower()}",
        actor,
        transaction_id=transaction.transaction_id,
        metadata=metadata,
    )

    event_type = STATUS_EVENTS.get(target)
    if event_type is not None:
        per_party = None
        if settlement is not None:
            per_party = {
                transaction.buyer_id: {"your_amount": settlement.buyer_amount},
                transaction.seller_id: {"your_amount": settlement.seller_amount},
            }
        notify_parties(
            db, transaction, event_type, {"previous_status": current.value}, per_party
        )

    logger.info(
        "Transaction %s: %s -> %s by %s",
        transaction.transaction_id, current.value, target.value, actor,
    )
    return transaction


async def transition(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    target: TransactionStatus,
    actor: ActorRef,
    authorizer: Authorizer | None,
    *,
    reason: str | None = None,
) -> EscrowTransaction:
    """Lock, validate, apply and commit a single transition."""
    transaction = await lock_transaction(db, transaction_id)
    await apply_transition(db, transaction, target, actor, authorizer, reason=reason)
    await commit_or_conflict(db)
    await db.refresh(transaction)
    return transaction


async def assert_can_view(
    transaction: EscrowTransaction, actor_id: uuid.UUID, authorizer: Authorizer
) -> None:
    if transaction.party_role(actor_id) is not None:
        return
    if await authorizer.has_capability(actor_id, Capability.VIEW_ALL_TRANSACTIONS):
        return
    raise AuthorizationError("Not a party to this transaction")


async def list_transactions_for_actor(
    db: AsyncSession,
    actor_id: uuid.UUID,
    authorizer: Authorizer,
    status: TransactionStatus | None = None,
    include_all: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[EscrowTransaction]:
    """The caller's transactions; every transaction when ``include_all`` is granted."""
    query = select(EscrowTransaction)
    if include_all:
        if not await authorizer.has_capability(actor_id, Capability.VIEW_ALL_TRANSACTIONS):
            raise AuthorizationError("Listing all transactions requires staff access")
    else:
        query = query.where(
            or_(
                EscrowTransaction.buyer_id == actor_id,
                EscrowTransaction.seller_id == actor_id,
            )
        )
    if status is not None:
        query = query.where(EscrowTransaction.status == status)
    query = query.order_by(EscrowTransaction.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())
