"""High-value approval gate.

Transactions priced at or above ``settings.high_value_threshold`` cannot be
released until every milestone flagged ``requires_admin_approval`` carries an
administrative sign-off. The same release check also enforces the minimum
verification period before READY_TO_RELEASE.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.config import settings
from escrow_engine.errors import AuthorizationError, ConflictError, InvalidTransition
from escrow_engine.models.audit import AuditEntity
from escrow_engine.models.dispute import Dispute
from escrow_engine.models.milestone import Milestone
from escrow_engine.models.transaction import EscrowTransaction, TransactionStatus
from escrow_engine.services import milestones as ledger
from escrow_engine.services.audit import record_audit
from escrow_engine.services.authorizer import ActorRef, Authorizer, Capability, SystemActor
from escrow_engine.services.state_machine import (
    apply_transition,
    commit_or_conflict,
    get_transaction,
    lock_transaction,
)

logger = logging.getLogger(__name__)


def is_high_value(agreed_price: int) -> bool:
    return agreed_price >= settings.high_value_threshold


@dataclass
class ReleaseCheck:
    """Everything the gate knows about whether a transaction may be released."""
    transaction_id: uuid.UUID
    is_high_value: bool
    milestones_complete: bool
    incomplete_milestones: list[Milestone] = field(default_factory=list)
    pending_admin_milestones: list[Milestone] = field(default_factory=list)
    verification_ends_at: datetime | None = None
    verification_period_elapsed: bool = False

    @property
    def admin_approvals_outstanding(self) -> bool:
        return self.is_high_value and bool(self.pending_admin_milestones)

    @property
    def can_release(self) -> bool:
        return self.milestones_complete and not self.admin_approvals_outstanding

    @property
    def ready_for_release(self) -> bool:
        return self.can_release and self.verification_period_elapsed

    def admin_blocking_reasons(self) -> list[str]:
        if not self.admin_approvals_outstanding:
            return []
        names = ", ".join(m.name for m in self.pending_admin_milestones)
        return [f"Administrative approval pending for: {names}"]

    def blocking_reasons(self) -> list[str]:
        reasons = []
        if not self.milestones_complete:
            names = ", ".join(m.name for m in self.incomplete_milestones) or "no milestones"
            reasons.append(f"Milestones incomplete: {names}")
        reasons.extend(self.admin_blocking_reasons())
        if not self.verification_period_elapsed:
            if self.verification_ends_at is None:
                reasons.append("Verification period has not started")
            else:
                reasons.append(
                    f"Verification period runs until {self.verification_ends_at.isoformat()}"
                )
        return reasons


async def evaluate_release(
    db: AsyncSession,
    transaction: EscrowTransaction,
    now: datetime | None = None,
) -> ReleaseCheck:
    now = now or datetime.now(UTC)
    milestones = await ledger.list_milestones(db, transaction.transaction_id)
    ends_at = None
    if transaction.verification_started_at is not None:
        ends_at = transaction.verification_started_at + timedelta(
            days=settings.verification_period_days
        )
    return ReleaseCheck(
        transaction_id=transaction.transaction_id,
        is_high_value=is_high_value(transaction.agreed_price),
        milestones_complete=ledger.are_all_complete(milestones),
        incomplete_milestones=[m for m in milestones if m.completed_at is None],
        pending_admin_milestones=ledger.awaiting_admin(milestones),
        verification_ends_at=ends_at,
        verification_period_elapsed=ends_at is not None and ends_at <= now,
    )


async def can_release(db: AsyncSession, transaction_id: uuid.UUID) -> bool:
    transaction = await get_transaction(db, transaction_id)
    return (await evaluate_release(db, transaction)).can_release


async def promote_if_ready(
    db: AsyncSession,
    transaction: EscrowTransaction,
    actor: ActorRef | None = None,
) -> ReleaseCheck | None:
    """Move a locked VERIFICATION_PERIOD transaction to READY_TO_RELEASE if the gate allows.

    A blocked promotion is not an error; the reasons are logged. Does not commit.
    """
    if transaction.status != TransactionStatus.VERIFICATION_PERIOD:
        return None
    check = await evaluate_release(db, transaction)
    if not check.ready_for_release:
        logger.info(
            "Transaction %s not promoted: %s",
            transaction.transaction_id, "; ".join(check.blocking_reasons()),
        )
        return check
    await apply_transition(
        db,
        transaction,
        TransactionStatus.READY_TO_RELEASE,
        actor or ActorRef.of_system(SystemActor.MILESTONE_LEDGER),
        None,
        reason="All milestones complete",
    )
    return check


async def request_release(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    actor: ActorRef,
    authorizer: Authorizer,
) -> tuple[EscrowTransaction, ReleaseCheck]:
    """Party-initiated readiness attempt. Returns the check when still blocked."""
    transaction = await lock_transaction(db, transaction_id)
    if transaction.status != TransactionStatus.VERIFICATION_PERIOD:
        raise InvalidTransition(transaction.status, TransactionStatus.READY_TO_RELEASE)
    check = await evaluate_release(db, transaction)
    if check.ready_for_release:
        await apply_transition(
            db, transaction, TransactionStatus.READY_TO_RELEASE, actor, authorizer,
            reason="Release requested",
        )
        await commit_or_conflict(db)
        await db.refresh(transaction)
    return transaction, check


async def _assert_admin(actor: ActorRef, authorizer: Authorizer) -> None:
    if actor.is_system or not await authorizer.has_capability(
        actor.actor_id, Capability.APPROVE_HIGH_VALUE
    ):
        raise AuthorizationError("Only an administrator can approve or reject high-value releases")


async def approve_milestone(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    admin: ActorRef,
    authorizer: Authorizer,
) -> Milestone:
    """Administrative sign-off on a flagged milestone. Idempotent."""
    await _assert_admin(admin, authorizer)
    milestone = await ledger.get_milestone(db, milestone_id)
    transaction = await lock_transaction(db, milestone.transaction_id, nowait=False)
    ledger.assert_mutable(transaction)
    milestone, changed = await ledger.record_admin_approval(db, milestone_id, admin)
    if not changed:
        return milestone
    logger.info(
        "Milestone %s admin-approved by %s", milestone.milestone_id, admin.actor_id
    )
    await promote_if_ready(db, transaction)
    await commit_or_conflict(db)
    await db.refresh(milestone)
    return milestone


async def approve_release(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    admin: ActorRef,
    authorizer: Authorizer,
) -> EscrowTransaction:
    """Sign off every outstanding flagged milestone and release the funds."""
    await _assert_admin(admin, authorizer)
    transaction = await lock_transaction(db, transaction_id)
    if transaction.status != TransactionStatus.READY_TO_RELEASE:
        raise InvalidTransition(transaction.status, TransactionStatus.RELEASED)
    for milestone in await ledger.pending_admin_approvals(db, transaction_id):
        await ledger.record_admin_approval(db, milestone.milestone_id, admin)
    await apply_transition(
        db, transaction, TransactionStatus.RELEASED, admin, authorizer,
        reason="High-value release approved",
    )
    record_audit(
        db,
        AuditEntity.TRANSACTION,
        transaction.transaction_id,
        "high_value.approved",
        admin,
        transaction_id=transaction.transaction_id,
        metadata={"agreed_price": transaction.agreed_price},
    )
    await commit_or_conflict(db)
    await db.refresh(transaction)
    return transaction


async def reject_release(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    admin: ActorRef,
    notes: str,
    authorizer: Authorizer,
) -> Dispute:
    """Block a pending release: READY_TO_RELEASE -> DISPUTED with a new dispute."""
    await _assert_admin(admin, authorizer)
    transaction = await lock_transaction(db, transaction_id)
    if transaction.status != TransactionStatus.READY_TO_RELEASE:
        raise ConflictError(
            f"Only a transaction in READY_TO_RELEASE can have its release rejected "
            f"(currently {transaction.status.value})"
        )
    from escrow_engine.services.disputes import open_dispute

    dispute = await open_dispute(
        db,
        transaction,
        summary=f"High-value transaction release rejected by admin: {notes}",
        raised_by=admin.actor_id,
    )
    record_audit(
        db,
        AuditEntity.TRANSACTION,
        transaction.transaction_id,
        "high_value.rejected",
        admin,
        transaction_id=transaction.transaction_id,
        metadata={"notes": notes, "dispute_id": str(dispute.dispute_id)},
    )
    await commit_or_conflict(db)
    await db.refresh(dispute)
    return dispute


@dataclass
class ApprovalStatus:
    """Read-only view behind the status-check endpoint."""
    transaction_id: uuid.UUID
    agreed_price: int
    threshold: int
    is_high_value: bool
    requires_approval: bool
    status: TransactionStatus
    flagged_milestones: list[Milestone]
    pending_milestones: list[Milestone]
    can_release: bool


async def approval_status(db: AsyncSession, transaction_id: uuid.UUID) -> ApprovalStatus:
    transaction = await get_transaction(db, transaction_id)
    check = await evaluate_release(db, transaction)
    milestones = await ledger.list_milestones(db, transaction_id)
    flagged = [m for m in milestones if m.requires_admin_approval]
    return ApprovalStatus(
        transaction_id=transaction.transaction_id,
        agreed_price=transaction.agreed_price,
        threshold=settings.high_value_threshold,
        is_high_value=check.is_high_value,
        requires_approval=check.admin_approvals_outstanding,
        status=transaction.status,
        flagged_milestones=flagged,
        pending_milestones=check.pending_admin_milestones if check.is_high_value else [],
        can_release=check.can_release,
    )
