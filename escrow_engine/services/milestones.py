"""Milestone ledger: dual buyer/seller sign-off and aggregate completion.

The ledger owns milestone rows. Other components read them through the query
functions here (``list_milestones``, ``are_all_complete``, ``awaiting_admin``)
rather than querying the table themselves.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.errors import (
    AuthorizationError,
    LedgerImbalance,
    NotFound,
    ValidationError,
)
from escrow_engine.models.audit import AuditEntity
from escrow_engine.models.milestone import Milestone
from escrow_engine.models.transaction import (
    TERMINAL_STATUSES,
    EscrowTransaction,
    TransactionStatus,
)
from escrow_engine.schemas.checklist import DocsUploadedChecklist, parse_checklist
from escrow_engine.schemas.milestone import MilestonePlanItem
from escrow_engine.services.audit import record_audit
from escrow_engine.services.authorizer import ActorRef, Authorizer, Capability
from escrow_engine.services.notifications import notify_parties
from escrow_engine.services.state_machine import commit_or_conflict, lock_transaction

logger = logging.getLogger(__name__)


@dataclass
class MilestoneApproval:
    """Outcome of an approval call."""
    milestone: Milestone
    transaction_status: TransactionStatus
    changed: bool

    @property
    def completed(self) -> bool:
        return self.milestone.completed_at is not None


# --- Query surface ---

def are_all_complete(milestones: list[Milestone]) -> bool:
    return bool(milestones) and all(m.completed_at is not None for m in milestones)


def awaiting_admin(milestones: list[Milestone]) -> list[Milestone]:
    """Flagged milestones still lacking administrative sign-off."""
    return [m for m in milestones if m.requires_admin_approval and m.admin_approved_at is None]


async def list_milestones(db: AsyncSession, transaction_id: uuid.UUID) -> list[Milestone]:
    result = await db.execute(
        select(Milestone)
        .where(Milestone.transaction_id == transaction_id)
        .order_by(Milestone.sort_order)
    )
    return list(result.scalars().all())


async def get_milestone(db: AsyncSession, milestone_id: uuid.UUID) -> Milestone:
    result = await db.execute(select(Milestone).where(Milestone.milestone_id == milestone_id))
    milestone = result.scalar_one_or_none()
    if milestone is None:
        raise NotFound("Milestone", milestone_id)
    return milestone


async def all_milestones_complete(db: AsyncSession, transaction_id: uuid.UUID) -> bool:
    return are_all_complete(await list_milestones(db, transaction_id))


async def pending_admin_approvals(db: AsyncSession, transaction_id: uuid.UUID) -> list[Milestone]:
    return awaiting_admin(await list_milestones(db, transaction_id))


async def assert_balanced(db: AsyncSession, transaction: EscrowTransaction) -> None:
    """Milestone amounts must sum to the agreed price."""
    result = await db.execute(
        select(func.coalesce(func.sum(Milestone.amount), 0)).where(
            Milestone.transaction_id == transaction.transaction_id
        )
    )
    total = int(result.scalar_one())
    if total != transaction.agreed_price:
        raise LedgerImbalance(transaction.transaction_id, transaction.agreed_price, total)


# --- Mutations ---

def validate_plan(plan: list[MilestonePlanItem], agreed_price: int) -> None:
    if not plan:
        raise ValidationError("A transaction needs at least one milestone")
    total = sum(item.amount for item in plan)
    if total != agreed_price:
        raise ValidationError(
            f"Milestone amounts sum to {total}, must equal the agreed price {agreed_price}"
        )


async def create_milestones(
    db: AsyncSession,
    transaction: EscrowTransaction,
    plan: list[MilestonePlanItem],
) -> list[Milestone]:
    """Insert the milestone plan for a new transaction. The caller commits."""
    validate_plan(plan, transaction.agreed_price)
    milestones = []
    for position, item in enumerate(plan, start=1):
        milestone = Milestone(
            milestone_id=uuid.uuid4(),
            transaction_id=transaction.transaction_id,
            name=item.name,
            description=item.description,
            amount=item.amount,
            sort_order=position,
            requires_admin_approval=item.requires_admin_approval,
            checklist=item.checklist.model_dump() if item.checklist is not None else None,
        )
        db.add(milestone)
        milestones.append(milestone)
    await db.flush()
    await assert_balanced(db, transaction)
    return milestones


async def _lock_milestone(db: AsyncSession, milestone_id: uuid.UUID) -> Milestone:
    result = await db.execute(
        select(Milestone)
        .where(Milestone.milestone_id == milestone_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    milestone = result.scalar_one_or_none()
    if milestone is None:
        raise NotFound("Milestone", milestone_id)
    return milestone


def assert_mutable(transaction: EscrowTransaction) -> None:
    if transaction.status in TERMINAL_STATUSES:
        raise ValidationError(
            f"Milestones of a {transaction.status.value} transaction can no longer change"
        )


async def approve(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    actor: ActorRef,
) -> MilestoneApproval:
    """Record the calling party's approval. Re-approval is a no-op.

    Completion is stamped once both parties have approved. When that completes
    the last milestone of a transaction in VERIFICATION_PERIOD, the release
    gate is asked to promote it to READY_TO_RELEASE.
    """
    milestone = await get_milestone(db, milestone_id)
    # Lock order is always transaction then milestone.
    transaction = await lock_transaction(db, milestone.transaction_id, nowait=False)
    role = transaction.party_role(actor.actor_id) if not actor.is_system else None
    if role is None:
        raise AuthorizationError("Only the buyer or seller can approve a milestone")
    milestone = await _lock_milestone(db, milestone_id)

    approved_at = milestone.buyer_approved_at if role == "buyer" else milestone.seller_approved_at
    if approved_at is not None:
        return MilestoneApproval(milestone, transaction.status, changed=False)
    assert_mutable(transaction)

    checklist = parse_checklist(milestone.checklist)
    if checklist is not None and not checklist.is_complete():
        raise ValidationError(
            f"Verification checklist for '{milestone.name}' is incomplete: "
            + ", ".join(checklist.unchecked())
        )

    now = datetime.now(UTC)
    if role == "buyer":
        milestone.buyer_approved_at = now
    else:
        milestone.seller_approved_at = now
    newly_completed = (
        milestone.completed_at is None
        and milestone.buyer_approved_at is not None
        and milestone.seller_approved_at is not None
    )
    if newly_completed:
        milestone.completed_at = now

    record_audit(
        db,
        AuditEntity.MILESTONE,
        milestone.milestone_id,
        f"milestone.{role}_approved",
        actor,
        transaction_id=transaction.transaction_id,
        metadata={"name": milestone.name, "completed": newly_completed},
    )
    await assert_balanced(db, transaction)

    if newly_completed:
        logger.info("Milestone %s (%s) completed", milestone.milestone_id, milestone.name)
        notify_parties(
            db, transaction, "milestone.completed",
            {"milestone_id": str(milestone.milestone_id), "milestone_name": milestone.name},
        )
        from escrow_engine.services.high_value import promote_if_ready
        await promote_if_ready(db, transaction)

    await commit_or_conflict(db)
    await db.refresh(milestone)
    await db.refresh(transaction)
    return MilestoneApproval(milestone, transaction.status, changed=True)


async def record_admin_approval(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    admin: ActorRef,
) -> tuple[Milestone, bool]:
    """Stamp ``admin_approved_at``. Used by the high-value gate; does not commit.

    Returns the milestone and whether anything changed.
    """
    milestone = await _lock_milestone(db, milestone_id)
    if not milestone.requires_admin_approval:
        raise ValidationError(
            f"Milestone '{milestone.name}' does not require administrative approval"
        )
    if milestone.admin_approved_at is not None:
        return milestone, False
    milestone.admin_approved_at = datetime.now(UTC)
    milestone.admin_approved_by = admin.actor_id
    record_audit(
        db,
        AuditEntity.MILESTONE,
        milestone.milestone_id,
        "milestone.admin_approved",
        admin,
        transaction_id=milestone.transaction_id,
        metadata={"name": milestone.name},
    )
    return milestone, True


async def update_checklist(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    checklist: DocsUploadedChecklist,
    actor: ActorRef,
    authorizer: Authorizer,
) -> Milestone:
    """Replace a milestone's checklist. The verification level cannot change."""
    if actor.is_system:
        raise AuthorizationError("System actors cannot update a verification checklist")
    milestone = await get_milestone(db, milestone_id)
    transaction = await lock_transaction(db, milestone.transaction_id, nowait=False)
    if transaction.party_role(actor.actor_id) is None and not await authorizer.has_capability(
        actor.actor_id, Capability.VERIFY_DOCUMENTS
    ):
        raise AuthorizationError("Only parties or document verifiers can update a checklist")
    assert_mutable(transaction)
    milestone = await _lock_milestone(db, milestone_id)
    if milestone.completed_at is not None:
        raise ValidationError(f"Milestone '{milestone.name}' is complete and can no longer change")

    current = parse_checklist(milestone.checklist)
    if current is None:
        raise ValidationError(f"Milestone '{milestone.name}' has no verification checklist")
    if checklist.level != current.level:
        raise ValidationError(
            f"Checklist level {checklist.level} does not match the milestone's level {current.level}"
        )

    milestone.checklist = checklist.model_dump()
    record_audit(
        db,
        AuditEntity.MILESTONE,
        milestone.milestone_id,
        "milestone.checklist_updated",
        actor,
        transaction_id=transaction.transaction_id,
        metadata={"level": checklist.level, "unchecked": checklist.unchecked()},
    )
    await commit_or_conflict(db)
    await db.refresh(milestone)
    return milestone
