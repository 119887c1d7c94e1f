"""Milestone ledger: dual approvals, completion and promotion to READY_TO_RELEASE."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.errors import AuthorizationError, ValidationError
from escrow_engine.models.transaction import TransactionStatus
from escrow_engine.schemas.checklist import DocsUploadedChecklist, PlatformReviewedChecklist
from escrow_engine.services import milestones as ledger
from escrow_engine.services import state_machine
from escrow_engine.services.high_value import can_release
from tests.conftest import (
    Party,
    approve_all,
    create_transaction,
    elapse_verification_period,
    plan,
    start_verification,
)


@pytest.mark.asyncio
async def test_below_threshold_reaches_ready_without_admin(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    """GHS 400,000 with three milestones: both parties approve everything."""
    transaction = await create_transaction(
        db_session, buyer, seller, 40_000_000, plan(20_000_000, 15_000_000, 5_000_000)
    )
    await start_verification(db_session, transaction, buyer)
    await elapse_verification_period(db_session, transaction)

    milestones = await ledger.list_milestones(db_session, transaction.transaction_id)
    assert sum(m.amount for m in milestones) == 40_000_000

    statuses = []
    for milestone in milestones:
        await ledger.approve(db_session, milestone.milestone_id, seller.ref)
        approval = await ledger.approve(db_session, milestone.milestone_id, buyer.ref)
        assert approval.completed
        statuses.append(approval.transaction_status)

    assert statuses == [
        TransactionStatus.VERIFICATION_PERIOD,
        TransactionStatus.VERIFICATION_PERIOD,
        TransactionStatus.READY_TO_RELEASE,
    ]
    assert await can_release(db_session, transaction.transaction_id)


@pytest.mark.asyncio
async def test_completion_requires_both_parties(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000, plan(5_000_000))
    await start_verification(db_session, transaction, buyer)
    (milestone,) = await ledger.list_milestones(db_session, transaction.transaction_id)

    first = await ledger.approve(db_session, milestone.milestone_id, buyer.ref)
    assert first.changed
    assert first.milestone.buyer_approved_at is not None
    assert first.milestone.seller_approved_at is None
    assert first.milestone.completed_at is None

    second = await ledger.approve(db_session, milestone.milestone_id, seller.ref)
    assert second.milestone.completed_at is not None
    assert second.milestone.completed


@pytest.mark.asyncio
async def test_reapproval_is_a_noop(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000, plan(5_000_000))
    await start_verification(db_session, transaction, buyer)
    (milestone,) = await ledger.list_milestones(db_session, transaction.transaction_id)

    first = await ledger.approve(db_session, milestone.milestone_id, buyer.ref)
    stamped = first.milestone.buyer_approved_at
    again = await ledger.approve(db_session, milestone.milestone_id, buyer.ref)
    assert not again.changed
    assert again.milestone.buyer_approved_at == stamped
    assert again.milestone.completed_at is None


@pytest.mark.asyncio
async def test_zero_amount_milestone_still_needs_both_approvals(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(
        db_session, buyer, seller, 5_000_000, plan(5_000_000, 0)
    )
    await start_verification(db_session, transaction, buyer)
    gate_milestone = (await ledger.list_milestones(db_session, transaction.transaction_id))[1]
    assert gate_milestone.amount == 0

    approval = await ledger.approve(db_session, gate_milestone.milestone_id, seller.ref)
    assert not approval.completed
    assert not await ledger.all_milestones_complete(db_session, transaction.transaction_id)


@pytest.mark.asyncio
async def test_outsider_cannot_approve(
    db_session: AsyncSession, buyer: Party, seller: Party, make_actor
) -> None:
    stranger = await make_actor("Stranger")
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000, plan(5_000_000))
    (milestone,) = await ledger.list_milestones(db_session, transaction.transaction_id)
    with pytest.raises(AuthorizationError):
        await ledger.approve(db_session, milestone.milestone_id, stranger.ref)


@pytest.mark.asyncio
async def test_completed_before_period_elapses_waits(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    """All milestones done on day one: the transaction stays in verification."""
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000, plan(5_000_000))
    await start_verification(db_session, transaction, buyer)
    await approve_all(db_session, transaction, buyer, seller)

    current = await state_machine.get_transaction(db_session, transaction.transaction_id)
    assert current.status == TransactionStatus.VERIFICATION_PERIOD
    assert await ledger.all_milestones_complete(db_session, transaction.transaction_id)


@pytest.mark.asyncio
async def test_incomplete_checklist_blocks_approval(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000)
    await start_verification(db_session, transaction, buyer)
    docs = (await ledger.list_milestones(db_session, transaction.transaction_id))[1]
    assert docs.name == "Document Verification"

    with pytest.raises(ValidationError, match="docs_complete"):
        await ledger.approve(db_session, docs.milestone_id, buyer.ref)

    partial = DocsUploadedChecklist(docs_complete=True, docs_readable=True)
    await ledger.update_checklist(db_session, docs.milestone_id, partial, seller.ref, None)
    with pytest.raises(ValidationError, match="info_consistent"):
        await ledger.approve(db_session, docs.milestone_id, buyer.ref)

    full = partial.model_copy(update={"info_consistent": True})
    await ledger.update_checklist(db_session, docs.milestone_id, full, seller.ref, None)
    approval = await ledger.approve(db_session, docs.milestone_id, buyer.ref)
    assert approval.changed


@pytest.mark.asyncio
async def test_checklist_level_cannot_change(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000)
    docs = (await ledger.list_milestones(db_session, transaction.transaction_id))[1]
    with pytest.raises(ValidationError, match="level"):
        await ledger.update_checklist(
            db_session, docs.milestone_id, PlatformReviewedChecklist(), buyer.ref, None
        )


@pytest.mark.asyncio
async def test_verifier_can_update_checklist(
    db_session: AsyncSession, buyer: Party, seller: Party, make_actor, authorizer
) -> None:
    verifier = await make_actor("Verifier", roles=["verifier"])
    stranger = await make_actor("Stranger")
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000)
    docs = (await ledger.list_milestones(db_session, transaction.transaction_id))[1]

    checked = DocsUploadedChecklist(docs_complete=True)
    updated = await ledger.update_checklist(
        db_session, docs.milestone_id, checked, verifier.ref, authorizer
    )
    assert updated.checklist["docs_complete"] is True

    with pytest.raises(AuthorizationError):
        await ledger.update_checklist(
            db_session, docs.milestone_id, checked, stranger.ref, authorizer
        )


@pytest.mark.asyncio
async def test_plan_must_balance(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    with pytest.raises(ValidationError, match="must equal the agreed price"):
        await create_transaction(db_session, buyer, seller, 5_000_000, plan(4_000_000, 500_000))


@pytest.mark.asyncio
async def test_terminal_transaction_milestones_are_frozen(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000, plan(5_000_000))
    (milestone,) = await ledger.list_milestones(db_session, transaction.transaction_id)
    await state_machine.transition(
        db_session, transaction.transaction_id, TransactionStatus.CLOSED, buyer.ref, None
    )
    with pytest.raises(ValidationError, match="CLOSED"):
        await ledger.approve(db_session, milestone.milestone_id, seller.ref)


@pytest.mark.asyncio
async def test_reapproval_after_close_is_still_a_noop(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 5_000_000, plan(5_000_000))
    (milestone,) = await ledger.list_milestones(db_session, transaction.transaction_id)
    first = await ledger.approve(db_session, milestone.milestone_id, buyer.ref)
    await state_machine.transition(
        db_session, transaction.transaction_id, TransactionStatus.CLOSED, buyer.ref, None
    )

    again = await ledger.approve(db_session, milestone.milestone_id, buyer.ref)
    assert not again.changed
    assert again.milestone.buyer_approved_at == first.milestone.buyer_approved_at
    assert again.transaction_status == TransactionStatus.CLOSED
    with pytest.raises(ValidationError, match="CLOSED"):
        await ledger.approve(db_session, milestone.milestone_id, seller.ref)
