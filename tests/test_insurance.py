"""Escrow insurance: quotes, premium payment through reconciliation, claims."""

from datetime import UTC, datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.errors import AuthorizationError, ConflictError, NotFound, ValidationError
from escrow_engine.models.insurance import ClaimReason, ClaimStatus, CoverageLevel, PolicyStatus
from escrow_engine.models.notification import NotificationOutbox
from escrow_engine.models.payment import PaymentType
from escrow_engine.models.transaction import TransactionStatus
from escrow_engine.services import insurance as insurance_service
from escrow_engine.services import payments as payment_service
from escrow_engine.services import state_machine
from tests.conftest import (
    Party,
    create_transaction,
    encode_body,
    make_auth_headers,
    signed_request,
)

PRICE = 10_000_000  # GHS 100,000
DESCRIPTION = "The seller's title deed was found to be forged by the Lands Commission search."


async def _pay_premium(db: AsyncSession, policy, buyer: Party):
    payment = await payment_service.initiate(
        db, buyer.ref, policy.premium, PaymentType.INSURANCE_PREMIUM,
        transaction_id=policy.transaction_id,
    )
    return await payment_service.reconcile(db, payment.provider_reference, "successful")


async def _active_policy(db: AsyncSession, buyer: Party, seller: Party):
    transaction = await create_transaction(db, buyer, seller, PRICE)
    policy = await insurance_service.purchase(
        db, transaction.transaction_id, CoverageLevel.STANDARD, buyer.ref
    )
    await _pay_premium(db, policy, buyer)
    return await insurance_service.get_policy(db, policy.policy_id)


def test_quote_per_level() -> None:
    basic = insurance_service.quote(PRICE, CoverageLevel.BASIC)
    assert basic.premium == 150_000
    assert basic.coverage_amount == 5_000_000

    standard = insurance_service.quote(PRICE, CoverageLevel.STANDARD)
    assert standard.premium == 250_000
    assert standard.coverage_amount == 7_500_000


def test_quote_caps_coverage() -> None:
    premium = insurance_service.quote(300_000_000, CoverageLevel.PREMIUM)
    assert premium.premium == 12_000_000
    assert premium.coverage_amount == 200_000_000

    basic = insurance_service.quote(300_000_000, CoverageLevel.BASIC)
    assert basic.coverage_amount == 10_000_000


def test_quote_rounds_half_up() -> None:
    # 333 * 150 / 10_000 = 4.995
    assert insurance_service.quote(333, CoverageLevel.BASIC).premium == 5


@pytest.mark.asyncio
async def test_purchase_is_buyer_only_and_once(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, PRICE)
    with pytest.raises(AuthorizationError):
        await insurance_service.purchase(
            db_session, transaction.transaction_id, CoverageLevel.BASIC, seller.ref
        )

    policy = await insurance_service.purchase(
        db_session, transaction.transaction_id, CoverageLevel.BASIC, buyer.ref
    )
    assert policy.status == PolicyStatus.PENDING_PAYMENT
    assert policy.premium == 150_000
    assert policy.features == ["Fraud protection", "Document verification"]
    assert policy.expires_at - policy.created_at == timedelta(days=90)

    with pytest.raises(ConflictError, match="already purchased"):
        await insurance_service.purchase(
            db_session, transaction.transaction_id, CoverageLevel.PREMIUM, buyer.ref
        )


@pytest.mark.asyncio
async def test_closed_transaction_cannot_be_insured(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, PRICE)
    await state_machine.transition(
        db_session, transaction.transaction_id, TransactionStatus.CLOSED, buyer.ref, None
    )
    with pytest.raises(ValidationError, match="CLOSED"):
        await insurance_service.purchase(
            db_session, transaction.transaction_id, CoverageLevel.BASIC, buyer.ref
        )


@pytest.mark.asyncio
async def test_premium_payment_activates_policy(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, PRICE)
    policy = await insurance_service.purchase(
        db_session, transaction.transaction_id, CoverageLevel.STANDARD, buyer.ref
    )

    with pytest.raises(ValidationError, match="must equal"):
        await payment_service.initiate(
            db_session, buyer.ref, policy.premium - 1, PaymentType.INSURANCE_PREMIUM,
            transaction_id=transaction.transaction_id,
        )

    result = await _pay_premium(db_session, policy, buyer)
    assert result.outcome == "succeeded"
    assert result.alert is None

    active = await insurance_service.get_policy(db_session, policy.policy_id)
    assert active.status == PolicyStatus.ACTIVE
    assert active.payment_id == result.payment.payment_id
    assert active.activated_at is not None

    notices = await db_session.execute(
        select(NotificationOutbox).where(
            NotificationOutbox.recipient_id == buyer.actor_id,
            NotificationOutbox.event_type == "insurance.activated",
        )
    )
    assert len(notices.scalars().all()) == 1

    current = await state_machine.get_transaction(db_session, transaction.transaction_id)
    assert current.status == TransactionStatus.CREATED


@pytest.mark.asyncio
async def test_premium_needs_a_pending_policy(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, PRICE)
    with pytest.raises(NotFound):
        await payment_service.initiate(
            db_session, buyer.ref, 1_000, PaymentType.INSURANCE_PREMIUM,
            transaction_id=transaction.transaction_id,
        )


@pytest.mark.asyncio
async def test_second_premium_success_raises_alert(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    """Two checkouts for one premium both succeed: the second is flagged, not lost."""
    transaction = await create_transaction(db_session, buyer, seller, PRICE)
    policy = await insurance_service.purchase(
        db_session, transaction.transaction_id, CoverageLevel.BASIC, buyer.ref
    )
    first, second = [
        await payment_service.initiate(
            db_session, buyer.ref, policy.premium, PaymentType.INSURANCE_PREMIUM,
            transaction_id=transaction.transaction_id,
        )
        for _ in range(2)
    ]
    await payment_service.reconcile(db_session, first.provider_reference, "successful")
    late = await payment_service.reconcile(db_session, second.provider_reference, "successful")
    assert late.alert is not None
    assert "No insurance policy" in late.alert.reason
    assert await payment_service.count_open_alerts(db_session) == 1


@pytest.mark.asyncio
async def test_claim_on_active_policy(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    policy = await _active_policy(db_session, buyer, seller)

    with pytest.raises(AuthorizationError):
        await insurance_service.file_claim(
            db_session, policy.policy_id, seller.ref, ClaimReason.FRAUD, DESCRIPTION
        )
    with pytest.raises(ValidationError, match="at least 50"):
        await insurance_service.file_claim(
            db_session, policy.policy_id, buyer.ref, ClaimReason.FRAUD, "Forged deed."
        )

    claim = await insurance_service.file_claim(
        db_session, policy.policy_id, buyer.ref, ClaimReason.DOCUMENT_FORGERY, DESCRIPTION,
        ["https://evidence.example.com/deed.pdf"],
    )
    assert claim.status == ClaimStatus.SUBMITTED
    assert claim.claim_amount == policy.coverage_amount == 7_500_000
    assert claim.evidence_urls == ["https://evidence.example.com/deed.pdf"]

    filed = await insurance_service.get_policy(db_session, policy.policy_id)
    assert filed.status == PolicyStatus.CLAIM_FILED
    with pytest.raises(ValidationError, match="CLAIM_FILED"):
        await insurance_service.file_claim(
            db_session, policy.policy_id, buyer.ref, ClaimReason.OTHER, DESCRIPTION
        )

    mine = await insurance_service.list_claims_for_actor(db_session, buyer.actor_id)
    assert [c.claim_id for c in mine] == [claim.claim_id]


@pytest.mark.asyncio
async def test_unpaid_or_expired_policy_rejects_claims(
    db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, PRICE)
    pending = await insurance_service.purchase(
        db_session, transaction.transaction_id, CoverageLevel.BASIC, buyer.ref
    )
    with pytest.raises(ValidationError, match="PENDING_PAYMENT"):
        await insurance_service.file_claim(
            db_session, pending.policy_id, buyer.ref, ClaimReason.FRAUD, DESCRIPTION
        )

    policy = await _active_policy(db_session, buyer, seller)
    policy.expires_at = datetime.now(UTC) - timedelta(minutes=1)
    await db_session.commit()
    with pytest.raises(ValidationError, match="expired"):
        await insurance_service.file_claim(
            db_session, policy.policy_id, buyer.ref, ClaimReason.FRAUD, DESCRIPTION
        )


@pytest.mark.asyncio
async def test_claim_review(
    db_session: AsyncSession, buyer: Party, seller: Party, mediator: Party, authorizer
) -> None:
    policy = await _active_policy(db_session, buyer, seller)
    claim = await insurance_service.file_claim(
        db_session, policy.policy_id, buyer.ref, ClaimReason.TITLE_ISSUE, DESCRIPTION
    )

    with pytest.raises(AuthorizationError):
        await insurance_service.review_claim(
            db_session, claim.claim_id, ClaimStatus.APPROVED, buyer.ref, authorizer, "Mine"
        )

    rejected = await insurance_service.review_claim(
        db_session, claim.claim_id, ClaimStatus.REJECTED, mediator.ref, authorizer,
        "Search shows a valid title",
    )
    assert rejected.status == ClaimStatus.REJECTED
    assert rejected.reviewed_by == mediator.actor_id
    assert (await insurance_service.get_policy(db_session, policy.policy_id)).status == PolicyStatus.ACTIVE

    with pytest.raises(ConflictError):
        await insurance_service.review_claim(
            db_session, claim.claim_id, ClaimStatus.APPROVED, mediator.ref, authorizer, "Again"
        )

    second = await insurance_service.file_claim(
        db_session, policy.policy_id, buyer.ref, ClaimReason.SELLER_DEFAULT, DESCRIPTION
    )
    approved = await insurance_service.review_claim(
        db_session, second.claim_id, ClaimStatus.APPROVED, mediator.ref, authorizer, "Upheld"
    )
    assert approved.status == ClaimStatus.APPROVED
    final = await insurance_service.get_policy(db_session, policy.policy_id)
    assert final.status == PolicyStatus.CLAIM_APPROVED


# --- HTTP ---

@pytest.mark.asyncio
async def test_coverage_levels_are_public(client: AsyncClient) -> None:
    resp = await client.get("/insurance/levels")
    assert resp.status_code == 200
    body = resp.json()
    assert set(body) == {"BASIC", "STANDARD", "PREMIUM"}
    assert body["PREMIUM"]["coverage_percent"] == 100
    assert body["STANDARD"]["max_coverage"] == 50_000_000


@pytest.mark.asyncio
async def test_purchase_and_claim_over_http(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, PRICE)
    resp = await signed_request(
        client, buyer, "POST", "/insurance/policies",
        {"transaction_id": str(transaction.transaction_id), "coverage_level": "PREMIUM"},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["payment_required"] is True
    assert body["amount"] == 400_000
    assert body["policy"]["status"] == "PENDING_PAYMENT"
    policy_id = body["policy"]["policy_id"]

    headers = make_auth_headers(seller, "GET", "/insurance/policies", encode_body(None))
    listed = await client.get(
        "/insurance/policies",
        params={"transaction_id": str(transaction.transaction_id)},
        headers=headers,
    )
    assert [p["policy_id"] for p in listed.json()] == [policy_id]

    early = await signed_request(
        client, buyer, "POST", f"/insurance/policies/{policy_id}/claims",
        {"reason": "FRAUD", "description": DESCRIPTION},
    )
    assert early.status_code == 422

    pay = await signed_request(
        client, buyer, "POST", "/payments",
        {"amount": 400_000, "type": "INSURANCE_PREMIUM", "transaction_id": str(transaction.transaction_id)},
    )
    assert pay.status_code == 201
    await payment_service.reconcile(db_session, pay.json()["provider_reference"], "successful")

    claim = await signed_request(
        client, buyer, "POST", f"/insurance/policies/{policy_id}/claims",
        {"reason": "FRAUD", "description": DESCRIPTION},
    )
    assert claim.status_code == 201
    assert claim.json()["claim_amount"] == PRICE
    assert claim.json()["status"] == "SUBMITTED"

    claims = await signed_request(client, buyer, "GET", "/insurance/claims")
    assert [c["claim_id"] for c in claims.json()] == [claim.json()["claim_id"]]
