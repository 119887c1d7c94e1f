"""Escrow insurance: quotes, policies bought with an INSURANCE_PREMIUM payment, claims.

A buyer buys at most one policy per transaction. The policy waits in
PENDING_PAYMENT until its premium payment reconciles as SUCCESS, and only an
ACTIVE, unexpired policy accepts a claim. Amounts are minor units.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.config import settings
from escrow_engine.errors import AuthorizationError, ConflictError, NotFound, ValidationError
from escrow_engine.models.audit import AuditEntity
from escrow_engine.models.insurance import (
    ClaimReason,
    ClaimStatus,
    CoverageLevel,
    EscrowInsurance,
    InsuranceClaim,
    PolicyStatus,
)
from escrow_engine.models.payment import Payment
from escrow_engine.models.transaction import TERMINAL_STATUSES, EscrowTransaction
from escrow_engine.services.audit import record_audit
from escrow_engine.services.authorizer import ActorRef, Authorizer, Capability, SystemActor
from escrow_engine.services.notifications import enqueue_notification
from escrow_engine.services.state_machine import get_transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoverageTerms:
    name: str
    coverage_percent: int
    premium_bps: int
    max_coverage: int
    features: tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "coverage_percent": self.coverage_percent,
            "premium_bps": self.premium_bps,
            "max_coverage": self.max_coverage,
            "features": list(self.features),
        }


COVERAGE_LEVELS: dict[CoverageLevel, CoverageTerms] = {
    CoverageLevel.BASIC: CoverageTerms(
        name="Basic Protection",
        coverage_percent=50,
        premium_bps=150,
        max_coverage=10_000_000,  # GHS 100,000
        features=("Fraud protection", "Document verification"),
    ),
    CoverageLevel.STANDARD: CoverageTerms(
        name="Standard Protection",
        coverage_percent=75,
        premium_bps=250,
        max_coverage=50_000_000,  # GHS 500,000
        features=(
            "Fraud protection", "Document verification", "Title insurance", "Legal support",
        ),
    ),
    CoverageLevel.PREMIUM: CoverageTerms(
        name="Premium Protection",
        coverage_percent=100,
        premium_bps=400,
        max_coverage=200_000_000,  # GHS 2,000,000
        features=(
            "Full fraud protection", "Document verification", "Title insurance",
            "Legal support", "Survey verification", "Priority claims",
        ),
    ),
}


@dataclass
class Quote:
    coverage_level: CoverageLevel
    premium: int
    coverage_amount: int


def _round_div(numerator: int, denominator: int) -> int:
    """Integer division rounding half up."""
    return (numerator + denominator // 2) // denominator


def quote(agreed_price: int, level: CoverageLevel) -> Quote:
    terms = COVERAGE_LEVELS[level]
    return Quote(
        coverage_level=level,
        premium=_round_div(agreed_price * terms.premium_bps, 10_000),
        coverage_amount=min(
            _round_div(agreed_price * terms.coverage_percent, 100), terms.max_coverage
        ),
    )


def coverage_levels() -> dict:
    return {level.value: terms.to_dict() for level, terms in COVERAGE_LEVELS.items()}


# --- Policies ---

async def get_policy(db: AsyncSession, policy_id: uuid.UUID) -> EscrowInsurance:
    policy = await db.get(EscrowInsurance, policy_id)
    if policy is None:
        raise NotFound("EscrowInsurance", policy_id)
    return policy


async def get_policy_for_transaction(
    db: AsyncSession, transaction_id: uuid.UUID, *, for_update: bool = False
) -> EscrowInsurance | None:
    stmt = select(EscrowInsurance).where(EscrowInsurance.transaction_id == transaction_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_policies_for_actor(db: AsyncSession, actor_id: uuid.UUID) -> list[EscrowInsurance]:
    """Policies on transactions where the actor is buyer or seller, newest first."""
    result = await db.execute(
        select(EscrowInsurance)
        .join(EscrowTransaction, EscrowTransaction.transaction_id == EscrowInsurance.transaction_id)
        .where(or_(EscrowTransaction.buyer_id == actor_id, EscrowTransaction.seller_id == actor_id))
        .order_by(EscrowInsurance.created_at.desc())
    )
    return list(result.scalars().all())


async def assert_can_view_policy(
    db: AsyncSession, policy: EscrowInsurance, actor: ActorRef, authorizer: Authorizer
) -> None:
    transaction = await get_transaction(db, policy.transaction_id)
    if not actor.is_system and transaction.party_role(actor.actor_id) is not None:
        return
    if not actor.is_system and await authorizer.has_capability(
        actor.actor_id, Capability.VIEW_ALL_TRANSACTIONS
    ):
        return
    raise AuthorizationError("Not a party to this transaction")


async def purchase(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    level: CoverageLevel,
    buyer: ActorRef,
) -> EscrowInsurance:
    """Create a PENDING_PAYMENT policy. The premium is paid as an INSURANCE_PREMIUM payment."""
    transaction = await get_transaction(db, transaction_id)
    if buyer.is_system or transaction.party_role(buyer.actor_id) != "buyer":
        raise AuthorizationError("Only the buyer can purchase insurance")
    if transaction.status in TERMINAL_STATUSES:
        raise ValidationError(
            f"Transaction {transaction_id} is {transaction.status.value} and cannot be insured"
        )
    if await get_policy_for_transaction(db, transaction_id) is not None:
        raise ConflictError(f"Insurance already purchased for transaction {transaction_id}")

    terms = quote(transaction.agreed_price, level)
    now = datetime.now(UTC)
    policy = EscrowInsurance(
        policy_id=uuid.uuid4(),
        transaction_id=transaction_id,
        buyer_id=buyer.actor_id,
        coverage_level=level,
        premium=terms.premium,
        coverage_amount=terms.coverage_amount,
        currency=transaction.currency,
        features=list(COVERAGE_LEVELS[level].features),
        status=PolicyStatus.PENDING_PAYMENT,
        expires_at=now + timedelta(days=settings.insurance_policy_days),
        created_at=now,
    )
    db.add(policy)
    record_audit(
        db,
        AuditEntity.INSURANCE,
        policy.policy_id,
        "insurance.purchased",
        buyer,
        transaction_id=transaction_id,
        metadata={
            "coverage_level": level.value,
            "premium": terms.premium,
            "coverage_amount": terms.coverage_amount,
        },
    )
    await db.commit()
    logger.info(
        "Insurance %s (%s) purchased for transaction %s", policy.policy_id, level.value, transaction_id
    )
    return policy


async def policy_awaiting_premium(
    db: AsyncSession, transaction_id: uuid.UUID, payer: ActorRef, amount: int
) -> EscrowInsurance:
    """Lock the transaction's policy for a premium payment. The caller commits."""
    policy = await get_policy_for_transaction(db, transaction_id, for_update=True)
    if policy is None:
        raise NotFound("EscrowInsurance", transaction_id)
    if payer.actor_id != policy.buyer_id:
        raise AuthorizationError("Only the insured buyer pays the premium")
    if policy.status != PolicyStatus.PENDING_PAYMENT:
        raise ValidationError(f"Insurance policy is already {policy.status.value}")
    if amount != policy.premium:
        raise ValidationError(f"Premium amount {amount} must equal {policy.premium}")
    return policy


async def activate_for_payment(db: AsyncSession, payment: Payment) -> EscrowInsurance | None:
    """Activate the policy a successful premium paid for. The caller commits.

    Returns None when no policy on the payment's transaction is waiting for it.
    """
    if payment.transaction_id is None:
        return None
    policy = await get_policy_for_transaction(db, payment.transaction_id, for_update=True)
    if policy is None or policy.status != PolicyStatus.PENDING_PAYMENT:
        return None
    policy.status = PolicyStatus.ACTIVE
    policy.payment_id = payment.payment_id
    policy.activated_at = datetime.now(UTC)
    record_audit(
        db,
        AuditEntity.INSURANCE,
        policy.policy_id,
        "insurance.activated",
        ActorRef.of_system(SystemActor.PAYMENT_RECONCILER),
        transaction_id=policy.transaction_id,
        metadata={"provider_reference": payment.provider_reference},
    )
    enqueue_notification(
        db,
        policy.buyer_id,
        "insurance.activated",
        {
            "policy_id": str(policy.policy_id),
            "coverage_level": policy.coverage_level.value,
            "coverage_amount": policy.coverage_amount,
        },
        policy.transaction_id,
    )
    return policy


# --- Claims ---

async def file_claim(
    db: AsyncSession,
    policy_id: uuid.UUID,
    claimant: ActorRef,
    reason: ClaimReason,
    description: str,
    evidence_urls: list[str] | None = None,
) -> InsuranceClaim:
    """Claim the full coverage amount on an active policy."""
    result = await db.execute(
        select(EscrowInsurance)
        .where(EscrowInsurance.policy_id == policy_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    policy = result.scalar_one_or_none()
    if policy is None:
        raise NotFound("EscrowInsurance", policy_id)
    if claimant.is_system or claimant.actor_id != policy.buyer_id:
        raise AuthorizationError("Only the insured buyer can file a claim")
    if policy.status != PolicyStatus.ACTIVE:
        raise ValidationError(f"Insurance policy is {policy.status.value}, not ACTIVE")
    if policy.is_expired():
        raise ValidationError("Insurance policy has expired")
    minimum = settings.insurance_claim_description_min_length
    if len(description.strip()) < minimum:
        raise ValidationError(f"Claim description must be at least {minimum} characters")

    claim = InsuranceClaim(
        claim_id=uuid.uuid4(),
        policy_id=policy_id,
        claimant_id=claimant.actor_id,
        reason=reason,
        description=description,
        evidence_urls=evidence_urls or [],
        status=ClaimStatus.SUBMITTED,
        claim_amount=policy.coverage_amount,
    )
    db.add(claim)
    policy.status = PolicyStatus.CLAIM_FILED
    record_audit(
        db,
        AuditEntity.INSURANCE,
        policy.policy_id,
        "insurance.claim_filed",
        claimant,
        transaction_id=policy.transaction_id,
        metadata={
            "claim_id": str(claim.claim_id),
            "reason": reason.value,
            "claim_amount": claim.claim_amount,
        },
    )
    await db.commit()
    logger.info("Claim %s filed on policy %s (%s)", claim.claim_id, policy_id, reason.value)
    return claim


async def list_claims_for_actor(db: AsyncSession, actor_id: uuid.UUID) -> list[InsuranceClaim]:
    result = await db.execute(
        select(InsuranceClaim)
        .where(InsuranceClaim.claimant_id == actor_id)
        .order_by(InsuranceClaim.created_at.desc())
    )
    return list(result.scalars().all())


async def review_claim(
    db: AsyncSession,
    claim_id: uuid.UUID,
    decision: ClaimStatus,
    reviewer: ActorRef,
    authorizer: Authorizer,
    notes: str,
) -> InsuranceClaim:
    """Approve or reject a submitted claim. A rejected claim reactivates the policy."""
    if decision not in (ClaimStatus.APPROVED, ClaimStatus.REJECTED):
        raise ValidationError("A claim is reviewed as APPROVED or REJECTED")
    if reviewer.is_system or not await authorizer.has_capability(
        reviewer.actor_id, Capability.RESOLVE_DISPUTES
    ):
        raise AuthorizationError("Insurance claims are reviewed by dispute resolvers")

    result = await db.execute(
        select(InsuranceClaim).where(InsuranceClaim.claim_id == claim_id).with_for_update()
    )
    claim = result.scalar_one_or_none()
    if claim is None:
        raise NotFound("InsuranceClaim", claim_id)
    if claim.status != ClaimStatus.SUBMITTED:
        raise ConflictError(f"Claim {claim_id} was already {claim.status.value}")
    policy = await db.get(EscrowInsurance, claim.policy_id, with_for_update=True)

    now = datetime.now(UTC)
    claim.status = decision
    claim.review_notes = notes
    claim.reviewed_by = reviewer.actor_id
    claim.reviewed_at = now
    policy.status = (
        PolicyStatus.CLAIM_APPROVED if decision == ClaimStatus.APPROVED else PolicyStatus.ACTIVE
    )
    record_audit(
        db,
        AuditEntity.INSURANCE,
        policy.policy_id,
        f"insurance.claim_{decision.value.lower()}",
        reviewer,
        transaction_id=policy.transaction_id,
        metadata={"claim_id": str(claim_id), "notes": notes},
    )
    enqueue_notification(
        db,
        claim.claimant_id,
        f"insurance.claim_{decision.value.lower()}",
        {"claim_id": str(claim_id), "claim_amount": claim.claim_amount},
        policy.transaction_id,
    )
    await db.commit()
    logger.info("Claim %s %s by %s", claim_id, decision.value, reviewer.actor_id)
    return claim
