"""Payment initiation and provider reconciliation.

Inbound payments are created here with a unique provider reference, then
settled by ``reconcile`` when the provider reports back. Reconciliation is
idempotent per reference: a payment that already reached SUCCESS or FAILED
ignores further deliveries. A successful FUNDING payment drives its
transaction to FUNDED; when that cannot happen an alert is recorded for an
operator instead of failing the provider's delivery. Browser redirects are
re-checked with the provider before they can move money.
"""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.config import settings
from escrow_engine.errors import (
    AuthorizationError,
    DuplicateDeliveryIgnored,
    EscrowError,
    InvalidTransition,
    NotFound,
    PaymentGatewayError,
    ReconciliationInconsistency,
    SettlementAmountMismatch,
    ValidationError,
)
from escrow_engine.models.actor import Actor
from escrow_engine.models.audit import AuditEntity
from escrow_engine.models.payment import (
    VALID_PAYMENT_TRANSITIONS,
    AlertStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    ReconciliationAlert,
)
from escrow_engine.models.transaction import EscrowTransaction, TransactionStatus
from escrow_engine.services import insurance as insurance_service
from escrow_engine.services.audit import record_audit
from escrow_engine.services.authorizer import ActorRef, Authorizer, Capability, SystemActor
from escrow_engine.services.fees import calculate_processing_fee, net_of_fees
from escrow_engine.services.gateway import PaymentGateway
from escrow_engine.services.high_value import is_high_value
from escrow_engine.services.notifications import enqueue_notification
from escrow_engine.services.state_machine import (
    apply_transition,
    commit_or_conflict,
    lock_transaction,
)

logger = logging.getLogger(__name__)

RECONCILER = ActorRef.of_system(SystemActor.PAYMENT_RECONCILER)

PROVIDER_STATUS_MAP: dict[str, PaymentStatus] = {
    "successful": PaymentStatus.SUCCESS,
    "success": PaymentStatus.SUCCESS,
    "completed": PaymentStatus.SUCCESS,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
    "pending": PaymentStatus.PENDING,
}


def generate_provider_reference() -> str:
    """``BGL-<epoch millis>-<6 hex>``; the prefix is configurable."""
    millis = int(time.time() * 1000)
    return f"{settings.payment_reference_prefix}-{millis}-{secrets.token_hex(3).upper()}"


def parse_provider_status(provider_status: str) -> PaymentStatus:
    status = PROVIDER_STATUS_MAP.get((provider_status or "").strip().lower())
    if status is None:
        raise ValidationError(f"Unknown provider status '{provider_status}'")
    return status


@dataclass
class ReconcileResult:
    """What happened to one provider delivery."""
    payment: Payment
    outcome: str  # "succeeded" | "failed" | "pending" | "unchanged" | "duplicate_ignored" | "unverified"
    notice: DuplicateDeliveryIgnored | ReconciliationInconsistency | None = None
    alert: ReconciliationAlert | None = None
    detail: str | None = None

    @property
    def inconsistent(self) -> bool:
        return isinstance(self.notice, ReconciliationInconsistency)


# --- Queries ---

async def get_payment(db: AsyncSession, payment_id: uuid.UUID) -> Payment:
    result = await db.execute(select(Payment).where(Payment.payment_id == payment_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment", payment_id)
    return payment


async def get_payment_by_reference(db: AsyncSession, provider_reference: str) -> Payment:
    result = await db.execute(
        select(Payment).where(Payment.provider_reference == provider_reference)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment", provider_reference)
    return payment


async def get_payment_for_actor(
    db: AsyncSession, payment_id: uuid.UUID, actor: ActorRef, authorizer: Authorizer
) -> Payment:
    """Payer, payee, a party to the payment's transaction, or staff who see everything."""
    payment = await get_payment(db, payment_id)
    if actor.is_system:
        raise AuthorizationError("Payments are viewed by actors")
    if actor.actor_id in (payment.payer_id, payment.payee_id):
        return payment
    if payment.transaction_id is not None:
        transaction = await db.get(EscrowTransaction, payment.transaction_id)
        if transaction is not None and transaction.party_role(actor.actor_id) is not None:
            return payment
    for capability in (Capability.VIEW_ALL_TRANSACTIONS, Capability.MANAGE_RECONCILIATION):
        if await authorizer.has_capability(actor.actor_id, capability):
            return payment
    raise AuthorizationError("Not a party to this payment")


async def list_payments_for_transaction(
    db: AsyncSession, transaction_id: uuid.UUID
) -> list[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.transaction_id == transaction_id)
        .order_by(Payment.created_at)
    )
    return list(result.scalars().all())


async def count_open_alerts(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(ReconciliationAlert)
        .where(ReconciliationAlert.status == AlertStatus.OPEN)
    )
    return int(result.scalar_one())


# --- Initiation ---

async def _lock_funding_transaction(
    db: AsyncSession, transaction_id: uuid.UUID, payer: ActorRef, amount: int
) -> EscrowTransaction:
    transaction = await lock_transaction(db, transaction_id)
    if transaction.party_role(payer.actor_id) != "buyer":
        raise AuthorizationError("Only the buyer can fund a transaction")
    if amount != transaction.agreed_price:
        raise ValidationError(
            f"Funding amount {amount} must equal the agreed price {transaction.agreed_price}"
        )
    if transaction.status not in (TransactionStatus.CREATED, TransactionStatus.ESCROW_REQUESTED):
        raise InvalidTransition(transaction.status, TransactionStatus.ESCROW_REQUESTED)
    if is_high_value(transaction.agreed_price):
        buyer = await db.get(Actor, transaction.buyer_id)
        if buyer is None or buyer.kyc_tier < settings.high_value_min_kyc_tier:
            raise AuthorizationError(
                f"Funding a high-value transaction requires KYC tier "
                f"{settings.high_value_min_kyc_tier} or above"
            )
    return transaction


async def initiate(
    db: AsyncSession,
    payer: ActorRef,
    amount: int,
    payment_type: PaymentType,
    *,
    transaction_id: uuid.UUID | None = None,
    listing_id: uuid.UUID | None = None,
    gateway: PaymentGateway | None = None,
) -> Payment:
    """Create an INITIATED payment and, when a gateway is given, its checkout link.

    A FUNDING payment moves its transaction from CREATED to ESCROW_REQUESTED
    and can be retried while the transaction stays ESCROW_REQUESTED. An
    INSURANCE_PREMIUM payment pays for the policy awaiting its premium.
    """
    if payer.is_system:
        raise AuthorizationError("Payments are initiated by actors")
    if amount <= 0:
        raise ValidationError("Payment amount must be positive")
    if payment_type == PaymentType.PAYOUT:
        raise ValidationError("Payouts are scheduled by settlement, not initiated")

    transaction = None
    policy = None
    if payment_type == PaymentType.FUNDING:
        if transaction_id is None:
            raise ValidationError("A funding payment needs a transaction_id")
        transaction = await _lock_funding_transaction(db, transaction_id, payer, amount)
    elif payment_type == PaymentType.INSURANCE_PREMIUM:
        if transaction_id is None:
            raise ValidationError("An insurance premium payment needs a transaction_id")
        policy = await insurance_service.policy_awaiting_premium(db, transaction_id, payer, amount)
    elif payment_type == PaymentType.LISTING_FEE and listing_id is None:
        raise ValidationError("A listing fee payment needs a listing_id")
    elif transaction_id is None and listing_id is None:
        raise ValidationError("A payment needs a transaction_id or a listing_id")

    fee = calculate_processing_fee(amount, payment_type)
    payment = Payment(
        payment_id=uuid.uuid4(),
        provider=settings.payment_provider,
        provider_reference=generate_provider_reference(),
        type=payment_type,
        status=PaymentStatus.INITIATED,
        amount=amount,
        fees=fee.amount,
        currency=settings.currency,
        payer_id=payer.actor_id,
        transaction_id=transaction_id,
        listing_id=transaction.listing_id if transaction is not None else listing_id,
    )
    db.add(payment)
    if policy is not None:
        policy.payment_id = payment.payment_id

    if transaction is not None and transaction.status == TransactionStatus.CREATED:
        await apply_transition(
            db, transaction, TransactionStatus.ESCROW_REQUESTED, payer, None,
            reason=f"Payment {payment.provider_reference} initiated",
        )
    record_audit(
        db,
        AuditEntity.PAYMENT,
        payment.payment_id,
        "payment.initiated",
        payer,
        transaction_id=transaction_id,
        metadata={
            "provider_reference": payment.provider_reference,
            "type": payment_type.value,
            "amount": amount,
            "fees": fee.amount,
        },
    )
    await commit_or_conflict(db)
    await db.refresh(payment)
    logger.info(
        "Payment %s initiated: %s %d by %s",
        payment.provider_reference, payment_type.value, amount, payer.actor_id,
    )

    if gateway is not None:
        payer_row = await db.get(Actor, payer.actor_id)
        try:
            checkout = await gateway.create_checkout(payment, payer_row)
        except PaymentGatewayError as exc:
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = exc.detail
            record_audit(
                db,
                AuditEntity.PAYMENT,
                payment.payment_id,
                "payment.gateway_failed",
                payer,
                transaction_id=transaction_id,
                metadata={"reason": exc.detail},
            )
            await db.commit()
            raise
        if checkout is not None:
            payment.checkout_url = checkout.checkout_url
            await db.commit()
            await db.refresh(payment)
    return payment


# --- Reconciliation ---

async def _lock_payment(db: AsyncSession, provider_reference: str) -> Payment:
    result = await db.execute(
        select(Payment)
        .where(Payment.provider_reference == provider_reference)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment", provider_reference)
    return payment


def _assert_not_terminal(payment: Payment) -> None:
    if payment.is_terminal:
        raise DuplicateDeliveryIgnored(payment.provider_reference, payment.status)


def _charge_mismatch(payment: Payment, amount: int | None, currency: str | None) -> str | None:
    if amount is not None and amount != payment.amount:
        return f"Provider charged {amount} but payment expects {payment.amount}"
    if currency and currency.upper() != payment.currency:
        return f"Provider charged in {currency.upper()} but payment is in {payment.currency}"
    return None


def _open_alert(db: AsyncSession, payment: Payment, cause: str) -> ReconciliationAlert:
    alert = ReconciliationAlert(
        alert_id=uuid.uuid4(),
        payment_id=payment.payment_id,
        transaction_id=payment.transaction_id,
        reason=cause,
        status=AlertStatus.OPEN,
    )
    db.add(alert)
    record_audit(
        db,
        AuditEntity.ALERT,
        alert.alert_id,
        "reconciliation.alert_opened",
        RECONCILER,
        transaction_id=payment.transaction_id,
        metadata={"provider_reference": payment.provider_reference, "reason": cause},
    )
    return alert


async def _fund_transaction(db: AsyncSession, payment: Payment) -> str | None:
    """Move the paid transaction to FUNDED inside a savepoint.

    Returns the reason it could not move; the savepoint is then rolled back
    and the payment's own changes stay pending for the caller's commit.
    """
    try:
        async with db.begin_nested():
            transaction = await lock_transaction(db, payment.transaction_id, nowait=False)
            await apply_transition(
                db, transaction, TransactionStatus.FUNDED, RECONCILER, None,
                reason=f"Payment {payment.provider_reference} succeeded",
            )
    except EscrowError as exc:
        return exc.detail
    except Exception as exc:
        logger.exception("Funding transaction %s failed", payment.transaction_id)
        return f"{type(exc).__name__}: {exc}"
    return None


async def reconcile(
    db: AsyncSession,
    provider_reference: str,
    provider_status: str,
    provider_payload: dict | None = None,
    provider_transaction_id: str | None = None,
    *,
    amount: int | None = None,
    currency: str | None = None,
) -> ReconcileResult:
    """Apply one provider status report. Safe to call any number of times.

    ``amount`` (minor units) and ``currency`` are what the provider says it
    charged; a success that disagrees with the payment fails it and opens an
    alert. Everything a delivery changes is committed once, so a SUCCESS
    payment always has either a FUNDED transaction or an open alert.
    """
    payment = await _lock_payment(db, provider_reference)
    try:
        _assert_not_terminal(payment)
    except DuplicateDeliveryIgnored as exc:
        logger.info(exc.detail)
        await db.commit()
        return ReconcileResult(payment, "duplicate_ignored", notice=exc)

    status = parse_provider_status(provider_status)
    previous = payment.status
    if status not in VALID_PAYMENT_TRANSITIONS[previous]:
        await db.commit()
        return ReconcileResult(payment, "unchanged")

    mismatch = _charge_mismatch(payment, amount, currency) if status == PaymentStatus.SUCCESS else None
    result = ReconcileResult(payment, "")
    if status == PaymentStatus.PENDING:
        payment.status = PaymentStatus.PENDING
        result.outcome = "pending"
    elif status == PaymentStatus.FAILED or mismatch is not None:
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = mismatch or f"Provider reported '{provider_status}'"
        payment.completed_at = datetime.now(UTC)
        result.outcome = "failed"
        result.detail = payment.failure_reason
        if payment.payer_id is not None:
            enqueue_notification(
                db,
                payment.payer_id,
                "payment.failed",
                {"provider_reference": provider_reference, "amount": payment.amount},
                payment.transaction_id,
            )
    else:
        payment.status = PaymentStatus.SUCCESS
        payment.net_amount = net_of_fees(payment.amount, payment.fees)
        payment.completed_at = datetime.now(UTC)
        result.outcome = "succeeded"

    if provider_transaction_id:
        payment.provider_transaction_id = provider_transaction_id
    if provider_payload is not None:
        payment.provider_payload = provider_payload
    record_audit(
        db,
        AuditEntity.PAYMENT,
        payment.payment_id,
        f"payment.{result.outcome}",
        RECONCILER,
        transaction_id=payment.transaction_id,
        metadata={
            "provider_reference": provider_reference,
            "provider_status": provider_status,
            "from": previous.value,
            "to": payment.status.value,
        },
    )

    if mismatch is not None:
        logger.error("Payment %s: %s", provider_reference, mismatch)
        result.alert = _open_alert(db, payment, mismatch)
    elif payment.status == PaymentStatus.SUCCESS:
        if payment.type == PaymentType.FUNDING and payment.transaction_id is not None:
            cause = await _fund_transaction(db, payment)
            if cause is not None:
                result.notice = ReconciliationInconsistency(
                    provider_reference, payment.transaction_id, cause
                )
                logger.error(result.notice.detail)
                result.alert = _open_alert(db, payment, cause)
        elif payment.type == PaymentType.INSURANCE_PREMIUM:
            if await insurance_service.activate_for_payment(db, payment) is None:
                cause = "No insurance policy is awaiting this premium"
                logger.error("Payment %s: %s", provider_reference, cause)
                result.alert = _open_alert(db, payment, cause)

    await commit_or_conflict(db)
    if result.alert is not None:
        await db.refresh(result.alert)
    logger.info("Payment %s reconciled: %s -> %s", provider_reference, previous.value, payment.status.value)
    return result


async def reconcile_callback(
    db: AsyncSession,
    provider_reference: str,
    reported_status: str,
    gateway: PaymentGateway,
    provider_transaction_id: str | None = None,
) -> ReconcileResult:
    """Reconcile a browser redirect using the provider's own record of the charge.

    The redirect's query string is client-controlled, so only a cancellation
    is taken at face value. Any other report is checked against
    ``gateway.verify_transaction``; when the provider cannot be asked the
    payment is left for the webhook.
    """
    payment = await get_payment_by_reference(db, provider_reference)
    if (reported_status or "").strip().lower() in ("cancelled", "canceled"):
        return await reconcile(
            db, provider_reference, reported_status, provider_transaction_id=provider_transaction_id
        )

    try:
        charge = await gateway.verify_transaction(provider_reference)
    except PaymentGatewayError as exc:
        logger.warning("Could not verify %s: %s", provider_reference, exc.detail)
        return ReconcileResult(payment, "unverified", detail=exc.detail)
    if charge is None:
        return ReconcileResult(
            payment, "unverified", detail="Payment provider is not configured for verification"
        )

    return await reconcile(
        db,
        provider_reference,
        charge.status,
        provider_payload=charge.payload,
        provider_transaction_id=charge.provider_transaction_id,
        amount=charge.amount,
        currency=charge.currency,
    )


# --- Settlement payouts ---

async def schedule_payouts(
    db: AsyncSession,
    transaction: EscrowTransaction,
    buyer_amount: int,
    seller_amount: int,
) -> list[Payment]:
    """Create PAYOUT payments for each non-zero share. The caller commits."""
    total = buyer_amount + seller_amount
    if total != transaction.agreed_price:
        raise SettlementAmountMismatch(expected=transaction.agreed_price, actual=total)
    payouts = []
    for payee_id, share in ((transaction.buyer_id, buyer_amount), (transaction.seller_id, seller_amount)):
        if share <= 0:
            continue
        payout = Payment(
            payment_id=uuid.uuid4(),
            provider=settings.payment_provider,
            provider_reference=generate_provider_reference(),
            type=PaymentType.PAYOUT,
            status=PaymentStatus.INITIATED,
            amount=share,
            fees=0,
            net_amount=share,
            currency=transaction.currency,
            payer_id=None,
            payee_id=payee_id,
            transaction_id=transaction.transaction_id,
            listing_id=transaction.listing_id,
        )
        db.add(payout)
        record_audit(
            db,
            AuditEntity.PAYMENT,
            payout.payment_id,
            "payment.payout_scheduled",
            transaction_id=transaction.transaction_id,
            metadata={"payee_id": str(payee_id), "amount": share},
        )
        payouts.append(payout)
    return payouts


# --- Operator workflow ---

async def _assert_reconciliation_staff(actor: ActorRef, authorizer: Authorizer) -> None:
    if actor.is_system or not await authorizer.has_capability(
        actor.actor_id, Capability.MANAGE_RECONCILIATION
    ):
        raise AuthorizationError("Reconciliation alerts are restricted to finance staff")


async def list_alerts(
    db: AsyncSession,
    actor: ActorRef,
    authorizer: Authorizer,
    status: AlertStatus | None = AlertStatus.OPEN,
) -> list[ReconciliationAlert]:
    await _assert_reconciliation_staff(actor, authorizer)
    query = select(ReconciliationAlert).order_by(ReconciliationAlert.created_at)
    if status is not None:
        query = query.where(ReconciliationAlert.status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def resolve_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    actor: ActorRef,
    authorizer: Authorizer,
    notes: str,
) -> ReconciliationAlert:
    await _assert_reconciliation_staff(actor, authorizer)
    result = await db.execute(
        select(ReconciliationAlert)
        .where(ReconciliationAlert.alert_id == alert_id)
        .with_for_update()
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        raise NotFound("ReconciliationAlert", alert_id)
    if alert.status == AlertStatus.RESOLVED:
        return alert
    alert.status = AlertStatus.RESOLVED
    alert.resolution_notes = notes
    alert.resolved_by = actor.actor_id
    alert.resolved_at = datetime.now(UTC)
    record_audit(
        db,
        AuditEntity.ALERT,
        alert.alert_id,
        "reconciliation.alert_resolved",
        actor,
        transaction_id=alert.transaction_id,
        metadata={"notes": notes},
    )
    await db.commit()
    await db.refresh(alert)
    logger.info("Reconciliation alert %s resolved by %s", alert_id, actor.actor_id)
    return alert
