"""Party notifications through the outbox table.

Records are written in the same database transaction as the change they
describe; a separate delivery worker (email/SMS/push) drains the outbox.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.models.notification import NotificationOutbox, NotificationStatus
from escrow_engine.models.transaction import EscrowTransaction, TransactionStatus

logger = logging.getLogger(__name__)


# Transaction statuses that parties are told about, and the event they produce.
STATUS_EVENTS: dict[TransactionStatus, str] = {
    TransactionStatus.FUNDED: "transaction.funded",
    TransactionStatus.VERIFICATION_PERIOD: "transaction.verification_started",
    TransactionStatus.READY_TO_RELEASE: "transaction.ready_to_release",
    TransactionStatus.DISPUTED: "transaction.disputed",
    TransactionStatus.RELEASED: "transaction.released",
    TransactionStatus.REFUNDED: "transaction.refunded",
    TransactionStatus.PARTIAL_SETTLED: "transaction.partial_settled",
    TransactionStatus.CLOSED: "transaction.closed",
}


def build_notification(
    transaction: EscrowTransaction,
    event_type: str,
    details: dict,
) -> dict:
    """Build the payload handed to the delivery worker."""
    return {
        "event": event_type,
        "timestamp": datetime.now(UTC).isoformat(),
        "transaction_id": str(transaction.transaction_id),
        "listing_id": str(transaction.listing_id),
        "status": transaction.status.value,
        "agreed_price": transaction.agreed_price,
        "currency": transaction.currency,
        **details,
    }


def enqueue_notification(
    db: AsyncSession,
    recipient_id: uuid.UUID,
    event_type: str,
    payload: dict,
    transaction_id: uuid.UUID | None = None,
) -> NotificationOutbox:
    """Add an outbox record. The caller commits."""
    record = NotificationOutbox(
        notification_id=uuid.uuid4(),
        recipient_id=recipient_id,
        transaction_id=transaction_id,
        event_type=event_type,
        payload=payload,
        status=NotificationStatus.PENDING,
    )
    db.add(record)
    logger.info("Notification enqueued: %s -> %s", event_type, recipient_id)
    return record


def notify_parties(
    db: AsyncSession,
    transaction: EscrowTransaction,
    event_type: str,
    details: dict | None = None,
    per_party: dict[uuid.UUID, dict] | None = None,
) -> list[NotificationOutbox]:
    """Notify buyer and seller. ``per_party`` adds recipient-specific fields."""
    records = []
    for recipient_id in (transaction.buyer_id, transaction.seller_id):
        extra = (per_party or {}).get(recipient_id, {})
        payload = build_notification(transaction, event_type, {**(details or {}), **extra})
        records.append(
            enqueue_notification(
                db, recipient_id, event_type, payload, transaction.transaction_id
            )
        )
    return records
