"""Audit trail writer. Rows join the caller's database transaction."""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.models.audit import AuditEntity, AuditLog
from escrow_engine.services.authorizer import ActorRef

logger = logging.getLogger(__name__)


def record_audit(
    db: AsyncSession,
    entity_type: AuditEntity,
    entity_id: uuid.UUID,
    action: str,
    actor: ActorRef | None = None,
    transaction_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> AuditLog:
    """Append to the immutable audit log. The caller commits."""
    fields = actor.audit_fields() if actor is not None else {"actor_id": None, "actor_system": None}
    entry = AuditLog(
        audit_id=uuid.uuid4(),
        entity_type=entity_type,
        entity_id=entity_id,
        transaction_id=transaction_id,
        action=action,
        metadata_=metadata,
        **fields,
    )
    db.add(entry)
    logger.debug("Audit %s %s %s by %s", entity_type.value, entity_id, action, actor)
    return entry


async def list_transaction_history(
    db: AsyncSession, transaction_id: uuid.UUID
) -> list[AuditLog]:
    """Every audit row for a transaction and its milestones, disputes and payments."""
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.transaction_id == transaction_id)
        .order_by(AuditLog.timestamp, AuditLog.audit_id)
    )
    return list(result.scalars().all())
