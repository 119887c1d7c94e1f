"""Capability resolution for escrow operations.

Services never inspect roles directly. They receive an ``Authorizer`` and ask
``has_capability(actor_id, capability)``; the default implementation resolves
capabilities from the roles stored on the actor row.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Protocol

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.database import get_db
from escrow_engine.models.actor import Actor, ActorStatus, Role


class Capability(enum.Enum):
    APPROVE_HIGH_VALUE = "approve_high_value"
    RELEASE_FUNDS = "release_funds"
    RESOLVE_DISPUTES = "resolve_disputes"
    CLOSE_TRANSACTIONS = "close_transactions"
    FLAG_FRAUD = "flag_fraud"
    VERIFY_DOCUMENTS = "verify_documents"
    MANAGE_RECONCILIATION = "manage_reconciliation"
    VIEW_ALL_TRANSACTIONS = "view_all_transactions"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.FINANCE: frozenset({
        Capability.APPROVE_HIGH_VALUE,
        Capability.RELEASE_FUNDS,
        Capability.MANAGE_RECONCILIATION,
        Capability.VIEW_ALL_TRANSACTIONS,
    }),
    Role.SUPPORT: frozenset({
        Capability.RESOLVE_DISPUTES,
        Capability.VIEW_ALL_TRANSACTIONS,
    }),
    Role.COMPLIANCE: frozenset({
        Capability.RESOLVE_DISPUTES,
        Capability.FLAG_FRAUD,
        Capability.VIEW_ALL_TRANSACTIONS,
    }),
    Role.VERIFIER: frozenset({Capability.VERIFY_DOCUMENTS}),
}


class SystemActor(enum.Enum):
    PAYMENT_RECONCILER = "payment_reconciler"
    MILESTONE_LEDGER = "milestone_ledger"
    DISPUTE_ENGINE = "dispute_engine"
    FRAUD_DETECTION = "fraud_detection"


@dataclass(frozen=True)
class ActorRef:
    """Who is performing an operation: a user, or a named system component.

    A system actor may carry ``on_behalf_of`` when it acts for a user, e.g. the
    dispute engine applying a resolver's decision.
    """

    actor_id: uuid.UUID | None = None
    system: SystemActor | None = None
    on_behalf_of: uuid.UUID | None = None

    @classmethod
    def user(cls, actor_id: uuid.UUID) -> "ActorRef":
        return cls(actor_id=actor_id)

    @classmethod
    def of_system(cls, system: SystemActor, on_behalf_of: uuid.UUID | None = None) -> "ActorRef":
        return cls(system=system, on_behalf_of=on_behalf_of)

    @property
    def is_system(self) -> bool:
        return self.system is not None

    def audit_fields(self) -> dict:
        """Columns for an audit row: the acting user and the system component."""
        return {
            "actor_id": self.actor_id if self.actor_id is not None else self.on_behalf_of,
            "actor_system": self.system.value if self.system is not None else None,
        }

    def __str__(self) -> str:
        if self.system is not None:
            return f"system:{self.system.value}"
        return f"actor:{self.actor_id}"


class Authorizer(Protocol):
    async def has_capability(self, actor_id: uuid.UUID | None, capability: Capability) -> bool:
        ...


class RoleAuthorizer:
    """Resolve capabilities from ``Actor.roles``. Suspended actors hold none."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def capabilities_for(self, actor_id: uuid.UUID | None) -> frozenset[Capability]:
        if actor_id is None:
            return frozenset()
        result = await self.db.execute(
            select(Actor.roles, Actor.status).where(Actor.actor_id == actor_id)
        )
        row = result.one_or_none()
        if row is None or row.status != ActorStatus.ACTIVE:
            return frozenset()
        granted: set[Capability] = set()
        for name in row.roles or []:
            try:
                granted |= ROLE_CAPABILITIES[Role(name)]
            except ValueError:
                continue
        return frozenset(granted)

    async def has_capability(self, actor_id: uuid.UUID | None, capability: Capability) -> bool:
        return capability in await self.capabilities_for(actor_id)


async def get_authorizer(db: AsyncSession = Depends(get_db)) -> Authorizer:
    return RoleAuthorizer(db)
