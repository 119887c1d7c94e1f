"""ActorSig request authentication dependency for FastAPI."""

import uuid

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.config import settings
from escrow_engine.database import get_db
from escrow_engine.models.actor import Actor, ActorStatus
from escrow_engine.redis import get_redis, nonce_key
from escrow_engine.services.authorizer import ActorRef
from escrow_engine.utils.crypto import (
    is_timestamp_valid,
    parse_authorization,
    verify_signature,
)


class AuthenticatedActor:
    """The verified caller."""

    def __init__(self, actor_id: uuid.UUID, actor: Actor) -> None:
        self.actor_id = actor_id
        self.actor = actor

    @property
    def ref(self) -> ActorRef:
        return ActorRef.user(self.actor_id)


async def verify_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> AuthenticatedActor:
    """Verify the Ed25519 signature, timestamp window and nonce of a request."""
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")

    if not auth_header or not timestamp:
        raise HTTPException(status_code=403, detail="Missing authentication headers")

    credentials = parse_authorization(auth_header)
    if credentials is None:
        raise HTTPException(status_code=403, detail="Malformed authorization header")
    actor_id, signature = credentials

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=403, detail="Request timestamp expired")

    if nonce:
        fresh = await redis.set(nonce_key(nonce), "1", nx=True, ex=settings.nonce_ttl_seconds)
        if not fresh:
            raise HTTPException(status_code=403, detail="Nonce already used")

    result = await db.execute(select(Actor).where(Actor.actor_id == actor_id))
    actor = result.scalar_one_or_none()
    if actor is None:
        raise HTTPException(status_code=403, detail="Actor not found")
    if actor.status != ActorStatus.ACTIVE:
        raise HTTPException(status_code=403, detail="Actor is suspended")

    body = await request.body()
    if not verify_signature(
        actor.public_key, signature, timestamp, request.method, request.url.path, body
    ):
        raise HTTPException(status_code=403, detail="Invalid signature")

    return AuthenticatedActor(actor_id=actor_id, actor=actor)
