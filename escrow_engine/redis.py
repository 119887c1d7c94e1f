"""Redis connection pool and key layout for nonces and rate-limit buckets."""

from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from escrow_engine.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)

KEY_PREFIX = "escrow"


def nonce_key(nonce: str) -> str:
    return f"{KEY_PREFIX}:nonce:{nonce}"


def rate_limit_key(subject: str, category: str) -> str:
    """Bucket key for an actor id or an ``ip:<addr>`` subject."""
    return f"{KEY_PREFIX}:ratelimit:{subject}:{category}"


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()
