"""Per-actor token buckets in Redis, one bucket per endpoint category."""

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Response

from escrow_engine.config import settings
from escrow_engine.redis import get_redis, rate_limit_key
from escrow_engine.utils.crypto import parse_authorization

# KEYS[1] bucket hash; ARGV capacity, refill per minute.
# Time comes from the Redis server clock.
# Returns {allowed, tokens left, seconds until the next token}.
_BUCKET_LUA = """
local capacity = tonumber(ARGV[1])
local per_ms = tonumber(ARGV[2]) / 60000.0
local t = redis.call('TIME')
local now_ms = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local ts = tonumber(state[2]) or now_ms
tokens = math.min(capacity, tokens + math.max(0, now_ms - ts) * per_ms)

local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', now_ms)
redis.call('PEXPIRE', KEYS[1], math.ceil(capacity / per_ms) + 1000)

local wait = 0
if allowed == 0 then
    wait = math.ceil((1 - tokens) / per_ms / 1000)
end
return {allowed, math.floor(tokens), wait}
"""

_ADMIN_PATH_MARKERS = ("/high-value-approval", "/resolve", "/alerts", "/fraud-flags", "/review")


def get_rate_config(method: str, path: str) -> tuple[int, int, str]:
    """Return (capacity, refill_per_min, category) for an endpoint."""
    if path.startswith("/payments/webhook") or path.startswith("/payments/callback"):
        return (
            settings.rate_limit_webhook_capacity,
            settings.rate_limit_webhook_refill_per_min,
            "webhook",
        )
    if any(marker in path for marker in _ADMIN_PATH_MARKERS) or (
        path.startswith("/disputes/") and path.endswith("/status")
    ):
        return (
            settings.rate_limit_admin_capacity,
            settings.rate_limit_admin_refill_per_min,
            "admin",
        )
    if method in ("POST", "PUT", "PATCH", "DELETE"):
        return (
            settings.rate_limit_write_capacity,
            settings.rate_limit_write_refill_per_min,
            "write",
        )
    return (
        settings.rate_limit_read_capacity,
        settings.rate_limit_read_refill_per_min,
        "read",
    )


def _get_client_ip(request: Request) -> str:
    """Client IP, honouring the first X-Forwarded-For hop."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


async def check_rate_limit(
    request: Request,
    response: Response,
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """Per-actor bucket for signed requests, per-IP otherwise."""
    method = request.method.upper()
    path = request.url.path
    capacity, refill_rate, category = get_rate_config(method, path)

    credentials = parse_authorization(request.headers.get("Authorization"))
    if credentials is not None:
        subject = str(credentials[0])
    else:
        subject = f"ip:{_get_client_ip(request)}"

    bucket = redis.register_script(_BUCKET_LUA)
    result = await bucket(keys=[rate_limit_key(subject, category)], args=[capacity, refill_rate])
    allowed, remaining, retry_after = int(result[0]), int(result[1]), int(result[2])

    response.headers["X-RateLimit-Limit"] = str(capacity)
    response.headers["X-RateLimit-Remaining"] = str(remaining)

    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after)},
        )
