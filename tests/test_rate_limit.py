"""Tests for rate limiting (escrow_engine/auth/rate_limit.py)."""

import pytest
from httpx import AsyncClient

from escrow_engine.auth.rate_limit import get_rate_config
from escrow_engine.config import settings
from tests.conftest import Party, signed_request

TX = "/transactions/4b1e9a52-5f7c-4d7e-9d0b-2b8c4a9e6f10"


def test_rate_categories() -> None:
    assert get_rate_config("POST", "/payments/webhook")[2] == "webhook"
    assert get_rate_config("GET", "/payments/callback")[2] == "webhook"
    assert get_rate_config("POST", f"{TX}/high-value-approval")[2] == "admin"
    assert get_rate_config("GET", f"{TX}/high-value-approval")[2] == "admin"
    assert get_rate_config("POST", "/disputes/abc/resolve")[2] == "admin"
    assert get_rate_config("POST", "/disputes/abc/status")[2] == "admin"
    assert get_rate_config("POST", f"{TX}/fraud-flags")[2] == "admin"
    assert get_rate_config("GET", "/payments/alerts")[2] == "admin"
    assert get_rate_config("PUT", f"{TX}/milestones/abc")[2] == "write"
    assert get_rate_config("POST", "/offers/accepted")[2] == "write"
    assert get_rate_config("GET", TX)[2] == "read"
    assert get_rate_config("GET", "/fees")[2] == "read"


def test_rate_config_follows_settings() -> None:
    object.__setattr__(settings, "rate_limit_write_capacity", 7)
    object.__setattr__(settings, "rate_limit_write_refill_per_min", 3)
    assert get_rate_config("POST", "/payments") == (7, 3, "write")


@pytest.mark.asyncio
async def test_rate_limit_headers_present(client: AsyncClient, buyer: Party) -> None:
    resp = await signed_request(client, buyer, "GET", "/transactions")
    assert resp.status_code == 200
    assert resp.headers["x-ratelimit-limit"] == str(settings.rate_limit_read_capacity)
    assert int(resp.headers["x-ratelimit-remaining"]) == settings.rate_limit_read_capacity - 1


@pytest.mark.asyncio
async def test_anonymous_requests_limited_by_ip(client: AsyncClient) -> None:
    object.__setattr__(settings, "rate_limit_webhook_capacity", 2)
    object.__setattr__(settings, "rate_limit_webhook_refill_per_min", 1)
    params = {"tx_ref": "BGL-0-NOPE00", "status": "successful"}
    statuses = [
        (await client.get("/payments/callback", params=params)).status_code for _ in range(3)
    ]
    assert statuses == [404, 404, 429]

    other_ip = await client.get(
        "/payments/callback", params=params, headers={"X-Forwarded-For": "203.0.113.9"}
    )
    assert other_ip.status_code == 404


@pytest.mark.asyncio
async def test_rate_limit_exceeded_returns_429(client: AsyncClient, buyer: Party) -> None:
    object.__setattr__(settings, "rate_limit_read_capacity", 2)
    object.__setattr__(settings, "rate_limit_read_refill_per_min", 1)
    for _ in range(5):
        resp = await signed_request(client, buyer, "GET", "/transactions")
        if resp.status_code == 429:
            break
    assert resp.status_code == 429
    assert resp.json()["detail"] == "Rate limit exceeded"
    assert int(resp.headers["retry-after"]) >= 1


@pytest.mark.asyncio
async def test_buckets_are_per_actor(
    client: AsyncClient, buyer: Party, seller: Party
) -> None:
    object.__setattr__(settings, "rate_limit_read_capacity", 1)
    object.__setattr__(settings, "rate_limit_read_refill_per_min", 1)
    assert (await signed_request(client, buyer, "GET", "/transactions")).status_code == 200
    assert (await signed_request(client, buyer, "GET", "/transactions")).status_code == 429
    assert (await signed_request(client, seller, "GET", "/transactions")).status_code == 200
