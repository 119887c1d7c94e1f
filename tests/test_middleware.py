"""Tests for application middleware (body size limit, security headers)."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_security_headers_present(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.headers["strict-transport-security"] == "max-age=63072000; includeSubDomains"
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["referrer-policy"] == "strict-origin-when-cross-origin"
    assert resp.headers["cache-control"] == "no-store"


@pytest.mark.asyncio
async def test_body_size_limit_exceeded(client: AsyncClient) -> None:
    """POST with Content-Length over the limit is rejected with 413."""
    resp = await client.post(
        "/offers/accepted",
        content=b"x",
        headers={"Content-Length": "2000000", "Content-Type": "application/json"},
    )
    assert resp.status_code == 413


@pytest.mark.asyncio
async def test_body_size_limit_put_checked(client: AsyncClient) -> None:
    resp = await client.put(
        "/transactions/00000000-0000-0000-0000-000000000000/milestones/00000000-0000-0000-0000-000000000000",
        content=b"x",
        headers={"Content-Length": "2000000", "Content-Type": "application/json"},
    )
    assert resp.status_code == 413


@pytest.mark.asyncio
async def test_security_headers_on_error_response(client: AsyncClient) -> None:
    """Unauthenticated calls still carry the security headers."""
    resp = await client.get("/transactions/00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 403
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"


@pytest.mark.asyncio
async def test_requests_are_logged(client: AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("INFO", logger="escrow_engine.requests"):
        await client.get("/health")
    assert any("GET /health -> 200" in r.getMessage() for r in caplog.records)
