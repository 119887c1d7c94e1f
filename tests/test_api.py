"""HTTP contracts: status codes, error bodies and the provider webhook."""

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.config import settings
from escrow_engine.main import app
from escrow_engine.models.audit import AuditLog
from escrow_engine.services import milestones as ledger
from escrow_engine.services.gateway import VerifiedCharge, get_gateway
from tests.conftest import (
    Party,
    create_transaction,
    make_auth_headers,
    make_offer,
    plan,
    signed_request,
    start_funding,
    start_verification,
)

WEBHOOK_HASH = "test-webhook-hash"


def _charge(tx_ref: str, status: str = "successful", event: str = "charge.completed") -> dict:
    return {
        "event": event,
        "data": {"id": 4815162342, "tx_ref": tx_ref, "status": status, "currency": "GHS"},
    }


async def _post_webhook(client: AsyncClient, payload: dict, verif_hash: str | None = WEBHOOK_HASH):
    headers = {"verif-hash": verif_hash} if verif_hash is not None else {}
    return await client.post("/payments/webhook", json=payload, headers=headers)


@pytest.fixture(autouse=True)
def _webhook_secret() -> None:
    object.__setattr__(settings, "flutterwave_secret_hash", WEBHOOK_HASH)


# --- Offers ---

@pytest.mark.asyncio
async def test_offer_accepted_creates_then_replays(
    client: AsyncClient, buyer: Party, seller: Party
) -> None:
    offer = make_offer(buyer, seller, 20_000_000)
    first = await signed_request(client, buyer, "POST", "/offers/accepted", offer)
    assert first.status_code == 201
    body = first.json()
    assert body["created"] is True
    assert body["transaction"]["status"] == "CREATED"
    assert len(body["milestones"]) == 3

    again = await signed_request(client, seller, "POST", "/offers/accepted", offer)
    assert again.status_code == 200
    assert again.json()["created"] is False
    assert again.json()["transaction"]["transaction_id"] == body["transaction"]["transaction_id"]


@pytest.mark.asyncio
async def test_offer_with_unbalanced_plan_is_422(
    client: AsyncClient, buyer: Party, seller: Party
) -> None:
    offer = make_offer(buyer, seller, 30_000_000, plan(10_000_000))
    resp = await signed_request(client, buyer, "POST", "/offers/accepted", offer)
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


# --- Transactions ---

@pytest.mark.asyncio
async def test_invalid_transition_is_409_with_statuses(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    await start_verification(db_session, transaction, buyer)

    resp = await signed_request(
        client, buyer, "POST", f"/transactions/{transaction.transaction_id}/transition",
        {"status": "RELEASED"},
    )
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "invalid_transition"
    assert body["current"] == "VERIFICATION_PERIOD"
    assert body["requested"] == "RELEASED"


@pytest.mark.asyncio
async def test_transaction_hidden_from_outsiders(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party, make_actor
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    stranger = await make_actor("Stranger")
    path = f"/transactions/{transaction.transaction_id}"

    assert (await signed_request(client, stranger, "GET", path)).status_code == 403
    resp = await signed_request(client, seller, "GET", path)
    assert resp.status_code == 200
    assert len(resp.json()["milestones"]) == 3


@pytest.mark.asyncio
async def test_ready_endpoint_explains_block(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 100_000, plan(100_000))
    await start_verification(db_session, transaction, buyer)

    resp = await signed_request(
        client, buyer, "POST", f"/transactions/{transaction.transaction_id}/ready"
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "VERIFICATION_PERIOD"
    assert body["ready_for_release"] is False
    assert any(r.startswith("Milestones incomplete") for r in body["blocking_reasons"])


# --- Milestones ---

@pytest.mark.asyncio
async def test_milestone_approval_over_http(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 100_000, plan(100_000))
    await start_verification(db_session, transaction, buyer)
    milestone = (await ledger.list_milestones(db_session, transaction.transaction_id))[0]
    path = f"/transactions/{transaction.transaction_id}/milestones/{milestone.milestone_id}"

    first = await signed_request(client, buyer, "PUT", path, {"approve": True})
    assert first.status_code == 200
    assert first.json()["completed"] is False
    assert first.json()["milestone"]["buyer_approved_at"] is not None

    second = await signed_request(client, seller, "PUT", path, {"approve": True})
    assert second.status_code == 200
    assert second.json()["completed"] is True
    assert second.json()["transaction_status"] == "VERIFICATION_PERIOD"


@pytest.mark.asyncio
async def test_milestone_approval_cannot_be_withdrawn(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 100_000, plan(100_000))
    await start_verification(db_session, transaction, buyer)
    milestone = (await ledger.list_milestones(db_session, transaction.transaction_id))[0]
    path = f"/transactions/{transaction.transaction_id}/milestones/{milestone.milestone_id}"

    resp = await signed_request(client, buyer, "PUT", path, {"approve": False})
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_high_value_status_endpoint(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    price = 60_000_000
    transaction = await create_transaction(
        db_session, buyer, seller, price, plan(price, 0, flagged=(1,))
    )
    resp = await signed_request(
        client, buyer, "GET", f"/transactions/{transaction.transaction_id}/high-value-approval"
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["is_high_value"] is True
    assert body["threshold"] == settings.high_value_threshold
    assert [m["name"] for m in body["pending_milestones"]] == ["Step 2"]
    assert body["can_release"] is False


@pytest.mark.asyncio
async def test_high_value_action_requires_admin(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    resp = await signed_request(
        client, buyer, "POST", f"/transactions/{transaction.transaction_id}/high-value-approval",
        {"action": "approve"},
    )
    assert resp.status_code == 403
    assert resp.json()["error"] == "authorization_error"


# --- Webhook and callback ---

@pytest.mark.asyncio
async def test_webhook_requires_hash(client: AsyncClient) -> None:
    assert (await _post_webhook(client, _charge("BGL-1"), verif_hash=None)).status_code == 401
    assert (await _post_webhook(client, _charge("BGL-1"), verif_hash="nope")).status_code == 401


@pytest.mark.asyncio
async def test_duplicate_webhook_funds_once(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    """The provider delivers the same success twice; funding happens once."""
    transaction = await create_transaction(db_session, buyer, seller)
    payment = await start_funding(db_session, transaction, buyer)
    payment.provider_reference = "BGL-123"
    await db_session.commit()

    first = await _post_webhook(client, _charge("BGL-123"))
    assert first.status_code == 200
    assert first.json()["outcome"] == "succeeded"
    assert first.json()["payment_status"] == "SUCCESS"

    second = await _post_webhook(client, _charge("BGL-123"))
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate_ignored"

    result = await db_session.execute(
        select(func.count())
        .select_from(AuditLog)
        .where(
            AuditLog.entity_id == transaction.transaction_id,
            AuditLog.action == "transition.funded",
        )
    )
    assert result.scalar_one() == 1

    detail = await signed_request(client, buyer, "GET", f"/transactions/{transaction.transaction_id}")
    assert detail.json()["status"] == "FUNDED"


@pytest.mark.asyncio
async def test_webhook_ignores_other_events(client: AsyncClient) -> None:
    resp = await _post_webhook(client, _charge("BGL-1", event="transfer.completed"))
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"


@pytest.mark.asyncio
async def test_webhook_unknown_reference_is_404(client: AsyncClient) -> None:
    resp = await _post_webhook(client, _charge("BGL-0-MISSING"))
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_webhook_unknown_status_is_422(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    payment = await start_funding(db_session, transaction, buyer)
    resp = await _post_webhook(client, _charge(payment.provider_reference, status="exploded"))
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_callback_reconciles(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    payment = await start_funding(db_session, transaction, buyer)
    resp = await client.get(
        "/payments/callback",
        params={"tx_ref": payment.provider_reference, "status": "cancelled"},
    )
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "failed"
    assert resp.json()["payment_status"] == "FAILED"



@pytest.mark.asyncio
async def test_forged_callback_success_does_not_fund(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    """Anyone can hit the redirect URL; without provider confirmation nothing moves."""
    transaction = await create_transaction(db_session, buyer, seller)
    payment = await start_funding(db_session, transaction, buyer)
    resp = await client.get(
        "/payments/callback",
        params={"tx_ref": payment.provider_reference, "status": "successful"},
    )
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "unverified"
    assert resp.json()["payment_status"] == "INITIATED"

    detail = await signed_request(client, buyer, "GET", f"/transactions/{transaction.transaction_id}")
    assert detail.json()["status"] == "ESCROW_REQUESTED"


class _VerifyingGateway:
    def __init__(self, amount_offset: int = 0) -> None:
        self.amount_offset = amount_offset

    async def create_checkout(self, payment, payer):
        return None

    async def verify_transaction(self, provider_reference):
        return VerifiedCharge(
            provider_reference=provider_reference,
            status="successful",
            amount=10_000_000 + self.amount_offset,
            currency="GHS",
            provider_transaction_id="90210",
        )


@pytest.mark.asyncio
async def test_callback_funds_when_provider_confirms(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    payment = await start_funding(db_session, transaction, buyer)
    app.dependency_overrides[get_gateway] = lambda: _VerifyingGateway()

    resp = await client.get(
        "/payments/callback",
        params={"tx_ref": payment.provider_reference, "status": "successful"},
    )
    assert resp.json()["outcome"] == "succeeded"
    detail = await signed_request(client, buyer, "GET", f"/transactions/{transaction.transaction_id}")
    assert detail.json()["status"] == "FUNDED"


@pytest.mark.asyncio
async def test_callback_underpayment_does_not_fund(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    payment = await start_funding(db_session, transaction, buyer)
    app.dependency_overrides[get_gateway] = lambda: _VerifyingGateway(amount_offset=-9_000_000)

    resp = await client.get(
        "/payments/callback",
        params={"tx_ref": payment.provider_reference, "status": "successful"},
    )
    assert resp.json()["outcome"] == "failed"
    assert resp.json()["payment_status"] == "FAILED"
    detail = await signed_request(client, buyer, "GET", f"/transactions/{transaction.transaction_id}")
    assert detail.json()["status"] == "ESCROW_REQUESTED"


@pytest.mark.asyncio
async def test_webhook_checks_hash_before_body(client: AsyncClient) -> None:
    malformed = {"event": "charge.completed"}
    assert (await _post_webhook(client, malformed, verif_hash=None)).status_code == 401
    assert (await _post_webhook(client, malformed)).status_code == 422


@pytest.mark.asyncio
async def test_webhook_amount_must_match(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    payment = await start_funding(db_session, transaction, buyer)
    payload = _charge(payment.provider_reference)
    payload["data"]["amount"] = 1000.0

    resp = await _post_webhook(client, payload)
    assert resp.json()["outcome"] == "failed"
    assert "charged 100000" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_get_payment_over_http(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party, make_actor
) -> None:
    transaction = await create_transaction(db_session, buyer, seller)
    payment = await start_funding(db_session, transaction, buyer)
    stranger = await make_actor("Stranger")

    resp = await signed_request(client, seller, "GET", f"/payments/{payment.payment_id}")
    assert resp.status_code == 200
    assert resp.json()["provider_reference"] == payment.provider_reference
    resp = await signed_request(client, stranger, "GET", f"/payments/{payment.payment_id}")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_initiate_payment_over_http(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> None:
    transaction = await create_transaction(db_session, buyer, seller, 100_000, plan(100_000))
    resp = await signed_request(
        client, buyer, "POST", "/payments",
        {"amount": 100_000, "type": "FUNDING", "transaction_id": str(transaction.transaction_id)},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "INITIATED"
    assert body["fees"] == 1_950
    assert body["provider_reference"].startswith("BGL-")
    assert body["checkout_url"] is None


@pytest.mark.asyncio
async def test_alerts_require_finance(
    client: AsyncClient, buyer: Party, make_actor
) -> None:
    finance = await make_actor("Finance Officer", roles=["finance"])
    assert (await signed_request(client, buyer, "GET", "/payments/alerts")).status_code == 403
    resp = await signed_request(client, finance, "GET", "/payments/alerts")
    assert resp.status_code == 200
    assert resp.json() == []


# --- Disputes ---

async def _dispute_over_http(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party
) -> tuple[str, str]:
    transaction = await create_transaction(db_session, buyer, seller, 100_000, plan(100_000))
    await start_verification(db_session, transaction, buyer)
    resp = await signed_request(
        client, buyer, "POST", f"/transactions/{transaction.transaction_id}/disputes",
        {"summary": "Fence line does not match the survey plan"},
    )
    assert resp.status_code == 201
    return str(transaction.transaction_id), resp.json()["dispute_id"]


@pytest.mark.asyncio
async def test_resolve_rejects_short_notes(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party, mediator: Party
) -> None:
    _, dispute_id = await _dispute_over_http(client, db_session, buyer, seller)
    resp = await signed_request(
        client, mediator, "POST", f"/disputes/{dispute_id}/resolve",
        {"outcome": "REFUND", "notes": "too short"},
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_resolve_partial_mismatch_reports_amounts(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party, mediator: Party
) -> None:
    _, dispute_id = await _dispute_over_http(client, db_session, buyer, seller)
    resp = await signed_request(
        client, mediator, "POST", f"/disputes/{dispute_id}/resolve",
        {
            "outcome": "PARTIAL",
            "notes": "Split agreed during mediation call",
            "buyer_amount": 30_000,
            "seller_amount": 60_000,
        },
    )
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "settlement_amount_mismatch"
    assert body["expected"] == 100_000
    assert body["actual"] == 90_000

    ok = await signed_request(
        client, mediator, "POST", f"/disputes/{dispute_id}/resolve",
        {
            "outcome": "PARTIAL",
            "notes": "Split agreed during mediation call",
            "buyer_amount": 30_000,
            "seller_amount": 70_000,
        },
    )
    assert ok.status_code == 200
    assert ok.json()["status"] == "RESOLVED"
    assert ok.json()["outcome"] == "PARTIAL"


@pytest.mark.asyncio
async def test_dispute_status_endpoint(
    client: AsyncClient, db_session: AsyncSession, buyer: Party, seller: Party, mediator: Party
) -> None:
    _, dispute_id = await _dispute_over_http(client, db_session, buyer, seller)
    path = f"/disputes/{dispute_id}/status"

    denied = await signed_request(client, buyer, "POST", path, {"status": "UNDER_REVIEW"})
    assert denied.status_code == 403

    resp = await signed_request(client, mediator, "POST", path, {"status": "UNDER_REVIEW"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "UNDER_REVIEW"

    viewed = await signed_request(client, seller, "GET", f"/disputes/{dispute_id}")
    assert viewed.json()["status"] == "UNDER_REVIEW"


# --- Authentication ---

@pytest.mark.asyncio
async def test_missing_auth_headers(client: AsyncClient) -> None:
    resp = await client.get("/transactions")
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Missing authentication headers"


@pytest.mark.asyncio
async def test_bad_signature(client: AsyncClient, buyer: Party, seller: Party) -> None:
    impostor = Party(actor_id=buyer.actor_id, private_key=seller.private_key)
    resp = await signed_request(client, impostor, "GET", "/transactions")
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Invalid signature"


@pytest.mark.asyncio
async def test_nonce_cannot_be_reused(client: AsyncClient, buyer: Party) -> None:
    headers = make_auth_headers(buyer, "GET", "/transactions")
    assert (await client.get("/transactions", headers=headers)).status_code == 200
    replay = await client.get("/transactions", headers=headers)
    assert replay.status_code == 403
    assert replay.json()["detail"] == "Nonce already used"
