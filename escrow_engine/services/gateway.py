"""Flutterwave payment gateway client.

Creates hosted checkout links for inbound payments, verifies webhook
deliveries and looks up a charge's real status by reference.
See: https://developer.flutterwave.com/docs
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from escrow_engine.config import settings
from escrow_engine.errors import PaymentGatewayError
from escrow_engine.models.actor import Actor
from escrow_engine.models.payment import Payment

logger = logging.getLogger(__name__)


@dataclass
class Checkout:
    """Hosted payment page returned by the provider."""

    provider_reference: str
    checkout_url: str


@dataclass
class VerifiedCharge:
    """A charge as the provider's own API reports it. Amount in minor units."""

    provider_reference: str
    status: str
    amount: int
    currency: str
    provider_transaction_id: str | None = None
    payload: dict | None = None


class PaymentGateway(Protocol):
    async def create_checkout(self, payment: Payment, payer: Actor | None) -> Checkout | None:
        ...

    async def verify_transaction(self, provider_reference: str) -> VerifiedCharge | None:
        ...


class FlutterwaveGateway:
    """Standard checkout via ``POST /payments`` and verification via
    ``GET /transactions/verify_by_reference``.

    Returns None when no secret key is configured, so development and tests
    run without a provider account.
    """

    def __init__(
        self,
        api_url: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url or settings.flutterwave_api_url
        self.secret_key = secret_key if secret_key is not None else settings.flutterwave_secret_key
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    def _checkout_body(self, payment: Payment, payer: Actor | None) -> dict:
        # Flutterwave takes major units.
        body = {
            "tx_ref": payment.provider_reference,
            "amount": f"{payment.amount / 100:.2f}",
            "currency": payment.currency,
            "redirect_url": settings.payment_redirect_url,
            "meta": {
                "payment_id": str(payment.payment_id),
                "payment_type": payment.type.value,
            },
        }
        if payer is not None:
            body["customer"] = {
                "email": payer.email or "",
                "phonenumber": payer.phone or "",
                "name": payer.display_name,
            }
        return body

    async def create_checkout(self, payment: Payment, payer: Actor | None) -> Checkout | None:
        if not self.configured:
            logger.info(
                "Flutterwave not configured; no checkout link for %s", payment.provider_reference
            )
            return None

        async with self._client() as client:
            try:
                resp = await client.post(
                    f"{self.api_url}/payments", json=self._checkout_body(payment, payer)
                )
            except httpx.TimeoutException:
                logger.error("Flutterwave timed out creating checkout %s", payment.provider_reference)
                raise PaymentGatewayError("Payment provider timed out")
            except httpx.RequestError as e:
                logger.error("Flutterwave request failed: %s", e)
                raise PaymentGatewayError("Failed to reach payment provider")

        if resp.status_code != 200:
            logger.error(
                "Flutterwave checkout returned %d: %s", resp.status_code, resp.text[:500]
            )
            raise PaymentGatewayError(
                f"Payment provider rejected checkout (status {resp.status_code})"
            )

        data = resp.json()
        link = (data.get("data") or {}).get("link")
        if data.get("status") != "success" or not link:
            raise PaymentGatewayError(data.get("message") or "Payment provider returned no link")
        return Checkout(provider_reference=payment.provider_reference, checkout_url=link)

    async def verify_transaction(self, provider_reference: str) -> VerifiedCharge | None:
        """Ask the provider what actually happened to ``provider_reference``."""
        if not self.configured:
            logger.warning(
                "Flutterwave not configured; cannot verify %s", provider_reference
            )
            return None

        async with self._client() as client:
            try:
                resp = await client.get(
                    f"{self.api_url}/transactions/verify_by_reference",
                    params={"tx_ref": provider_reference},
                )
            except httpx.TimeoutException:
                logger.error("Flutterwave timed out verifying %s", provider_reference)
                raise PaymentGatewayError("Payment provider timed out")
            except httpx.RequestError as e:
                logger.error("Flutterwave request failed: %s", e)
                raise PaymentGatewayError("Failed to reach payment provider")

        if resp.status_code != 200:
            logger.error(
                "Flutterwave verification returned %d: %s", resp.status_code, resp.text[:500]
            )
            raise PaymentGatewayError(
                f"Payment provider could not verify {provider_reference} "
                f"(status {resp.status_code})"
            )

        body = resp.json()
        data = body.get("data") or {}
        if body.get("status") != "success" or data.get("tx_ref") != provider_reference:
            raise PaymentGatewayError(
                body.get("message") or f"Payment provider has no charge {provider_reference}"
            )
        return VerifiedCharge(
            provider_reference=provider_reference,
            status=str(data.get("status") or ""),
            # Flutterwave reports major units.
            amount=round(float(data.get("amount") or 0) * 100),
            currency=str(data.get("currency") or ""),
            provider_transaction_id=str(data["id"]) if data.get("id") is not None else None,
            payload=body,
        )


def verify_webhook_hash(received: str | None) -> bool:
    """Flutterwave sends the configured secret hash in the ``verif-hash`` header."""
    if not received or not settings.flutterwave_secret_hash:
        return False
    return hmac.compare_digest(received, settings.flutterwave_secret_hash)


def get_gateway() -> PaymentGateway:
    return FlutterwaveGateway()
