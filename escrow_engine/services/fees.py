"""Provider fee calculation.

Fees are integer minor units computed from basis points and rounded down. ``net_amount`` on a
payment is always ``amount - fees``.
"""

from dataclasses import dataclass

from escrow_engine.config import settings
from escrow_engine.models.payment import PaymentType

BPS_DENOMINATOR = 10_000


@dataclass
class FeeBreakdown:
    """Itemized fee for a payment."""
    fee_type: str  # "processing"
    amount: int
    detail: str  # Human-readable explanation

    def to_dict(self) -> dict:
        return {
            "fee_type": self.fee_type,
            "amount": self.amount,
            "detail": self.detail,
        }


def calculate_processing_fee(amount: int, payment_type: PaymentType) -> FeeBreakdown:
    """Provider fee on an inbound payment. Payouts carry no processing fee here."""
    if payment_type == PaymentType.PAYOUT:
        return FeeBreakdown(fee_type="processing", amount=0, detail="Payouts are fee-free")
    bps = settings.payment_processing_fee_bps
    fee = min(amount * bps // BPS_DENOMINATOR, amount)
    return FeeBreakdown(
        fee_type="processing",
        amount=fee,
        detail=f"{settings.payment_provider} processing fee: {bps / 100:.2f}% of {amount}",
    )


def net_of_fees(amount: int, fees: int) -> int:
    return amount - fees


def get_fee_schedule() -> dict:
    """Current fee schedule for display to parties."""
    return {
        "currency": settings.currency,
        "processing_fee_bps": settings.payment_processing_fee_bps,
        "provider": settings.payment_provider,
        "applies_to": [t.value for t in PaymentType if t != PaymentType.PAYOUT],
    }
