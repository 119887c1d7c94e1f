"""Fee schedule endpoint. Public, no auth required."""

from fastapi import APIRouter

from escrow_engine.services.fees import get_fee_schedule

router = APIRouter(tags=["fees"])


@router.get("/fees")
async def fee_schedule() -> dict:
    """Provider processing fees on inbound payments, in basis points.

    Payouts from escrow carry no processing fee. A payment's ``net_amount``
    is its amount less the recorded fee.
    """
    return get_fee_schedule()
