"""Payment initiation, provider notifications and reconciliation alerts."""

import logging
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.auth.middleware import AuthenticatedActor, verify_request
from escrow_engine.auth.rate_limit import check_rate_limit
from escrow_engine.database import get_db
from escrow_engine.models.payment import AlertStatus
from escrow_engine.schemas.payment import (
    AlertResolve,
    AlertResponse,
    FlutterwaveWebhook,
    PaymentInitiate,
    PaymentResponse,
    ReconcileResponse,
)
from escrow_engine.services import payments as payment_service
from escrow_engine.services.authorizer import Authorizer, get_authorizer
from escrow_engine.services.gateway import PaymentGateway, get_gateway, verify_webhook_hash

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

CHARGE_COMPLETED = "charge.completed"


def _reconcile_response(result: payment_service.ReconcileResult) -> ReconcileResponse:
    return ReconcileResponse(
        provider_reference=result.payment.provider_reference,
        outcome="inconsistent" if result.inconsistent else result.outcome,
        payment_status=result.payment.status.value,
        detail=result.notice.detail if result.notice is not None else result.detail,
    )


@router.post(
    "", response_model=PaymentResponse, status_code=201, dependencies=[Depends(check_rate_limit)]
)
async def initiate_payment(
    data: PaymentInitiate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentResponse:
    """Start a payment and return its checkout link when the provider is configured."""
    payment = await payment_service.initiate(
        db,
        auth.ref,
        data.amount,
        data.type,
        transaction_id=data.transaction_id,
        listing_id=data.listing_id,
        gateway=gateway,
    )
    return PaymentResponse.model_validate(payment)


async def require_webhook_hash(verif_hash: str | None = Header(None, alias="verif-hash")) -> None:
    """Reject provider pushes without the shared ``verif-hash`` before reading the body."""
    if not verify_webhook_hash(verif_hash):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post(
    "/webhook",
    response_model=ReconcileResponse,
    dependencies=[Depends(check_rate_limit), Depends(require_webhook_hash)],
)
async def flutterwave_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> ReconcileResponse:
    """Provider push notification. Authenticated by the shared ``verif-hash``."""
    try:
        payload = FlutterwaveWebhook.model_validate_json(await request.body())
    except PydanticValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False))
    if payload.event != CHARGE_COMPLETED:
        logger.info("Ignoring Flutterwave event %s", payload.event)
        return ReconcileResponse(
            provider_reference=payload.data.tx_ref, outcome="ignored", detail=payload.event
        )
    charge = payload.data
    result = await payment_service.reconcile(
        db,
        charge.tx_ref,
        charge.status,
        provider_payload=payload.model_dump(mode="json"),
        provider_transaction_id=str(charge.id) if charge.id is not None else None,
        amount=round(charge.amount * 100) if charge.amount is not None else None,
        currency=charge.currency,
    )
    return _reconcile_response(result)


@router.get("/callback", response_model=ReconcileResponse, dependencies=[Depends(check_rate_limit)])
async def payment_callback(
    tx_ref: str = Query(..., max_length=64),
    status: str = Query(..., max_length=32),
    transaction_id: str | None = Query(None, max_length=64),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ReconcileResponse:
    """Browser redirect after checkout. Reconciles what the provider confirms."""
    result = await payment_service.reconcile_callback(
        db, tx_ref, status, gateway, provider_transaction_id=transaction_id
    )
    return _reconcile_response(result)


@router.get(
    "/alerts", response_model=list[AlertResponse], dependencies=[Depends(check_rate_limit)]
)
async def list_alerts(
    status: AlertStatus | None = Query(AlertStatus.OPEN),
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> list[AlertResponse]:
    alerts = await payment_service.list_alerts(db, auth.ref, authorizer, status=status)
    return [AlertResponse.model_validate(a) for a in alerts]


@router.post(
    "/alerts/{alert_id}/resolve",
    response_model=AlertResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def resolve_alert(
    alert_id: uuid.UUID,
    data: AlertResolve,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> AlertResponse:
    alert = await payment_service.resolve_alert(db, alert_id, auth.ref, authorizer, data.notes)
    return AlertResponse.model_validate(alert)


@router.get(
    "/{payment_id}", response_model=PaymentResponse, dependencies=[Depends(check_rate_limit)]
)
async def get_payment(
    payment_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
) -> PaymentResponse:
    payment = await payment_service.get_payment_for_actor(db, payment_id, auth.ref, authorizer)
    return PaymentResponse.model_validate(payment)
