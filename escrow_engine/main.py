"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrow_engine.config import settings
from escrow_engine.errors import EscrowError
from escrow_engine.middleware import (
    BodySizeLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from escrow_engine.routers import disputes, fees, insurance, offers, payments, transactions

logger = logging.getLogger(__name__)


async def _report_open_alerts() -> None:
    """Log reconciliation alerts still waiting for an operator."""
    from escrow_engine.database import async_session_factory
    from escrow_engine.services.payments import count_open_alerts

    try:
        async with async_session_factory() as db:
            count = await count_open_alerts(db)
        if count:
            logger.warning("%d reconciliation alert(s) awaiting an operator", count)
        else:
            logger.info("No open reconciliation alerts")
    except Exception:
        logger.exception("Reconciliation alert report failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logging.getLogger("escrow_engine").setLevel(settings.log_level.upper())
    await _report_open_alerts()
    yield


app = FastAPI(
    title="Escrow Transaction & Dispute Resolution Engine",
    description="Milestone escrow, high-value approval, disputes and payment reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Order matters: the last added is outermost.
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_request_body_bytes)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(offers.router)
app.include_router(transactions.router)
app.include_router(disputes.router)
app.include_router(payments.router)
app.include_router(insurance.router)
app.include_router(fees.router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
