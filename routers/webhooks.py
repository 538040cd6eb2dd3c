"""FastAPI router receiving Stripe webhooks."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billing.config import BillingConfig
from billing.exceptions import BillingError
from billing.stripe_client import StripeGateway
from billing.webhooks import WebhookDispatcher
from routers.dependencies import get_billing_config, get_gateway, get_session

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/billing/stripe/webhook")
async def stripe_webhook(
    request: Request,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
    config: BillingConfig = Depends(get_billing_config),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    dispatcher = WebhookDispatcher(
        session,
        gateway,
        max_payment_failures=config.max_payment_failures,
        retention_days=config.event_retention_days,
    )

    # Signature and envelope errors propagate to the app's 400 handler.
    try:
        result = await run_in_threadpool(dispatcher.handle_payload, payload, signature)
    except BillingError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Stripe webhook handler failed: %s", exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"received": False})

    logger.info(
        "Stripe webhook %s processed (kind=%s, duplicate=%s)",
        result.event_id,
        result.kind.value,
        result.duplicate,
    )
    return JSONResponse(content={"received": True})
