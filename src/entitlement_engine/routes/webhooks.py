"""Stripe webhook endpoint."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from entitlement_engine.dependencies import EntitlementServices, get_services
from entitlement_engine.exceptions import (
    BillingGatewayNotConfiguredError,
    StoreUnavailableError,
    TransientStoreConflictError,
)
from entitlement_engine.observability import capture_exception

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    services: EntitlementServices = Depends(get_services),
) -> JSONResponse:
    """Receive a Stripe event.

    200 tells Stripe the delivery is done (including duplicates and event
    types we ignore). 400 is a permanent rejection for this delivery. 503
    asks Stripe to redeliver later.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = await services.ingestor.ingest(payload, sig_header)
    except BillingGatewayNotConfiguredError as e:
        logger.error("Webhook received but signature verification is not configured")
        raise HTTPException(status_code=503, detail="Webhook verification not configured") from e
    except TransientStoreConflictError as e:
        logger.error("Billing transition conflict retries exhausted", error=str(e))
        capture_exception(e, tags={"component": "webhook_ingestor"})
        raise HTTPException(status_code=503, detail="Webhook processing unavailable") from e
    except StoreUnavailableError as e:
        logger.error("Webhook processing failed transiently", error=str(e))
        raise HTTPException(status_code=503, detail="Webhook processing unavailable") from e

    if not result.accepted:
        reason = result.reason.value if result.reason else "Rejected"
        return JSONResponse(status_code=400, content={"detail": reason})

    return JSONResponse(status_code=200, content={"received": True, "applied": result.applied})
