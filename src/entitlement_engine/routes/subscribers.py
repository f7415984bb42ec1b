"""Subscriber provisioning and entitlement summary routes."""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from entitlement_engine.dependencies import (
    EntitlementServices,
    get_current_subscriber_id,
    get_services,
)
from entitlement_engine.domain import UNLIMITED, SubscriberRecord
from entitlement_engine.exceptions import BillingGatewayError, BillingReferenceConflictError
from entitlement_engine.middleware.rate_limit import RATE_LIMIT_STANDARD, limiter

logger = structlog.get_logger()

router = APIRouter(prefix="/subscribers", tags=["subscribers"])


class SubscriberResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscriber_id: str = Field(serialization_alias="subscriberId")
    subscription_status: str = Field(serialization_alias="subscriptionStatus")
    has_unlimited_quota: bool = Field(serialization_alias="hasUnlimitedQuota")
    remaining: int
    quota_counter: int = Field(serialization_alias="quotaCounter")
    cancel_at: datetime | None = Field(serialization_alias="cancelAt")
    billing_linked: bool = Field(serialization_alias="billingLinked")


def _summary(record: SubscriberRecord, allowance: int) -> SubscriberResponse:
    if record.has_unlimited_quota:
        remaining = UNLIMITED
    else:
        remaining = max(allowance - record.quota_counter, 0)
    return SubscriberResponse(
        subscriber_id=record.subscriber_id,
        subscription_status=record.subscription_status.value,
        has_unlimited_quota=record.has_unlimited_quota,
        remaining=remaining,
        quota_counter=record.quota_counter,
        cancel_at=record.cancel_at,
        billing_linked=record.billing_reference_id is not None,
    )


@router.post("/provision", response_model=SubscriberResponse, response_model_by_alias=True)
@limiter.limit(RATE_LIMIT_STANDARD)
async def provision_subscriber(
    request: Request,
    subscriber_id: str = Depends(get_current_subscriber_id),
    services: EntitlementServices = Depends(get_services),
) -> SubscriberResponse:
    """Create the caller's free subscriber record and Stripe customer.

    Repeating the call is harmless and links the Stripe customer if an
    earlier attempt could not reach Stripe.
    """
    email = getattr(request.state, "email", None)
    try:
        record = await services.provisioning.provision(subscriber_id, email=email)
    except BillingReferenceConflictError as e:
        logger.error(
            "Billing reference conflict during provisioning",
            subscriber_id=subscriber_id,
            billing_reference_id=e.billing_reference_id,
        )
        raise HTTPException(status_code=409, detail="Billing customer already linked") from e
    except BillingGatewayError as e:
        logger.error("Billing customer creation failed", subscriber_id=subscriber_id, error=str(e))
        raise HTTPException(status_code=502, detail="Billing provider unavailable") from e

    return _summary(record, services.arbiter.allowance)


@router.get("/me", response_model=SubscriberResponse, response_model_by_alias=True)
@limiter.limit(RATE_LIMIT_STANDARD)
async def get_my_entitlement(
    request: Request,  # noqa: ARG001 - used by the rate limiter
    subscriber_id: str = Depends(get_current_subscriber_id),
    services: EntitlementServices = Depends(get_services),
) -> SubscriberResponse:
    record = await services.store.get(subscriber_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Subscriber not found")
    return _summary(record, services.arbiter.allowance)
