"""Download quota check, release tracking and history."""

from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from entitlement_engine.dependencies import (
    EntitlementServices,
    get_current_subscriber_id,
    get_services,
)
from entitlement_engine.exceptions import StoreUnavailableError
from entitlement_engine.middleware.rate_limit import (
    RATE_LIMIT_DOWNLOADS,
    RATE_LIMIT_STANDARD,
    limiter,
)
from entitlement_engine.services.quota_arbiter import DenialReason
from entitlement_engine.services.usage_recorder import RecordResult

logger = structlog.get_logger()

router = APIRouter(prefix="/downloads", tags=["downloads"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class QuotaCheckResponse(_CamelModel):
    can_download: bool = Field(serialization_alias="canDownload")
    remaining: int
    needs_upgrade: bool = Field(serialization_alias="needsUpgrade")
    subscription_status: str | None = Field(serialization_alias="subscriptionStatus")


class TrackDownloadRequest(_CamelModel):
    request_id: str | None = Field(
        default=None, alias="requestId", min_length=1, max_length=128
    )
    file_name: str = Field(alias="fileName", min_length=1, max_length=512)
    file_size: int | None = Field(default=None, alias="fileSize", ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TrackDownloadResponse(_CamelModel):
    success: bool = True
    download_id: str = Field(serialization_alias="downloadId")
    remaining: int
    was_free_tier: bool = Field(serialization_alias="wasFreeTier")


class UsageHistoryItem(_CamelModel):
    download_id: str = Field(serialization_alias="downloadId")
    file_name: str | None = Field(serialization_alias="fileName")
    file_size: int | None = Field(serialization_alias="fileSize")
    was_free_tier: bool = Field(serialization_alias="wasFreeTier")
    timestamp: datetime


def _unavailable() -> JSONResponse:
    # Distinct from a quota denial: the client should retry, not upgrade
    return JSONResponse(
        status_code=503,
        content={"error": "ServiceUnavailable", "retryable": True},
    )


@router.get("/check", response_model=QuotaCheckResponse, response_model_by_alias=True)
@limiter.limit(RATE_LIMIT_STANDARD)
async def check_download_quota(
    request: Request,  # noqa: ARG001 - used by the rate limiter
    subscriber_id: str = Depends(get_current_subscriber_id),
    services: EntitlementServices = Depends(get_services),
) -> QuotaCheckResponse | JSONResponse:
    """Pre-flight quota check for the UI. Does not consume quota."""
    try:
        permit = await services.arbiter.peek(subscriber_id)
    except StoreUnavailableError:
        return _unavailable()

    if permit.reason == DenialReason.UNKNOWN_SUBSCRIBER:
        raise HTTPException(status_code=404, detail="Subscriber not found")

    return QuotaCheckResponse(
        can_download=permit.granted,
        remaining=permit.remaining,
        needs_upgrade=permit.needs_upgrade,
        subscription_status=permit.subscription_status.value
        if permit.subscription_status
        else None,
    )


def _in_progress() -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"error": "RequestInProgress", "retryable": True},
    )


async def _replay(
    services: EntitlementServices, subscriber_id: str, request_id: str
) -> TrackDownloadResponse | JSONResponse:
    """Answer a request id that is already claimed without consuming quota."""
    previous = await services.recorder.find(request_id)
    if previous is not None and previous.subscriber_id != subscriber_id:
        raise HTTPException(status_code=409, detail="requestId already used")
    if previous is None or previous.pending:
        return _in_progress()

    try:
        permit = await services.arbiter.peek(subscriber_id)
    except StoreUnavailableError:
        return _unavailable()
    logger.info("Repeated download request", subscriber_id=subscriber_id, request_id=request_id)
    return TrackDownloadResponse(
        download_id=request_id,
        remaining=permit.remaining if permit.granted else 0,
        was_free_tier=previous.was_free_tier_consumption,
    )


@router.post("/track", response_model=TrackDownloadResponse, response_model_by_alias=True)
@limiter.limit(RATE_LIMIT_DOWNLOADS)
async def track_download(
    request: Request,  # noqa: ARG001 - used by the rate limiter
    body: TrackDownloadRequest,
    subscriber_id: str = Depends(get_current_subscriber_id),
    services: EntitlementServices = Depends(get_services),
) -> TrackDownloadResponse | JSONResponse:
    """Release a download: claim the requestId, consume quota, then record usage.

    A retry carrying the same requestId returns the original confirmation
    without consuming quota again. While the original is still in flight the
    retry gets 409 RequestInProgress.
    """
    request_id = body.request_id or str(uuid4())

    if not await services.recorder.claim(subscriber_id, request_id):
        return await _replay(services, subscriber_id, request_id)

    try:
        permit = await services.arbiter.check_and_consume(subscriber_id)
    except StoreUnavailableError:
        await services.recorder.release(subscriber_id, request_id)
        return _unavailable()

    if not permit.granted:
        await services.recorder.release(subscriber_id, request_id)
        if permit.reason == DenialReason.UNKNOWN_SUBSCRIBER:
            return JSONResponse(status_code=404, content={"error": DenialReason.UNKNOWN_SUBSCRIBER})
        return JSONResponse(
            status_code=403,
            content={"error": DenialReason.QUOTA_EXCEEDED, "needsUpgrade": True, "remaining": 0},
        )

    metadata = dict(body.metadata)
    metadata["file_name"] = body.file_name
    if body.file_size is not None:
        metadata["file_size"] = body.file_size

    recorded = await services.recorder.record(
        subscriber_id,
        request_id,
        metadata,
        was_free_tier_consumption=permit.is_free_tier,
    )
    if recorded is not RecordResult.OK:
        logger.warning(
            "Download granted without usage record",
            subscriber_id=subscriber_id,
            request_id=request_id,
            result=recorded.value,
        )

    return TrackDownloadResponse(
        download_id=request_id,
        remaining=permit.remaining,
        was_free_tier=permit.is_free_tier,
    )


@router.get("/history", response_model=list[UsageHistoryItem], response_model_by_alias=True)
@limiter.limit(RATE_LIMIT_STANDARD)
async def download_history(
    request: Request,  # noqa: ARG001 - used by the rate limiter
    limit: int = Query(default=20, ge=1, le=200),
    subscriber_id: str = Depends(get_current_subscriber_id),
    services: EntitlementServices = Depends(get_services),
) -> list[UsageHistoryItem]:
    """Most recent downloads for the current subscriber."""
    entries = await services.recorder.history(
        subscriber_id, limit=min(limit, services.usage_history_limit)
    )
    return [
        UsageHistoryItem(
            download_id=entry.request_id,
            file_name=entry.resource_name,
            file_size=entry.size_or_weight,
            was_free_tier=entry.was_free_tier_consumption,
            timestamp=entry.timestamp,
        )
        for entry in entries
    ]
