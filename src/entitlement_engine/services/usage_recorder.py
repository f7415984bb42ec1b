"""Append-only usage ledger."""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from entitlement_engine.domain import UsageEntry
from entitlement_engine.store.base import EntitlementStore

logger = structlog.get_logger()

# Metadata keys lifted into dedicated columns
_SIZE_KEYS = ("size_or_weight", "file_size", "fileSize")
_NAME_KEYS = ("resource_name", "file_name", "fileName")


class RecordResult(str, Enum):
    OK = "ok"
    DUPLICATE_REQUEST_ID = "duplicate_request_id"
    FAILED = "failed"


def _first(metadata: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if metadata.get(key) is not None:
            return metadata[key]
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class UsageRecorder:
    """Writes one ledger entry per granted request.

    A request id is claimed before quota is consumed and completed after
    the grant, so a replayed request never consumes twice. A failed write is
    logged for later reconciliation and never rolls back the quota that was
    consumed.
    """

    def __init__(self, store: EntitlementStore) -> None:
        self._store = store

    async def record(
        self,
        subscriber_id: str,
        request_id: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        was_free_tier_consumption: bool = True,
    ) -> RecordResult:
        metadata = dict(metadata or {})
        size = _first(metadata, _SIZE_KEYS)
        name = _first(metadata, _NAME_KEYS)
        extra = {k: v for k, v in metadata.items() if k not in _SIZE_KEYS + _NAME_KEYS}

        entry = UsageEntry(
            subscriber_id=subscriber_id,
            request_id=request_id,
            timestamp=datetime.now(UTC),
            was_free_tier_consumption=was_free_tier_consumption,
            size_or_weight=_as_int(size),
            resource_name=str(name) if name is not None else None,
            extra=extra,
        )

        try:
            inserted = await self._store.append_usage(entry)
        except Exception:
            logger.exception(
                "Failed to record usage; grant stands",
                subscriber_id=subscriber_id,
                request_id=request_id,
            )
            return RecordResult.FAILED

        if not inserted:
            logger.info(
                "Duplicate usage record ignored",
                subscriber_id=subscriber_id,
                request_id=request_id,
            )
            return RecordResult.DUPLICATE_REQUEST_ID

        logger.info(
            "Usage recorded",
            subscriber_id=subscriber_id,
            request_id=request_id,
            was_free_tier=was_free_tier_consumption,
        )
        return RecordResult.OK

    async def claim(self, subscriber_id: str, request_id: str) -> bool:
        """Reserve request_id before quota is consumed. False means a replay."""
        return await self._store.claim_usage(subscriber_id, request_id)

    async def release(self, subscriber_id: str, request_id: str) -> None:
        """Give back a claim for a request that was not granted."""
        try:
            await self._store.release_usage_claim(subscriber_id, request_id)
        except Exception:
            logger.exception(
                "Failed to release usage claim",
                subscriber_id=subscriber_id,
                request_id=request_id,
            )

    async def find(self, request_id: str) -> UsageEntry | None:
        return await self._store.get_usage(request_id)

    async def history(self, subscriber_id: str, limit: int = 50) -> list[UsageEntry]:
        return await self._store.list_usage(subscriber_id, limit=limit)
