"""Download quota decisions.

`check_and_consume` is the authoritative decision made at the moment a
resource is released. `peek` answers the same question without consuming
and may race with concurrent consumption, so it is only for UI pre-flight.
"""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from entitlement_engine.domain import (
    UNLIMITED,
    SubscriberRecord,
    SubscriptionStatus,
)
from entitlement_engine.exceptions import StoreUnavailableError
from entitlement_engine.store.base import EntitlementStore

logger = structlog.get_logger()

DEFAULT_FREE_TIER_ALLOWANCE = 3
DEFAULT_QUOTA_TIMEOUT_SECONDS = 5.0

T = TypeVar("T")


class DenialReason:
    QUOTA_EXCEEDED = "QuotaExceeded"
    UNKNOWN_SUBSCRIBER = "UnknownSubscriber"


@dataclass(frozen=True)
class Permit:
    """Grant/deny decision for one resource request."""

    granted: bool
    remaining: int
    reason: str | None = None
    subscription_status: SubscriptionStatus | None = None

    @property
    def needs_upgrade(self) -> bool:
        return self.reason == DenialReason.QUOTA_EXCEEDED

    @property
    def is_free_tier(self) -> bool:
        return self.granted and self.remaining != UNLIMITED


def _unlimited(record: SubscriberRecord) -> Permit:
    return Permit(granted=True, remaining=UNLIMITED, subscription_status=record.subscription_status)


def _unknown() -> Permit:
    return Permit(granted=False, remaining=0, reason=DenialReason.UNKNOWN_SUBSCRIBER)


class QuotaArbiter:
    """Grants downloads to entitled subscribers and meters the free allowance."""

    def __init__(
        self,
        store: EntitlementStore,
        allowance: int = DEFAULT_FREE_TIER_ALLOWANCE,
        timeout: float = DEFAULT_QUOTA_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self.allowance = allowance
        self._timeout = timeout

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as e:
            logger.error("Quota decision timed out", operation=operation, timeout=self._timeout)
            raise StoreUnavailableError(operation, "timed out") from e

    async def check_and_consume(self, subscriber_id: str) -> Permit:
        """Decide and, for metered subscribers, consume one unit atomically.

        The deadline covers the read that precedes the increment. Once the
        increment is issued its outcome is always reported.

        Raises:
            StoreUnavailableError: the decision did not complete in time; nothing was consumed
        """
        record = await self._bounded("check_and_consume", self._store.get(subscriber_id))
        if record is None:
            logger.warning("Quota check for unknown subscriber", subscriber_id=subscriber_id)
            return _unknown()

        if record.has_unlimited_quota:
            return _unlimited(record)

        consumption = await self._store.try_consume_quota(subscriber_id, self.allowance)
        if consumption.granted:
            logger.info(
                "Free tier download granted",
                subscriber_id=subscriber_id,
                remaining=consumption.remaining,
            )
            return Permit(
                granted=True,
                remaining=consumption.remaining,
                subscription_status=record.subscription_status,
            )

        # The conditional increment also fails if the subscriber upgraded in between
        latest = await self._bounded("check_and_consume", self._store.get(subscriber_id))
        if latest is None:
            return _unknown()
        if latest.has_unlimited_quota:
            return _unlimited(latest)

        logger.info(
            "Free tier quota exceeded",
            subscriber_id=subscriber_id,
            quota_counter=latest.quota_counter,
            allowance=self.allowance,
        )
        return Permit(
            granted=False,
            remaining=0,
            reason=DenialReason.QUOTA_EXCEEDED,
            subscription_status=latest.subscription_status,
        )

    async def peek(self, subscriber_id: str) -> Permit:
        """Report the decision check_and_consume would make, without consuming."""
        record = await self._bounded("peek", self._store.get(subscriber_id))
        if record is None:
            return _unknown()
        if record.has_unlimited_quota:
            return _unlimited(record)

        remaining = max(self.allowance - record.quota_counter, 0)
        if remaining > 0:
            return Permit(
                granted=True, remaining=remaining, subscription_status=record.subscription_status
            )
        return Permit(
            granted=False,
            remaining=0,
            reason=DenialReason.QUOTA_EXCEEDED,
            subscription_status=record.subscription_status,
        )
