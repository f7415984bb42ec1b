"""Periodic reconciliation of local subscription state with Stripe.

Webhooks can be lost, arrive out of order, or share a timestamp. The
reconciliation sweep asks Stripe for each linked customer's subscriptions
and replays the observed truth through the normal transition path, stamped
with the current time so it supersedes any older event.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from entitlement_engine.domain import ENTITLED_STATUSES, SubscriberRecord
from entitlement_engine.exceptions import EntitlementError
from entitlement_engine.redis_client import LockNotAcquiredError, RedisClient
from entitlement_engine.services.billing_gateway import (
    ENTITLING_SUBSCRIPTION_STATUSES,
    ENDED_SUBSCRIPTION_STATUSES,
    BillingGateway,
    subscription_transition,
)
from entitlement_engine.store.base import EntitlementStore
from entitlement_engine.transitions import BillingTransition

logger = structlog.get_logger()

RECONCILIATION_LOCK_KEY = "reconciliation"


@dataclass
class ReconciliationReport:
    scanned: int = 0
    applied: int = 0
    failed: int = 0
    skipped: bool = False


def desired_transition(
    record: SubscriberRecord,
    subscriptions: list[dict[str, Any]],
    now: datetime | None = None,
) -> BillingTransition | None:
    """Transition that brings the record in line with the customer's subscriptions.

    `subscriptions` is newest first. An entitling subscription wins; if every
    subscription has ended (or there are none) an entitled record is canceled.
    Anything in between (past_due, incomplete, paused) is left to the
    lifecycle events.
    """
    for subscription in subscriptions:
        if subscription.get("status") in ENTITLING_SUBSCRIPTION_STATUSES:
            return subscription_transition(subscription, now)

    all_ended = all(s.get("status") in ENDED_SUBSCRIPTION_STATUSES for s in subscriptions)
    if all_ended and record.subscription_status in ENTITLED_STATUSES:
        return BillingTransition.cancel()
    return None


def _already_matches(record: SubscriberRecord, transition: BillingTransition) -> bool:
    return (
        record.subscription_status == transition.target_status
        and record.active_billing_agreement_id == transition.billing_agreement_id
        and record.cancel_at == transition.cancel_at
    )


class ReconciliationJob:
    """Sweeps linked subscribers in pages, one instance at a time."""

    def __init__(
        self,
        store: EntitlementStore,
        gateway: BillingGateway,
        lock_client: RedisClient | None = None,
        batch_size: int = 100,
        lock_timeout: int = 900,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._lock_client = lock_client
        self._batch_size = batch_size
        self._lock_timeout = lock_timeout
        self._clock = clock

    async def run_once(self) -> ReconciliationReport:
        if not await self._gateway.is_configured():
            logger.info("Skipping reconciliation, billing gateway not configured")
            return ReconciliationReport(skipped=True)

        if self._lock_client is None:
            return await self._sweep()

        try:
            async with self._lock_client.lock(
                RECONCILIATION_LOCK_KEY, timeout=self._lock_timeout
            ):
                return await self._sweep()
        except LockNotAcquiredError:
            logger.info("Reconciliation already running on another instance")
            return ReconciliationReport(skipped=True)

    async def _sweep(self) -> ReconciliationReport:
        report = ReconciliationReport()
        after: str | None = None
        started = self._clock()

        while True:
            batch = await self._store.list_billing_references(self._batch_size, after=after)
            for record in batch:
                report.scanned += 1
                try:
                    if await self.reconcile_subscriber(record):
                        report.applied += 1
                except EntitlementError as e:
                    report.failed += 1
                    logger.warning(
                        "Failed to reconcile subscriber",
                        subscriber_id=record.subscriber_id,
                        error=str(e),
                    )
            if len(batch) < self._batch_size:
                break
            after = batch[-1].subscriber_id

        logger.info(
            "Reconciliation finished",
            scanned=report.scanned,
            applied=report.applied,
            failed=report.failed,
            duration_seconds=round(self._clock() - started, 3),
        )
        return report

    async def reconcile_subscriber(self, record: SubscriberRecord) -> bool:
        """Correct one subscriber. Returns True if the record changed."""
        if not record.billing_reference_id:
            return False

        subscriptions = await self._gateway.list_subscriptions(record.billing_reference_id)
        now = datetime.fromtimestamp(self._clock(), tz=UTC)
        transition = desired_transition(record, subscriptions, now)
        if transition is None or _already_matches(record, transition):
            return False

        result = await self._store.apply_billing_transition(
            record.subscriber_id, transition, int(self._clock())
        )
        if result.applied:
            logger.info(
                "Reconciliation corrected subscriber",
                subscriber_id=record.subscriber_id,
                previous_status=record.subscription_status.value,
                status=result.record.subscription_status.value,
            )
        return result.applied
