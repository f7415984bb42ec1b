"""In-process entitlement store for local development and tests."""

import asyncio
from dataclasses import replace
from datetime import UTC, datetime

import structlog

from entitlement_engine.domain import (
    QUOTA_ENFORCED_STATUSES,
    BillingEventEntry,
    QuotaConsumption,
    SubscriberRecord,
    TransitionResult,
    UsageEntry,
)
from entitlement_engine.exceptions import (
    BillingReferenceConflictError,
    SubscriberNotFoundError,
    TransientStoreConflictError,
)
from entitlement_engine.store.base import DEFAULT_CONFLICT_RETRIES, EntitlementStore
from entitlement_engine.transitions import BillingTransition, apply_transition, is_stale

logger = structlog.get_logger()


class InMemoryEntitlementStore(EntitlementStore):
    """Dict-backed store.

    Mutations never await between their check and their write, so on a
    single event loop each one is atomic. Billing transitions still go
    through compare-and-set on last_event_sequence with a suspension point
    between read and write, matching how a remote store behaves.
    """

    def __init__(self, conflict_retries: int = DEFAULT_CONFLICT_RETRIES) -> None:
        super().__init__(conflict_retries=conflict_retries)
        self._records: dict[str, SubscriberRecord] = {}
        self._by_billing_reference: dict[str, str] = {}
        self._usage: dict[str, UsageEntry] = {}
        self._billing_events: dict[str, BillingEventEntry] = {}

    async def get(self, subscriber_id: str) -> SubscriberRecord | None:
        return self._records.get(subscriber_id)

    async def get_by_billing_reference(self, billing_reference_id: str) -> SubscriberRecord | None:
        subscriber_id = self._by_billing_reference.get(billing_reference_id)
        return self._records.get(subscriber_id) if subscriber_id else None

    async def provision(
        self,
        subscriber_id: str,
        billing_reference_id: str | None = None,
        email: str | None = None,
    ) -> SubscriberRecord:
        existing = self._records.get(subscriber_id)
        if existing:
            return existing
        if billing_reference_id and billing_reference_id in self._by_billing_reference:
            raise BillingReferenceConflictError(subscriber_id, billing_reference_id)

        now = datetime.now(UTC)
        record = SubscriberRecord(
            subscriber_id=subscriber_id,
            billing_reference_id=billing_reference_id,
            email=email,
            created_at=now,
            updated_at=now,
        )
        self._records[subscriber_id] = record
        if billing_reference_id:
            self._by_billing_reference[billing_reference_id] = subscriber_id
        logger.info("Subscriber provisioned", subscriber_id=subscriber_id)
        return record

    async def attach_billing_reference(
        self, subscriber_id: str, billing_reference_id: str
    ) -> SubscriberRecord:
        record = self._records.get(subscriber_id)
        if record is None:
            raise SubscriberNotFoundError(subscriber_id)
        if record.billing_reference_id == billing_reference_id:
            return record
        owner = self._by_billing_reference.get(billing_reference_id)
        if record.billing_reference_id is not None or owner is not None:
            raise BillingReferenceConflictError(subscriber_id, billing_reference_id)

        record = replace(
            record, billing_reference_id=billing_reference_id, updated_at=datetime.now(UTC)
        )
        self._records[subscriber_id] = record
        self._by_billing_reference[billing_reference_id] = subscriber_id
        return record

    async def apply_billing_transition(
        self,
        subscriber_id: str,
        transition: BillingTransition,
        event_sequence: int,
    ) -> TransitionResult:
        for attempt in range(1, self.conflict_retries + 1):
            current = self._records.get(subscriber_id)
            if current is None:
                raise SubscriberNotFoundError(subscriber_id)
            if is_stale(current, event_sequence):
                return TransitionResult(record=current, applied=False)

            await asyncio.sleep(0)

            live = self._records[subscriber_id]
            if live.last_event_sequence == current.last_event_sequence:
                # Apply to the live snapshot so concurrent quota consumption is kept
                updated = apply_transition(live, transition, event_sequence)
                self._records[subscriber_id] = updated
                return TransitionResult(record=updated, applied=True)

            logger.debug(
                "Billing transition lost a concurrent update, retrying",
                subscriber_id=subscriber_id,
                attempt=attempt,
                event_sequence=event_sequence,
            )

        raise TransientStoreConflictError(subscriber_id, self.conflict_retries)

    async def try_consume_quota(self, subscriber_id: str, allowance: int) -> QuotaConsumption:
        record = self._records.get(subscriber_id)
        if (
            record is None
            or record.subscription_status not in QUOTA_ENFORCED_STATUSES
            or record.quota_counter >= allowance
        ):
            return QuotaConsumption(granted=False, remaining=0)

        counter = record.quota_counter + 1
        self._records[subscriber_id] = replace(
            record, quota_counter=counter, updated_at=datetime.now(UTC)
        )
        return QuotaConsumption(granted=True, remaining=max(allowance - counter, 0))

    async def claim_usage(self, subscriber_id: str, request_id: str) -> bool:
        if request_id in self._usage:
            return False
        self._usage[request_id] = UsageEntry(
            subscriber_id=subscriber_id,
            request_id=request_id,
            timestamp=datetime.now(UTC),
            was_free_tier_consumption=False,
            pending=True,
        )
        return True

    async def release_usage_claim(self, subscriber_id: str, request_id: str) -> None:
        existing = self._usage.get(request_id)
        if existing and existing.pending and existing.subscriber_id == subscriber_id:
            del self._usage[request_id]

    async def append_usage(self, entry: UsageEntry) -> bool:
        existing = self._usage.get(entry.request_id)
        if existing and not (existing.pending and existing.subscriber_id == entry.subscriber_id):
            return False
        self._usage[entry.request_id] = replace(entry, pending=False)
        return True

    async def get_usage(self, request_id: str) -> UsageEntry | None:
        return self._usage.get(request_id)

    async def list_usage(self, subscriber_id: str, limit: int = 50) -> list[UsageEntry]:
        entries = [
            e for e in self._usage.values() if e.subscriber_id == subscriber_id and not e.pending
        ]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    async def has_billing_event(self, event_id: str) -> bool:
        return event_id in self._billing_events

    async def record_billing_event(self, entry: BillingEventEntry) -> bool:
        if entry.event_id in self._billing_events:
            return False
        self._billing_events[entry.event_id] = entry
        return True

    async def list_billing_references(
        self, limit: int, after: str | None = None
    ) -> list[SubscriberRecord]:
        records = sorted(
            (r for r in self._records.values() if r.billing_reference_id),
            key=lambda r: r.subscriber_id,
        )
        if after is not None:
            records = [r for r in records if r.subscriber_id > after]
        return records[:limit]
