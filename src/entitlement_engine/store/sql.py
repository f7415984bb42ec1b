"""SQLAlchemy-backed entitlement store."""

from datetime import UTC, datetime

import structlog
from sqlalchemy import ColumnElement, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_engine.database.connection import session_scope
from entitlement_engine.database.models import BillingEvent, Subscriber, UsageRecord
from entitlement_engine.domain import (
    QUOTA_ENFORCED_STATUSES,
    BillingEventEntry,
    QuotaConsumption,
    SubscriberRecord,
    SubscriptionStatus,
    TransitionResult,
    UsageEntry,
)
from entitlement_engine.exceptions import (
    BillingReferenceConflictError,
    SubscriberNotFoundError,
    TransientStoreConflictError,
)
from entitlement_engine.store.base import DEFAULT_CONFLICT_RETRIES, EntitlementStore
from entitlement_engine.transitions import (
    BillingTransition,
    TransitionKind,
    apply_transition,
    is_stale,
)

logger = structlog.get_logger()

_ENFORCED_STATUS_VALUES = sorted(status.value for status in QUOTA_ENFORCED_STATUSES)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _to_record(row: Subscriber) -> SubscriberRecord:
    return SubscriberRecord(
        subscriber_id=row.subscriber_id,
        subscription_status=SubscriptionStatus(row.subscription_status),
        billing_reference_id=row.billing_reference_id,
        active_billing_agreement_id=row.active_billing_agreement_id,
        cancel_at=_as_utc(row.cancel_at),
        quota_counter=row.quota_counter,
        last_event_sequence=row.last_event_sequence,
        updated_at=_as_utc(row.updated_at),
        created_at=_as_utc(row.created_at),
        email=row.email,
    )


def _to_usage_entry(row: UsageRecord) -> UsageEntry:
    return UsageEntry(
        subscriber_id=row.subscriber_id,
        request_id=row.request_id,
        timestamp=_as_utc(row.timestamp) or row.timestamp,
        was_free_tier_consumption=row.was_free_tier_consumption,
        size_or_weight=row.size_or_weight,
        resource_name=row.resource_name,
        extra=dict(row.extra or {}),
        pending=row.pending,
    )


def _sequence_matches(expected: int | None) -> ColumnElement[bool]:
    if expected is None:
        return Subscriber.last_event_sequence.is_(None)
    return Subscriber.last_event_sequence == expected


class SqlEntitlementStore(EntitlementStore):
    """Entitlement store on a relational database.

    Every operation runs in its own short transaction. The atomic operations
    are single conditional UPDATE statements, so correctness does not depend
    on isolation level or on any in-process lock.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        conflict_retries: int = DEFAULT_CONFLICT_RETRIES,
    ) -> None:
        super().__init__(conflict_retries=conflict_retries)
        self._session_factory = session_factory

    async def get(self, subscriber_id: str) -> SubscriberRecord | None:
        async with self._session_factory() as db:
            row = await db.get(Subscriber, subscriber_id)
            return _to_record(row) if row else None

    async def get_by_billing_reference(self, billing_reference_id: str) -> SubscriberRecord | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subscriber).where(Subscriber.billing_reference_id == billing_reference_id)
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row else None

    async def provision(
        self,
        subscriber_id: str,
        billing_reference_id: str | None = None,
        email: str | None = None,
    ) -> SubscriberRecord:
        existing = await self.get(subscriber_id)
        if existing:
            return existing

        now = datetime.now(UTC)
        row = Subscriber(
            subscriber_id=subscriber_id,
            billing_reference_id=billing_reference_id,
            email=email,
            subscription_status=SubscriptionStatus.FREE.value,
            quota_counter=0,
            created_at=now,
            updated_at=now,
        )
        try:
            async with session_scope(self._session_factory) as db:
                db.add(row)
        except IntegrityError:
            # Lost a provisioning race, or the billing reference is taken
            existing = await self.get(subscriber_id)
            if existing:
                return existing
            raise BillingReferenceConflictError(
                subscriber_id, billing_reference_id or ""
            ) from None

        logger.info("Subscriber provisioned", subscriber_id=subscriber_id)
        return _to_record(row)

    async def attach_billing_reference(
        self, subscriber_id: str, billing_reference_id: str
    ) -> SubscriberRecord:
        stmt = (
            update(Subscriber)
            .where(
                Subscriber.subscriber_id == subscriber_id,
                Subscriber.billing_reference_id.is_(None),
            )
            .values(billing_reference_id=billing_reference_id, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        try:
            async with session_scope(self._session_factory) as db:
                await db.execute(stmt)
        except IntegrityError:
            raise BillingReferenceConflictError(subscriber_id, billing_reference_id) from None

        record = await self.get(subscriber_id)
        if record is None:
            raise SubscriberNotFoundError(subscriber_id)
        if record.billing_reference_id != billing_reference_id:
            raise BillingReferenceConflictError(subscriber_id, billing_reference_id)
        return record

    async def apply_billing_transition(
        self,
        subscriber_id: str,
        transition: BillingTransition,
        event_sequence: int,
    ) -> TransitionResult:
        for attempt in range(1, self.conflict_retries + 1):
            current = await self.get(subscriber_id)
            if current is None:
                raise SubscriberNotFoundError(subscriber_id)
            if is_stale(current, event_sequence):
                return TransitionResult(record=current, applied=False)

            target = apply_transition(current, transition, event_sequence)
            values: dict[str, object] = {
                "subscription_status": target.subscription_status.value,
                "active_billing_agreement_id": target.active_billing_agreement_id,
                "cancel_at": target.cancel_at,
                "last_event_sequence": event_sequence,
                "updated_at": target.updated_at,
            }
            # The counter belongs to the quota path except on cancel, which resets it
            if transition.kind is TransitionKind.CANCEL:
                values["quota_counter"] = 0

            stmt = (
                update(Subscriber)
                .where(
                    Subscriber.subscriber_id == subscriber_id,
                    _sequence_matches(current.last_event_sequence),
                )
                .values(**values)
                .returning(Subscriber)
                .execution_options(synchronize_session=False)
            )
            async with session_scope(self._session_factory) as db:
                result = await db.execute(stmt)
                row = result.scalar_one_or_none()
                record = _to_record(row) if row else None

            if record is not None:
                return TransitionResult(record=record, applied=True)

            logger.debug(
                "Billing transition lost a concurrent update, retrying",
                subscriber_id=subscriber_id,
                attempt=attempt,
                event_sequence=event_sequence,
            )

        raise TransientStoreConflictError(subscriber_id, self.conflict_retries)

    async def try_consume_quota(self, subscriber_id: str, allowance: int) -> QuotaConsumption:
        stmt = (
            update(Subscriber)
            .where(
                Subscriber.subscriber_id == subscriber_id,
                Subscriber.subscription_status.in_(_ENFORCED_STATUS_VALUES),
                Subscriber.quota_counter < allowance,
            )
            .values(
                quota_counter=Subscriber.quota_counter + 1,
                updated_at=datetime.now(UTC),
            )
            .returning(Subscriber.quota_counter)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as db:
            result = await db.execute(stmt)
            new_counter = result.scalar_one_or_none()

        if new_counter is None:
            return QuotaConsumption(granted=False, remaining=0)
        return QuotaConsumption(granted=True, remaining=max(allowance - new_counter, 0))

    async def claim_usage(self, subscriber_id: str, request_id: str) -> bool:
        row = UsageRecord(
            subscriber_id=subscriber_id,
            request_id=request_id,
            timestamp=datetime.now(UTC),
            was_free_tier_consumption=False,
            extra={},
            pending=True,
        )
        try:
            async with session_scope(self._session_factory) as db:
                db.add(row)
        except IntegrityError:
            return False
        return True

    async def release_usage_claim(self, subscriber_id: str, request_id: str) -> None:
        stmt = (
            delete(UsageRecord)
            .where(
                UsageRecord.request_id == request_id,
                UsageRecord.subscriber_id == subscriber_id,
                UsageRecord.pending.is_(True),
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as db:
            await db.execute(stmt)

    async def append_usage(self, entry: UsageEntry) -> bool:
        complete_claim = (
            update(UsageRecord)
            .where(
                UsageRecord.request_id == entry.request_id,
                UsageRecord.subscriber_id == entry.subscriber_id,
                UsageRecord.pending.is_(True),
            )
            .values(
                timestamp=entry.timestamp,
                was_free_tier_consumption=entry.was_free_tier_consumption,
                size_or_weight=entry.size_or_weight,
                resource_name=entry.resource_name,
                extra=dict(entry.extra),
                pending=False,
            )
            .returning(UsageRecord.id)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as db:
            result = await db.execute(complete_claim)
            completed = result.scalar_one_or_none()
        if completed is not None:
            return True

        row = UsageRecord(
            subscriber_id=entry.subscriber_id,
            request_id=entry.request_id,
            timestamp=entry.timestamp,
            was_free_tier_consumption=entry.was_free_tier_consumption,
            size_or_weight=entry.size_or_weight,
            resource_name=entry.resource_name,
            extra=dict(entry.extra),
        )
        try:
            async with session_scope(self._session_factory) as db:
                db.add(row)
        except IntegrityError:
            return False
        return True

    async def get_usage(self, request_id: str) -> UsageEntry | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(UsageRecord).where(UsageRecord.request_id == request_id)
            )
            row = result.scalar_one_or_none()
            return _to_usage_entry(row) if row else None

    async def list_usage(self, subscriber_id: str, limit: int = 50) -> list[UsageEntry]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(UsageRecord)
                .where(
                    UsageRecord.subscriber_id == subscriber_id,
                    UsageRecord.pending.is_(False),
                )
                .order_by(UsageRecord.timestamp.desc())
                .limit(limit)
            )
            return [_to_usage_entry(row) for row in result.scalars().all()]

    async def has_billing_event(self, event_id: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(BillingEvent.id).where(BillingEvent.event_id == event_id)
            )
            return result.scalar_one_or_none() is not None

    async def record_billing_event(self, entry: BillingEventEntry) -> bool:
        row = BillingEvent(
            event_id=entry.event_id,
            event_type=entry.event_type,
            subscriber_id=entry.subscriber_id,
            event_sequence=entry.event_sequence,
            applied=entry.applied,
            created_at=datetime.now(UTC),
        )
        try:
            async with session_scope(self._session_factory) as db:
                db.add(row)
        except IntegrityError:
            return False
        return True

    async def list_billing_references(
        self, limit: int, after: str | None = None
    ) -> list[SubscriberRecord]:
        query = select(Subscriber).where(Subscriber.billing_reference_id.is_not(None))
        if after is not None:
            query = query.where(Subscriber.subscriber_id > after)
        query = query.order_by(Subscriber.subscriber_id).limit(limit)

        async with self._session_factory() as db:
            result = await db.execute(query)
            return [_to_record(row) for row in result.scalars().all()]
