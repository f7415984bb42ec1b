"""Entitlement store interface."""

from abc import ABC, abstractmethod

from entitlement_engine.domain import (
    BillingEventEntry,
    QuotaConsumption,
    SubscriberRecord,
    TransitionResult,
    UsageEntry,
)
from entitlement_engine.transitions import BillingTransition

DEFAULT_CONFLICT_RETRIES = 5


class EntitlementStore(ABC):
    """Durable keyed storage of subscriber records.

    The two mutating entitlement operations are atomic per subscriber and never
    span more than one key:

    - apply_billing_transition is an optimistic conditional update keyed on
      last_event_sequence, retried on conflict up to `conflict_retries` times
      before raising TransientStoreConflictError.
    - try_consume_quota is a single conditional increment that only succeeds
      while the counter is below the allowance.
    """

    def __init__(self, conflict_retries: int = DEFAULT_CONFLICT_RETRIES) -> None:
        self.conflict_retries = conflict_retries

    @abstractmethod
    async def get(self, subscriber_id: str) -> SubscriberRecord | None:
        """Fetch a subscriber record, None if it does not exist."""

    @abstractmethod
    async def get_by_billing_reference(self, billing_reference_id: str) -> SubscriberRecord | None:
        """Resolve a subscriber through the billing reference index."""

    @abstractmethod
    async def provision(
        self,
        subscriber_id: str,
        billing_reference_id: str | None = None,
        email: str | None = None,
    ) -> SubscriberRecord:
        """Create a free subscriber record, or return the existing one unchanged."""

    @abstractmethod
    async def attach_billing_reference(
        self, subscriber_id: str, billing_reference_id: str
    ) -> SubscriberRecord:
        """Set the billing reference if absent.

        Raises:
            SubscriberNotFoundError: no record for subscriber_id
            BillingReferenceConflictError: a different reference is already set
        """

    @abstractmethod
    async def apply_billing_transition(
        self,
        subscriber_id: str,
        transition: BillingTransition,
        event_sequence: int,
    ) -> TransitionResult:
        """Apply a billing transition unless the event sequence is stale.

        Raises:
            SubscriberNotFoundError: no record for subscriber_id
            TransientStoreConflictError: retries exhausted
        """

    @abstractmethod
    async def try_consume_quota(self, subscriber_id: str, allowance: int) -> QuotaConsumption:
        """Atomically consume one unit of free allowance."""

    @abstractmethod
    async def claim_usage(self, subscriber_id: str, request_id: str) -> bool:
        """Reserve a request id with a pending entry before quota is consumed.

        Returns False if the request id is already claimed or recorded.
        """

    @abstractmethod
    async def release_usage_claim(self, subscriber_id: str, request_id: str) -> None:
        """Drop a pending claim whose request was not granted."""

    @abstractmethod
    async def append_usage(self, entry: UsageEntry) -> bool:
        """Record a granted usage entry, completing this subscriber's pending claim if any.

        Returns False if the request id is already recorded or claimed by
        another subscriber.
        """

    @abstractmethod
    async def get_usage(self, request_id: str) -> UsageEntry | None:
        """Look up a usage entry by request id."""

    @abstractmethod
    async def list_usage(self, subscriber_id: str, limit: int = 50) -> list[UsageEntry]:
        """Most recent granted usage entries for a subscriber, newest first."""

    @abstractmethod
    async def has_billing_event(self, event_id: str) -> bool:
        """True if this billing event id was already processed."""

    @abstractmethod
    async def record_billing_event(self, entry: BillingEventEntry) -> bool:
        """Log a processed billing event. Returns False if already logged."""

    @abstractmethod
    async def list_billing_references(
        self, limit: int, after: str | None = None
    ) -> list[SubscriberRecord]:
        """Page through subscribers that have a billing reference, ordered by id."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""
