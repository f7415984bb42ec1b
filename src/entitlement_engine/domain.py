"""Domain types shared by the store, the services and the routes."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Sentinel for "no quota limit"; also what the download API reports to clients
UNLIMITED = -1


class SubscriptionStatus(str, Enum):
    """Local subscription status."""

    FREE = "free"
    ACTIVE = "active"
    CANCELING = "canceling"
    CANCELED = "canceled"


# Statuses where the free allowance is enforced
QUOTA_ENFORCED_STATUSES = frozenset({SubscriptionStatus.FREE, SubscriptionStatus.CANCELED})

# Statuses backed by a live billing agreement
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELING})


@dataclass(frozen=True)
class SubscriberRecord:
    """Snapshot of a subscriber's entitlement state."""

    subscriber_id: str
    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE
    billing_reference_id: str | None = None
    active_billing_agreement_id: str | None = None
    cancel_at: datetime | None = None
    quota_counter: int = 0
    last_event_sequence: int | None = None
    updated_at: datetime | None = None
    created_at: datetime | None = None
    email: str | None = None

    @property
    def has_unlimited_quota(self) -> bool:
        return self.subscription_status in ENTITLED_STATUSES


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of applying a billing transition."""

    record: SubscriberRecord
    applied: bool


@dataclass(frozen=True)
class QuotaConsumption:
    """Outcome of a conditional quota increment."""

    granted: bool
    remaining: int


@dataclass(frozen=True)
class UsageEntry:
    """One immutable usage ledger entry."""

    subscriber_id: str
    request_id: str
    timestamp: datetime
    was_free_tier_consumption: bool
    size_or_weight: int | None = None
    resource_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    # Claimed by an in-flight request, not yet a granted download
    pending: bool = False


@dataclass(frozen=True)
class BillingEventEntry:
    """Processed billing event, kept for replay short-circuit and audit."""

    event_id: str
    event_type: str
    event_sequence: int
    subscriber_id: str | None = None
    applied: bool = False
