"""Subscription state machine.

Billing transitions are pure functions of the current record. Stores call
`apply_transition` inside their atomic update so the same rules hold for
every backend:

- activate: status becomes active, the agreement id is set and any
  scheduled cancellation is cleared.
- schedule_cancellation: status becomes canceling with the given cancel_at.
- cancel: status becomes canceled, agreement and cancel_at are cleared and
  the free allowance restarts (quota counter back to 0).

An event whose sequence is equal to or older than the record's
last_event_sequence is stale and must not change anything.
"""

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum

from entitlement_engine.domain import SubscriberRecord, SubscriptionStatus


class TransitionKind(str, Enum):
    """Kinds of billing-driven state changes."""

    ACTIVATE = "activate"
    SCHEDULE_CANCELLATION = "schedule_cancellation"
    CANCEL = "cancel"


@dataclass(frozen=True)
class BillingTransition:
    """A requested change to a subscriber's billing-owned fields."""

    kind: TransitionKind
    billing_agreement_id: str | None = None
    cancel_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.kind is TransitionKind.SCHEDULE_CANCELLATION and self.cancel_at is None:
            raise ValueError("schedule_cancellation requires cancel_at")  # noqa: TRY003
        if self.kind is not TransitionKind.CANCEL and not self.billing_agreement_id:
            raise ValueError(f"{self.kind.value} requires a billing agreement id")  # noqa: TRY003

    @classmethod
    def activate(cls, billing_agreement_id: str) -> "BillingTransition":
        return cls(TransitionKind.ACTIVATE, billing_agreement_id=billing_agreement_id)

    @classmethod
    def schedule_cancellation(
        cls, billing_agreement_id: str, cancel_at: datetime
    ) -> "BillingTransition":
        return cls(
            TransitionKind.SCHEDULE_CANCELLATION,
            billing_agreement_id=billing_agreement_id,
            cancel_at=cancel_at,
        )

    @classmethod
    def cancel(cls) -> "BillingTransition":
        return cls(TransitionKind.CANCEL)

    @property
    def target_status(self) -> SubscriptionStatus:
        return _TARGET_STATUS[self.kind]


_TARGET_STATUS = {
    TransitionKind.ACTIVATE: SubscriptionStatus.ACTIVE,
    TransitionKind.SCHEDULE_CANCELLATION: SubscriptionStatus.CANCELING,
    TransitionKind.CANCEL: SubscriptionStatus.CANCELED,
}


def is_stale(record: SubscriberRecord, event_sequence: int) -> bool:
    """True if the record already reflects an event at or after this sequence."""
    return record.last_event_sequence is not None and event_sequence <= record.last_event_sequence


def apply_transition(
    record: SubscriberRecord,
    transition: BillingTransition,
    event_sequence: int,
    now: datetime | None = None,
) -> SubscriberRecord:
    """Return the record after applying the transition.

    The caller is responsible for checking staleness first.
    """
    now = now or datetime.now(UTC)

    if transition.kind is TransitionKind.CANCEL:
        return replace(
            record,
            subscription_status=SubscriptionStatus.CANCELED,
            active_billing_agreement_id=None,
            cancel_at=None,
            quota_counter=0,
            last_event_sequence=event_sequence,
            updated_at=now,
        )

    return replace(
        record,
        subscription_status=transition.target_status,
        active_billing_agreement_id=transition.billing_agreement_id,
        cancel_at=transition.cancel_at,
        last_event_sequence=event_sequence,
        updated_at=now,
    )
