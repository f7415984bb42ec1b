"""Stripe webhook ingestion.

Turns signed Stripe events into billing transitions on the entitlement store.

- Signature failures and unknown subscribers are terminal for the delivery.
- Unrecognized event types are accepted so new Stripe events never fail a
  delivery.
- Payment failures are surfaced to operators and never change entitlement.
- Replays are harmless: the processed-event log short-circuits known event
  ids, and the store ignores equal-or-older event sequences.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import stripe
import structlog

from entitlement_engine.domain import BillingEventEntry
from entitlement_engine.exceptions import StoreUnavailableError, SubscriberNotFoundError
from entitlement_engine.observability import capture_message
from entitlement_engine.services.billing_gateway import BillingGateway, subscription_transition
from entitlement_engine.store.base import EntitlementStore
from entitlement_engine.transitions import BillingTransition

logger = structlog.get_logger()

DEFAULT_INGEST_TIMEOUT_SECONDS = 10.0


class RejectReason(str, Enum):
    """Why a webhook delivery was refused."""

    INVALID_SIGNATURE = "InvalidSignature"
    UNKNOWN_SUBSCRIBER = "UnknownSubscriber"
    MALFORMED_PAYLOAD = "MalformedPayload"


@dataclass(frozen=True)
class IngestResult:
    """Accepted, or Rejected with a reason."""

    accepted: bool
    reason: RejectReason | None = None
    event_id: str | None = None
    event_type: str | None = None
    subscriber_id: str | None = None
    applied: bool = False

    @classmethod
    def rejected(cls, reason: RejectReason, **context: Any) -> "IngestResult":
        return cls(accepted=False, reason=reason, **context)


EventHandler = Callable[["WebhookIngestor", dict[str, Any]], Awaitable[IngestResult]]


class _MalformedEventError(ValueError):
    pass


def _event_object(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise _MalformedEventError("event has no data.object")
    return obj


def _customer_id(obj: dict[str, Any]) -> str | None:
    customer = obj.get("customer")
    # Expanded customers arrive as objects
    if isinstance(customer, dict):
        customer = customer.get("id")
    return customer if isinstance(customer, str) and customer else None


class WebhookIngestor:
    """Applies verified billing events to the entitlement store."""

    def __init__(
        self,
        store: EntitlementStore,
        gateway: BillingGateway,
        timeout: float = DEFAULT_INGEST_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._timeout = timeout

    async def ingest(self, raw_payload: bytes, signature_header: str | None) -> IngestResult:
        """Verify and apply one webhook delivery within the ingest deadline.

        Raises:
            BillingGatewayNotConfiguredError: no webhook secret is provisioned
            TransientStoreConflictError: conflict retries exhausted
            StoreUnavailableError: the deadline passed before the update completed
        """
        try:
            return await asyncio.wait_for(
                self._ingest(raw_payload, signature_header), timeout=self._timeout
            )
        except TimeoutError as e:
            logger.error("Webhook ingestion timed out", timeout=self._timeout)
            raise StoreUnavailableError("webhook ingestion", "timed out") from e

    async def _ingest(self, raw_payload: bytes, signature_header: str | None) -> IngestResult:
        if not signature_header:
            self._alert_invalid_signature("missing signature header")
            return IngestResult.rejected(RejectReason.INVALID_SIGNATURE)

        try:
            event = await self._gateway.verify_webhook(raw_payload, signature_header)
        except stripe.SignatureVerificationError as e:
            self._alert_invalid_signature(str(e))
            return IngestResult.rejected(RejectReason.INVALID_SIGNATURE)
        except ValueError as e:
            logger.warning("Invalid webhook payload", error=str(e))
            return IngestResult.rejected(RejectReason.MALFORMED_PAYLOAD)

        event_id = event.get("id")
        event_type = event.get("type")
        created = event.get("created")
        if not isinstance(event_id, str) or not isinstance(event_type, str):
            logger.warning("Webhook event missing id or type")
            return IngestResult.rejected(RejectReason.MALFORMED_PAYLOAD)
        if not isinstance(created, int) or isinstance(created, bool):
            logger.warning("Webhook event missing created timestamp", event_id=event_id)
            return IngestResult.rejected(
                RejectReason.MALFORMED_PAYLOAD, event_id=event_id, event_type=event_type
            )

        logger.info("Received Stripe webhook", event_type=event_type, event_id=event_id)

        if await self._store.has_billing_event(event_id):
            logger.info(
                "Skipping duplicate webhook event", event_type=event_type, event_id=event_id
            )
            return IngestResult(accepted=True, event_id=event_id, event_type=event_type)

        handler = WEBHOOK_HANDLERS.get(event_type)
        if handler is None:
            logger.debug("Unhandled webhook event", event_type=event_type, event_id=event_id)
            return IngestResult(accepted=True, event_id=event_id, event_type=event_type)

        try:
            result = await handler(self, event)
        except _MalformedEventError as e:
            logger.warning(
                "Malformed webhook event", event_type=event_type, event_id=event_id, error=str(e)
            )
            return IngestResult.rejected(
                RejectReason.MALFORMED_PAYLOAD, event_id=event_id, event_type=event_type
            )

        if result.accepted:
            await self._store.record_billing_event(
                BillingEventEntry(
                    event_id=event_id,
                    event_type=event_type,
                    event_sequence=created,
                    subscriber_id=result.subscriber_id,
                    applied=result.applied,
                )
            )
        return result

    def _alert_invalid_signature(self, error: str) -> None:
        logger.warning("Invalid webhook signature", error=error)
        capture_message(
            "Stripe webhook signature verification failed",
            level="warning",
            tags={"component": "webhook_ingestor"},
            extra={"error": error},
        )

    async def _apply(
        self,
        event: dict[str, Any],
        customer_id: str,
        transition: BillingTransition | None,
    ) -> IngestResult:
        event_id = event["id"]
        event_type = event["type"]

        record = await self._store.get_by_billing_reference(customer_id)
        if record is None:
            logger.warning(
                "No subscriber for Stripe customer",
                customer_id=customer_id,
                event_type=event_type,
                event_id=event_id,
            )
            return IngestResult.rejected(
                RejectReason.UNKNOWN_SUBSCRIBER, event_id=event_id, event_type=event_type
            )

        if transition is None:
            logger.info(
                "Subscription event has no entitlement effect",
                subscriber_id=record.subscriber_id,
                event_type=event_type,
                event_id=event_id,
            )
            return IngestResult(
                accepted=True,
                event_id=event_id,
                event_type=event_type,
                subscriber_id=record.subscriber_id,
            )

        try:
            outcome = await self._store.apply_billing_transition(
                record.subscriber_id, transition, event["created"]
            )
        except SubscriberNotFoundError:
            return IngestResult.rejected(
                RejectReason.UNKNOWN_SUBSCRIBER, event_id=event_id, event_type=event_type
            )

        if outcome.applied:
            logger.info(
                "Billing transition applied",
                subscriber_id=record.subscriber_id,
                transition=transition.kind.value,
                status=outcome.record.subscription_status.value,
                event_id=event_id,
                event_sequence=event["created"],
            )
        else:
            logger.info(
                "Stale billing event ignored",
                subscriber_id=record.subscriber_id,
                event_id=event_id,
                event_sequence=event["created"],
                last_event_sequence=outcome.record.last_event_sequence,
            )

        return IngestResult(
            accepted=True,
            event_id=event_id,
            event_type=event_type,
            subscriber_id=record.subscriber_id,
            applied=outcome.applied,
        )

    async def handle_subscription_changed(self, event: dict[str, Any]) -> IngestResult:
        """customer.subscription.created / customer.subscription.updated"""
        subscription = _event_object(event)
        customer_id = _customer_id(subscription)
        if customer_id is None:
            raise _MalformedEventError("subscription has no customer")
        return await self._apply(event, customer_id, subscription_transition(subscription))

    async def handle_subscription_deleted(self, event: dict[str, Any]) -> IngestResult:
        """customer.subscription.deleted"""
        subscription = _event_object(event)
        customer_id = _customer_id(subscription)
        if customer_id is None:
            raise _MalformedEventError("subscription has no customer")
        return await self._apply(event, customer_id, BillingTransition.cancel())

    async def handle_payment_failed(self, event: dict[str, Any]) -> IngestResult:
        """Surface a failed payment to operators without touching entitlement.

        Subscription status is driven only by subscription lifecycle events;
        if Stripe eventually cancels, the deleted event does the work.
        """
        invoice = _event_object(event)
        customer_id = _customer_id(invoice)
        record = (
            await self._store.get_by_billing_reference(customer_id) if customer_id else None
        )
        subscriber_id = record.subscriber_id if record else None

        logger.warning(
            "Stripe payment failed",
            event_id=event["id"],
            customer_id=customer_id,
            subscriber_id=subscriber_id,
            invoice_id=invoice.get("id"),
            attempt_count=invoice.get("attempt_count"),
            amount_due=invoice.get("amount_due"),
        )
        capture_message(
            "Stripe payment failed",
            level="warning",
            tags={"component": "webhook_ingestor", "event_type": event["type"]},
            extra={
                "customer_id": customer_id,
                "subscriber_id": subscriber_id,
                "invoice_id": invoice.get("id"),
            },
        )
        return IngestResult(
            accepted=True,
            event_id=event["id"],
            event_type=event["type"],
            subscriber_id=subscriber_id,
        )

    async def handle_payment_succeeded(self, event: dict[str, Any]) -> IngestResult:
        invoice = _event_object(event)
        logger.info(
            "Stripe payment succeeded",
            event_id=event["id"],
            customer_id=_customer_id(invoice),
            invoice_id=invoice.get("id"),
        )
        return IngestResult(accepted=True, event_id=event["id"], event_type=event["type"])


WEBHOOK_HANDLERS: dict[str, EventHandler] = {
    "customer.subscription.created": WebhookIngestor.handle_subscription_changed,
    "customer.subscription.updated": WebhookIngestor.handle_subscription_changed,
    "customer.subscription.deleted": WebhookIngestor.handle_subscription_deleted,
    "invoice.payment_failed": WebhookIngestor.handle_payment_failed,
    "invoice.payment_succeeded": WebhookIngestor.handle_payment_succeeded,
    "invoice.paid": WebhookIngestor.handle_payment_succeeded,
}
