"""Account provisioning: one free subscriber record per account, linked to a Stripe customer."""

import structlog

from entitlement_engine.domain import SubscriberRecord
from entitlement_engine.services.billing_gateway import BillingGateway
from entitlement_engine.store.base import EntitlementStore

logger = structlog.get_logger()


class ProvisioningService:
    """Creates subscriber records and their Stripe customers.

    The record is written first so the account exists even if Stripe is
    unreachable; calling provision again later links the customer. Safe to
    repeat for the same subscriber.
    """

    def __init__(self, store: EntitlementStore, gateway: BillingGateway) -> None:
        self._store = store
        self._gateway = gateway

    async def provision(self, subscriber_id: str, email: str | None = None) -> SubscriberRecord:
        """Provision a subscriber.

        Raises:
            BillingGatewayError: Stripe customer creation failed
            BillingReferenceConflictError: the subscriber is linked elsewhere
        """
        record = await self._store.provision(subscriber_id, email=email)
        if record.billing_reference_id:
            return record

        if not await self._gateway.is_configured():
            logger.warning(
                "Billing gateway not configured; subscriber provisioned without customer",
                subscriber_id=subscriber_id,
            )
            return record

        customer_id = await self._gateway.create_customer(subscriber_id, email=email)
        record = await self._store.attach_billing_reference(subscriber_id, customer_id)
        logger.info(
            "Subscriber linked to billing customer",
            subscriber_id=subscriber_id,
            customer_id=customer_id,
        )
        return record
