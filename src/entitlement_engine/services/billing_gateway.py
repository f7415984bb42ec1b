"""Stripe billing gateway client.

The gateway is constructed explicitly and injected into the webhook
ingestor, provisioning and reconciliation. Credentials are resolved once,
on first use, through `initialize()`; concurrent first callers wait on the
same lock instead of resolving twice.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from entitlement_engine.config import Settings
from entitlement_engine.exceptions import BillingGatewayError, BillingGatewayNotConfiguredError
from entitlement_engine.transitions import BillingTransition

logger = structlog.get_logger()

# Stripe statuses that carry an entitlement
ENTITLING_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})

# Stripe statuses that mean the subscription has ended
ENDED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "incomplete_expired"})

DEFAULT_SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class BillingCredentials:
    """Resolved Stripe credentials."""

    secret_key: str | None
    webhook_secret: str | None


CredentialSource = Callable[[], Awaitable[BillingCredentials]]


def settings_credentials(app_settings: Settings) -> CredentialSource:
    """Credential source reading STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET."""

    async def _load() -> BillingCredentials:
        return BillingCredentials(
            secret_key=app_settings.STRIPE_SECRET_KEY,
            webhook_secret=app_settings.STRIPE_WEBHOOK_SECRET,
        )

    return _load


def _from_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _current_period_end(subscription: Mapping[str, Any]) -> datetime | None:
    # Newer API versions moved the period onto subscription items
    period_end = subscription.get("current_period_end")
    if period_end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _from_timestamp(period_end)


def subscription_transition(
    subscription: Mapping[str, Any],
    now: datetime | None = None,
) -> BillingTransition | None:
    """Map a Stripe subscription object to a local transition.

    Returns None when the provider status has no local meaning (past_due,
    incomplete, unpaid, paused): the record is left as it is.
    """
    now = now or datetime.now(UTC)
    status = subscription.get("status")
    subscription_id = subscription.get("id")

    if status in ENDED_SUBSCRIPTION_STATUSES:
        return BillingTransition.cancel()
    if status not in ENTITLING_SUBSCRIPTION_STATUSES or not subscription_id:
        return None

    cancel_at = _from_timestamp(subscription.get("cancel_at"))
    if cancel_at is None and subscription.get("cancel_at_period_end"):
        cancel_at = _current_period_end(subscription)

    if cancel_at is not None and cancel_at > now:
        return BillingTransition.schedule_cancellation(subscription_id, cancel_at)
    return BillingTransition.activate(subscription_id)


class BillingGateway:
    """Thin async wrapper over the Stripe API for one set of credentials."""

    def __init__(
        self,
        credential_source: CredentialSource,
        signature_tolerance: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
        request_timeout: float = 10.0,
    ) -> None:
        self._credential_source = credential_source
        self._signature_tolerance = signature_tolerance
        self._request_timeout = request_timeout
        self._credentials: BillingCredentials | None = None
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, app_settings: Settings) -> "BillingGateway":
        return cls(
            settings_credentials(app_settings),
            request_timeout=app_settings.STRIPE_API_TIMEOUT_SECONDS,
        )

    @property
    def initialized(self) -> bool:
        return self._credentials is not None

    async def initialize(self) -> BillingCredentials:
        """Resolve credentials exactly once."""
        if self._credentials is not None:
            return self._credentials

        async with self._init_lock:
            if self._credentials is None:
                credentials = await self._credential_source()
                self._credentials = credentials
                logger.info(
                    "Billing gateway initialized",
                    has_secret_key=bool(credentials.secret_key),
                    has_webhook_secret=bool(credentials.webhook_secret),
                )
        return self._credentials

    async def _secret_key(self) -> str:
        credentials = await self.initialize()
        if not credentials.secret_key:
            raise BillingGatewayNotConfiguredError("STRIPE_SECRET_KEY")
        return credentials.secret_key

    async def is_configured(self) -> bool:
        credentials = await self.initialize()
        return bool(credentials.secret_key)

    async def verify_webhook(self, payload: bytes, signature_header: str) -> dict[str, Any]:
        """Verify a webhook signature and decode the event.

        Raises:
            BillingGatewayNotConfiguredError: no webhook secret
            stripe.SignatureVerificationError: signature mismatch or stale timestamp
            ValueError: payload is not a JSON object
        """
        credentials = await self.initialize()
        if not credentials.webhook_secret:
            raise BillingGatewayNotConfiguredError("STRIPE_WEBHOOK_SECRET")

        text = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            text,
            signature_header,
            credentials.webhook_secret,
            tolerance=self._signature_tolerance,
        )
        event = json.loads(text)
        if not isinstance(event, dict):
            raise ValueError("Webhook payload is not a JSON object")  # noqa: TRY003, TRY004
        return event

    async def _call(self, operation: str, func: Callable[..., Any], **params: Any) -> Any:
        api_key = await self._secret_key()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, api_key=api_key, **params),
                timeout=self._request_timeout,
            )
        except TimeoutError as e:
            raise BillingGatewayError(f"Stripe {operation} timed out", code="timeout") from e
        except stripe.StripeError as e:
            logger.warning("Stripe call failed", operation=operation, error=str(e))
            raise BillingGatewayError(
                f"Stripe {operation} failed: {e.user_message or e}", code=e.code
            ) from e

    async def create_customer(self, subscriber_id: str, email: str | None = None) -> str:
        """Create a Stripe customer for a subscriber and return its id."""
        params: dict[str, Any] = {"metadata": {"subscriber_id": subscriber_id}}
        if email:
            params["email"] = email
        customer = await self._call("customer.create", stripe.Customer.create, **params)
        logger.info("Stripe customer created", subscriber_id=subscriber_id, customer_id=customer.id)
        return str(customer.id)

    async def list_subscriptions(self, customer_id: str) -> list[dict[str, Any]]:
        """All of a customer's subscriptions as plain dicts, newest first."""
        result = await self._call(
            "subscription.list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=20,
        )
        subscriptions = [sub.to_dict() for sub in result.data]
        subscriptions.sort(key=lambda sub: sub.get("created") or 0, reverse=True)
        return subscriptions
