"""FastAPI dependencies and the service container."""

from dataclasses import dataclass

from fastapi import HTTPException, Request

from entitlement_engine.config import Settings
from entitlement_engine.services.billing_gateway import BillingGateway
from entitlement_engine.services.provisioning import ProvisioningService
from entitlement_engine.services.quota_arbiter import QuotaArbiter
from entitlement_engine.services.usage_recorder import UsageRecorder
from entitlement_engine.services.webhook_ingestor import WebhookIngestor
from entitlement_engine.store.base import EntitlementStore


@dataclass
class EntitlementServices:
    """Wired-up services shared by all requests of one application."""

    store: EntitlementStore
    gateway: BillingGateway
    ingestor: WebhookIngestor
    arbiter: QuotaArbiter
    recorder: UsageRecorder
    provisioning: ProvisioningService
    usage_history_limit: int = 50

    @classmethod
    def build(
        cls,
        store: EntitlementStore,
        gateway: BillingGateway,
        app_settings: Settings,
    ) -> "EntitlementServices":
        return cls(
            store=store,
            gateway=gateway,
            ingestor=WebhookIngestor(store, gateway, timeout=app_settings.WEBHOOK_TIMEOUT_SECONDS),
            arbiter=QuotaArbiter(
                store,
                allowance=app_settings.FREE_TIER_ALLOWANCE,
                timeout=app_settings.QUOTA_TIMEOUT_SECONDS,
            ),
            recorder=UsageRecorder(store),
            provisioning=ProvisioningService(store, gateway),
            usage_history_limit=app_settings.USAGE_HISTORY_LIMIT,
        )


def get_services(request: Request) -> EntitlementServices:
    services: EntitlementServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


def get_current_subscriber_id(request: Request) -> str:
    """Subscriber id set by AuthMiddleware.

    Raises:
        HTTPException: If the request is not authenticated
    """
    subscriber_id = getattr(request.state, "subscriber_id", None)
    if not subscriber_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return str(subscriber_id)
