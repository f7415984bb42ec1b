"""Entitlement services."""

from entitlement_engine.services.billing_gateway import BillingGateway
from entitlement_engine.services.provisioning import ProvisioningService
from entitlement_engine.services.quota_arbiter import DenialReason, Permit, QuotaArbiter
from entitlement_engine.services.reconciliation import ReconciliationJob, ReconciliationReport
from entitlement_engine.services.usage_recorder import RecordResult, UsageRecorder
from entitlement_engine.services.webhook_ingestor import IngestResult, RejectReason, WebhookIngestor

__all__ = [
    "BillingGateway",
    "DenialReason",
    "IngestResult",
    "Permit",
    "ProvisioningService",
    "QuotaArbiter",
    "ReconciliationJob",
    "ReconciliationReport",
    "RecordResult",
    "RejectReason",
    "UsageRecorder",
    "WebhookIngestor",
]
