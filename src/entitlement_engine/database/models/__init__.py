"""SQLAlchemy models."""

from entitlement_engine.database.models.base import Base
from entitlement_engine.database.models.entitlements import BillingEvent, Subscriber, UsageRecord

__all__ = [
    "Base",
    "BillingEvent",
    "Subscriber",
    "UsageRecord",
]
