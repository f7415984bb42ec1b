"""Database module for the entitlement service."""

from entitlement_engine.database.connection import (
    close_database,
    create_engine,
    create_session_factory,
    init_database,
    session_scope,
)
from entitlement_engine.database.models import Base, BillingEvent, Subscriber, UsageRecord

__all__ = [
    "Base",
    "BillingEvent",
    "Subscriber",
    "UsageRecord",
    "close_database",
    "create_engine",
    "create_session_factory",
    "init_database",
    "session_scope",
]
