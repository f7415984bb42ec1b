"""Entitlement store backends."""

from entitlement_engine.store.base import EntitlementStore
from entitlement_engine.store.memory import InMemoryEntitlementStore
from entitlement_engine.store.sql import SqlEntitlementStore

__all__ = [
    "EntitlementStore",
    "InMemoryEntitlementStore",
    "SqlEntitlementStore",
]
