"""Subscription entitlement sync and download quota enforcement."""

__version__ = "0.1.0"
