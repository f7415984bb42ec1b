"""Subscriber, usage and billing event models."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_engine.database.models.base import Base, _generate_uuid


class Subscriber(Base):
    """Per-subscriber entitlement record."""

    __tablename__ = "subscribers"
    __table_args__ = (
        CheckConstraint("quota_counter >= 0", name="ck_subscribers_quota_counter_non_negative"),
        CheckConstraint(
            "subscription_status IN ('free', 'active', 'canceling', 'canceled')",
            name="ck_subscribers_subscription_status",
        ),
    )

    subscriber_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Stripe customer id, set once
    billing_reference_id: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        index=True,
    )
    email: Mapped[str | None] = mapped_column(String(320))

    subscription_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="free",
        server_default="free",
    )
    # Stripe subscription id while active or canceling
    active_billing_agreement_id: Mapped[str | None] = mapped_column(String(255))
    cancel_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    quota_counter: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_event_sequence: Mapped[int | None] = mapped_column(BigInteger)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class UsageRecord(Base):
    """Append-only ledger entry for a granted download."""

    __tablename__ = "usage_records"
    __table_args__ = (Index("ix_usage_records_subscriber_timestamp", "subscriber_id", "timestamp"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    subscriber_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Client supplied, enforces one ledger entry per request
    request_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    was_free_tier_consumption: Mapped[bool] = mapped_column(Boolean, nullable=False)
    size_or_weight: Mapped[int | None] = mapped_column(BigInteger)
    resource_name: Mapped[str | None] = mapped_column(String(512))
    extra: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class BillingEvent(Base):
    """Processed Stripe event log."""

    __tablename__ = "billing_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)

    # Stripe event ID for idempotency
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    subscriber_id: Mapped[str | None] = mapped_column(String(128), index=True)
    event_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
