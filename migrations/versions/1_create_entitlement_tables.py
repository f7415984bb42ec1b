"""Create subscribers, usage_records and billing_events.

Revision ID: 1
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "1"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "subscribers",
        sa.Column("subscriber_id", sa.String(128), primary_key=True),
        sa.Column("billing_reference_id", sa.String(255), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("subscription_status", sa.String(20), nullable=False, server_default="free"),
        sa.Column("active_billing_agreement_id", sa.String(255), nullable=True),
        sa.Column("cancel_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quota_counter", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_event_sequence", sa.BigInteger, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint(
            "quota_counter >= 0", name="ck_subscribers_quota_counter_non_negative"
        ),
        sa.CheckConstraint(
            "subscription_status IN ('free', 'active', 'canceling', 'canceled')",
            name="ck_subscribers_subscription_status",
        ),
    )
    op.create_index(
        "ix_subscribers_billing_reference_id",
        "subscribers",
        ["billing_reference_id"],
        unique=True,
    )

    op.create_table(
        "usage_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("subscriber_id", sa.String(128), nullable=False),
        sa.Column("request_id", sa.String(128), nullable=False, unique=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("was_free_tier_consumption", sa.Boolean, nullable=False),
        sa.Column("size_or_weight", sa.BigInteger, nullable=True),
        sa.Column("resource_name", sa.String(512), nullable=True),
        sa.Column("extra", postgresql.JSONB, nullable=False),
        sa.Column("pending", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index(
        "ix_usage_records_subscriber_timestamp",
        "usage_records",
        ["subscriber_id", "timestamp"],
    )

    op.create_table(
        "billing_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("subscriber_id", sa.String(128), nullable=True),
        sa.Column("event_sequence", sa.BigInteger, nullable=False),
        sa.Column("applied", sa.Boolean, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_billing_events_event_id", "billing_events", ["event_id"], unique=True)
    op.create_index("ix_billing_events_event_type", "billing_events", ["event_type"])
    op.create_index("ix_billing_events_subscriber_id", "billing_events", ["subscriber_id"])


def downgrade() -> None:
    op.drop_table("billing_events")
    op.drop_index("ix_usage_records_subscriber_timestamp", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_index("ix_subscribers_billing_reference_id", table_name="subscribers")
    op.drop_table("subscribers")
