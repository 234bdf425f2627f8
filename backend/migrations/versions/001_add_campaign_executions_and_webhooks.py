"""Add campaign execution tracking and webhook event tables.

Revision ID: 001_campaign_relay
Revises:
Create Date: 2026-10-19

Adds:
- campaign_executions: progress of one bulk send per row
- webhook_events: append-only record of inbound provider callbacks
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_campaign_relay"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create campaign_executions and webhook_events."""
    op.create_table(
        "campaign_executions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("campaign_id", sa.Uuid(), nullable=False, comment="Owning campaign"),
        sa.Column(
            "execution_type",
            sa.String(20),
            nullable=False,
            comment="immediate, scheduled, recurring",
        ),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="queued",
            comment="queued, running, paused, completed, failed",
        ),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_count", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint("sent_count >= 0", name="ck_campaign_executions_sent_count"),
        sa.CheckConstraint("failed_count >= 0", name="ck_campaign_executions_failed_count"),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'paused', 'completed', 'failed')",
            name="ck_campaign_executions_status",
        ),
        sa.CheckConstraint(
            "execution_type IN ('immediate', 'scheduled', 'recurring')",
            name="ck_campaign_executions_execution_type",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_campaign_executions_campaign_id", "campaign_executions", ["campaign_id"], unique=False
    )
    op.create_index("ix_campaign_executions_status", "campaign_executions", ["status"], unique=False)
    op.create_index(
        "ix_campaign_executions_created_at", "campaign_executions", ["created_at"], unique=False
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("client_id", sa.String(100), nullable=True, comment="Optional tenant scope"),
        sa.Column(
            "provider",
            sa.String(50),
            nullable=False,
            comment="sendgrid, twilio, segment, ...",
        ),
        sa.Column(
            "event_type",
            sa.String(100),
            nullable=False,
            comment="bounce, delivered, inbound, ...",
        ),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            comment="Opaque provider payload",
        ),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="received",
            comment="received, processed, failed",
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('received', 'processed', 'failed')", name="ck_webhook_events_status"
        ),
        sa.CheckConstraint("retry_count >= 0", name="ck_webhook_events_retry_count"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_events_client_id", "webhook_events", ["client_id"], unique=False)
    op.create_index("ix_webhook_events_provider", "webhook_events", ["provider"], unique=False)
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"], unique=False)
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"], unique=False)
    op.create_index("ix_webhook_events_created_at", "webhook_events", ["created_at"], unique=False)
    op.create_index(
        "ix_webhook_events_status_retry",
        "webhook_events",
        ["status", "retry_count"],
        unique=False,
    )
    op.create_index(
        "ix_webhook_events_provider_event",
        "webhook_events",
        ["provider", "event_type"],
        unique=False,
    )


def downgrade() -> None:
    """Drop campaign_executions and webhook_events."""
    op.drop_index("ix_webhook_events_provider_event", table_name="webhook_events")
    op.drop_index("ix_webhook_events_status_retry", table_name="webhook_events")
    op.drop_index("ix_webhook_events_created_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_status", table_name="webhook_events")
    op.drop_index("ix_webhook_events_event_type", table_name="webhook_events")
    op.drop_index("ix_webhook_events_provider", table_name="webhook_events")
    op.drop_index("ix_webhook_events_client_id", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index("ix_campaign_executions_created_at", table_name="campaign_executions")
    op.drop_index("ix_campaign_executions_status", table_name="campaign_executions")
    op.drop_index("ix_campaign_executions_campaign_id", table_name="campaign_executions")
    op.drop_table("campaign_executions")
