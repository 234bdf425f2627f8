"""Inbound provider webhook events (append-only audit trail)."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType, utcnow


class WebhookStatus(str, Enum):
    """Processing status of a recorded webhook."""

    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """A recorded delivery of a provider callback.

    Duplicate deliveries are stored as separate rows; records are never deleted.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_status_retry", "status", "retry_count"),
        Index("ix_webhook_events_provider_event", "provider", "event_type"),
        CheckConstraint(
            "status IN ('received', 'processed', 'failed')", name="ck_webhook_events_status"
        ),
        CheckConstraint("retry_count >= 0", name="ck_webhook_events_retry_count"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    client_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Optional tenant scope",
    )

    # Envelope
    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="sendgrid, twilio, segment, ...",
    )
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="bounce, delivered, inbound, ...",
    )
    payload: Mapped[Any] = mapped_column(
        JSONType,
        nullable=False,
        comment="Opaque provider payload",
    )

    # Processing
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=WebhookStatus.RECEIVED.value,
        index=True,
        comment="received, processed, failed",
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<WebhookEvent {self.id} - {self.provider} {self.event_type} ({self.status})>"
