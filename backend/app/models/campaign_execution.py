"""Campaign execution model: one tracked bulk send for a campaign."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class ExecutionType(str, Enum):
    """How the execution was triggered."""

    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"


class ExecutionStatus(str, Enum):
    """Campaign execution lifecycle status."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Completed and failed executions never change status again."""
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


# Allowed source states for each target status. Re-entering the current
# non-terminal status is a no-op transition.
EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.QUEUED, ExecutionStatus.PAUSED, ExecutionStatus.RUNNING}
    ),
    ExecutionStatus.PAUSED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.PAUSED}),
    ExecutionStatus.COMPLETED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.PAUSED}),
    ExecutionStatus.FAILED: frozenset(
        {ExecutionStatus.QUEUED, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED}
    ),
}


class CampaignExecution(Base, TimestampMixin):
    """Progress of one bulk send.

    Counters only move through deltas applied by the database so parallel
    senders never overwrite each other.
    """

    __tablename__ = "campaign_executions"
    __table_args__ = (
        CheckConstraint("sent_count >= 0", name="ck_campaign_executions_sent_count"),
        CheckConstraint("failed_count >= 0", name="ck_campaign_executions_failed_count"),
        CheckConstraint(
            "status IN ('queued', 'running', 'paused', 'completed', 'failed')",
            name="ck_campaign_executions_status",
        ),
        CheckConstraint(
            "execution_type IN ('immediate', 'scheduled', 'recurring')",
            name="ck_campaign_executions_execution_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
        comment="Owning campaign",
    )
    execution_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="immediate, scheduled, recurring",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ExecutionStatus.QUEUED.value,
        index=True,
        comment="queued, running, paused, completed, failed",
    )

    # Progress counters
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def status_enum(self) -> ExecutionStatus:
        """Status as an enum member."""
        return ExecutionStatus(self.status)

    @property
    def processed_count(self) -> int:
        """Messages attempted so far."""
        return self.sent_count + self.failed_count

    @property
    def progress_percent(self) -> float | None:
        """Share of target_count attempted, when a target is known."""
        if not self.target_count:
            return None
        return round(min(self.processed_count / self.target_count, 1.0) * 100, 1)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<CampaignExecution {self.id} ({self.status}) "
            f"sent={self.sent_count} failed={self.failed_count}>"
        )
