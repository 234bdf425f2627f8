"""SQLAlchemy models."""

from app.models.campaign_execution import (
    EXECUTION_TRANSITIONS,
    CampaignExecution,
    ExecutionStatus,
    ExecutionType,
)
from app.models.webhook_event import WebhookEvent, WebhookStatus

__all__ = [
    "EXECUTION_TRANSITIONS",
    "CampaignExecution",
    "ExecutionStatus",
    "ExecutionType",
    "WebhookEvent",
    "WebhookStatus",
]
