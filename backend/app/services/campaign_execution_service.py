"""Campaign execution state machine.

Tracks the progress of one bulk send:

    queued -> running -> completed | failed
    running <-> paused

Counter updates are deltas applied by the database (``col = col + :delta``)
so parallel senders never lose increments. Status changes are conditional
updates on the current status, which makes them a per-record
compare-and-swap; once an execution is terminal its status never changes
again, although late counter deltas still land.
"""

import uuid
from dataclasses import asdict, dataclass
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    StoreConflictError,
    ValidationError,
)
from app.db.base import utcnow
from app.models.campaign_execution import (
    EXECUTION_TRANSITIONS,
    CampaignExecution,
    ExecutionStatus,
    ExecutionType,
)

logger = structlog.get_logger()

DEFAULT_RECENT_LIMIT = 20
_STATUS_VALUES = frozenset(s.value for s in ExecutionStatus)


@dataclass
class ExecutionStats:
    """Aggregate view over a set of executions."""

    total: int = 0
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    total_sent: int = 0
    total_failed: int = 0

    def to_dict(self) -> dict[str, int]:
        """Plain dict for API responses and notifier snapshots."""
        return asdict(self)


def _coerce_status(status: ExecutionStatus | str) -> ExecutionStatus:
    try:
        return ExecutionStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown execution status: {status!r}", field="status") from None


def _check_delta(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Counter delta must be an integer", field=name)
    if value < 0:
        raise ValidationError("Counter delta cannot be negative", field=name)
    return value


class CampaignExecutionService:
    """Create, advance and query campaign executions."""

    def __init__(self, conflict_retries: int | None = None) -> None:
        """Initialize the service.

        Args:
            conflict_retries: Attempts at a status compare-and-swap before
                giving up with StoreConflictError
        """
        self.conflict_retries = (
            settings.STORE_CONFLICT_RETRIES if conflict_retries is None else conflict_retries
        )
        if self.conflict_retries < 1:
            raise ValidationError("conflict_retries must be at least 1", field="conflict_retries")
        self.logger = logger.bind(component="campaign_execution")

    async def create_execution(
        self,
        db: AsyncSession,
        campaign_id: uuid.UUID,
        execution_type: ExecutionType | str,
        target_count: int | None = None,
    ) -> CampaignExecution:
        """Insert a queued execution with zeroed counters.

        Raises:
            ValidationError: Unknown execution type or negative target
        """
        try:
            exec_type = ExecutionType(execution_type)
        except ValueError:
            raise ValidationError(
                f"Unknown execution type: {execution_type!r}", field="execution_type"
            ) from None
        if target_count is not None and target_count < 0:
            raise ValidationError("Target count cannot be negative", field="target_count")

        now = utcnow()
        execution = CampaignExecution(
            id=uuid.uuid4(),
            campaign_id=campaign_id,
            execution_type=exec_type.value,
            status=ExecutionStatus.QUEUED.value,
            sent_count=0,
            failed_count=0,
            target_count=target_count,
            created_at=now,
            updated_at=now,
        )
        db.add(execution)
        await db.commit()

        self.logger.info(
            "execution_created",
            execution_id=str(execution.id),
            campaign_id=str(campaign_id),
            execution_type=exec_type.value,
            target_count=target_count,
        )
        return execution

    async def update_execution_progress(
        self,
        db: AsyncSession,
        execution_id: uuid.UUID,
        sent_delta: int = 0,
        failed_delta: int = 0,
        status: ExecutionStatus | str | None = None,
        error_message: str | None = None,
    ) -> CampaignExecution:
        """Apply counter deltas and an optional status transition atomically.

        Moving to ``running`` stamps ``started_at`` only if it is unset;
        moving to ``completed`` stamps ``completed_at``. A status change
        requested on a terminal execution is ignored while its counter
        deltas still apply.

        Raises:
            ValidationError: Negative or non-integer delta, unknown status
            InvalidTransitionError: Transition not allowed from the current status
            NotFoundError: No such execution
            StoreConflictError: Status kept changing underneath the update
        """
        sent_delta = _check_delta("sent_delta", sent_delta)
        failed_delta = _check_delta("failed_delta", failed_delta)

        now = utcnow()
        counter_values: dict[str, Any] = {"updated_at": now}
        if sent_delta:
            counter_values["sent_count"] = CampaignExecution.sent_count + sent_delta
        if failed_delta:
            counter_values["failed_count"] = CampaignExecution.failed_count + failed_delta

        log = self.logger.bind(execution_id=str(execution_id))

        if status is None:
            values = dict(counter_values)
            if error_message is not None:
                values["error_message"] = error_message
            if not await self._apply(db, execution_id, values):
                # No row changed. rollback() would expire the caller's loaded objects.
                await db.commit()
                raise NotFoundError("CampaignExecution", execution_id)
            await db.commit()
            return await self._reload(db, execution_id)

        target = _coerce_status(status)
        if target == ExecutionStatus.QUEUED:
            raise ValidationError("Executions cannot return to queued", field="status")

        values = dict(counter_values, status=target.value)
        if error_message is not None:
            values["error_message"] = error_message
        if target == ExecutionStatus.RUNNING:
            values["started_at"] = func.coalesce(CampaignExecution.started_at, now)
        elif target == ExecutionStatus.COMPLETED:
            values["completed_at"] = now

        sources = [s.value for s in EXECUTION_TRANSITIONS[target]]

        for attempt in range(1, self.conflict_retries + 1):
            if await self._apply(db, execution_id, values, status_in=sources):
                await db.commit()
                log.info(
                    "execution_status_changed",
                    status=target.value,
                    sent_delta=sent_delta,
                    failed_delta=failed_delta,
                )
                return await self._reload(db, execution_id)

            current = await db.scalar(
                select(CampaignExecution.status).where(CampaignExecution.id == execution_id)
            )
            if current is None:
                await db.commit()
                raise NotFoundError("CampaignExecution", execution_id)

            current_status = ExecutionStatus(current)
            if current_status.is_terminal:
                log.warning(
                    "execution_status_change_ignored",
                    current=current_status.value,
                    requested=target.value,
                )
                await self._apply(db, execution_id, counter_values)
                await db.commit()
                return await self._reload(db, execution_id)

            if current_status.value not in sources:
                await db.commit()
                raise InvalidTransitionError(
                    "CampaignExecution", execution_id, current_status.value, target.value
                )

            # Status moved into an allowed source between the two statements.
            log.debug("execution_status_conflict", attempt=attempt, current=current_status.value)

        await db.commit()
        raise StoreConflictError("CampaignExecution", execution_id, self.conflict_retries)

    async def get_execution(self, db: AsyncSession, execution_id: uuid.UUID) -> CampaignExecution:
        """Fetch one execution.

        Raises:
            NotFoundError: No such execution
        """
        execution = await db.get(CampaignExecution, execution_id)
        if execution is None:
            raise NotFoundError("CampaignExecution", execution_id)
        return execution

    async def get_executions_by_campaign(
        self, db: AsyncSession, campaign_id: uuid.UUID
    ) -> list[CampaignExecution]:
        """All executions of a campaign, newest first."""
        result = await db.execute(
            select(CampaignExecution)
            .where(CampaignExecution.campaign_id == campaign_id)
            .order_by(CampaignExecution.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_recent_executions(
        self, db: AsyncSession, limit: int = DEFAULT_RECENT_LIMIT
    ) -> list[CampaignExecution]:
        """Latest executions across all campaigns."""
        result = await db.execute(
            select(CampaignExecution).order_by(CampaignExecution.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def get_execution_stats(
        self, db: AsyncSession, campaign_id: uuid.UUID | None = None
    ) -> ExecutionStats:
        """Counts by status plus sent/failed totals. Read-only."""
        stmt = select(
            CampaignExecution.status,
            func.count(),
            func.coalesce(func.sum(CampaignExecution.sent_count), 0),
            func.coalesce(func.sum(CampaignExecution.failed_count), 0),
        ).group_by(CampaignExecution.status)
        if campaign_id is not None:
            stmt = stmt.where(CampaignExecution.campaign_id == campaign_id)

        stats = ExecutionStats()
        for status, count, sent, failed in (await db.execute(stmt)).all():
            stats.total += count
            stats.total_sent += int(sent)
            stats.total_failed += int(failed)
            if status in _STATUS_VALUES:
                setattr(stats, status, getattr(stats, status) + count)
        return stats

    async def _apply(
        self,
        db: AsyncSession,
        execution_id: uuid.UUID,
        values: dict[str, Any],
        status_in: list[str] | None = None,
    ) -> bool:
        """Run one UPDATE; True if a row matched."""
        stmt = update(CampaignExecution).where(CampaignExecution.id == execution_id)
        if status_in is not None:
            stmt = stmt.where(CampaignExecution.status.in_(status_in))
        result = await db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def _reload(self, db: AsyncSession, execution_id: uuid.UUID) -> CampaignExecution:
        execution = await db.get(CampaignExecution, execution_id, populate_existing=True)
        if execution is None:
            raise NotFoundError("CampaignExecution", execution_id)
        return execution
