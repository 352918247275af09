"""Job scheduler for periodic compliance tasks.

This module provides scheduling for periodic jobs:
- Retention enforcement: applies enabled retention policies
- Audit verification: re-walks the audit ledger hash chain
- Notice reminders: re-notifies custodians with unacknowledged hold notices

Schedules are keyed by schedule_id, so the same job type can be scheduled
more than once with different payloads.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from mailvault.core.errors import ConflictError, NotFoundError
from mailvault.db.models.base import JobStatus
from mailvault.db.models.jobs import Job
from mailvault.services.job_queue import JobQueueService, JobType, Queues

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from mailvault.core.config import ComplianceSettings

logger = logging.getLogger(__name__)

RETENTION_SCHEDULE_ID = "retention-enforcement"
AUDIT_VERIFY_SCHEDULE_ID = "audit-ledger-verification"
NOTICE_REMINDER_SCHEDULE_ID = "legal-hold-notice-reminders"


@dataclass
class ScheduledJob:
    """Definition of a scheduled periodic job.

    Attributes:
        schedule_id: Unique key of this schedule.
        job_type: Type of job to schedule.
        interval: Time between job executions.
        payload: Job-specific payload data.
        queue: Queue to schedule the job on.
        priority: Job priority (lower = higher priority).
        enabled: Whether this scheduled job is active.
        last_scheduled: When the job was last scheduled.
    """

    schedule_id: str
    job_type: str
    interval: timedelta
    payload: dict[str, Any] = field(default_factory=dict)
    queue: str = Queues.COMPLIANCE.value
    priority: int = 100
    enabled: bool = True
    last_scheduled: datetime | None = None


def build_default_schedules(settings: ComplianceSettings) -> list[ScheduledJob]:
    """Default compliance schedules, with intervals taken from settings."""
    return [
        ScheduledJob(
            schedule_id=RETENTION_SCHEDULE_ID,
            job_type=JobType.RETENTION_ENFORCE.value,
            interval=timedelta(hours=settings.retention_interval_hours),
            priority=200,
        ),
        ScheduledJob(
            schedule_id=AUDIT_VERIFY_SCHEDULE_ID,
            job_type=JobType.AUDIT_VERIFY.value,
            interval=timedelta(hours=settings.audit_verify_interval_hours),
            priority=150,
        ),
        ScheduledJob(
            schedule_id=NOTICE_REMINDER_SCHEDULE_ID,
            job_type=JobType.HOLD_NOTICE_REMINDER.value,
            interval=timedelta(hours=settings.notice_reminder_interval_hours),
            priority=150,
        ),
    ]


class Scheduler:
    """Job scheduler that ensures periodic jobs are enqueued.

    The scheduler checks if a scheduled job needs to run based on
    when it was last executed. It avoids duplicate scheduling by
    checking if a pending job already exists.

    Example:
        scheduler = Scheduler(session)
        scheduler.add_schedule(ScheduledJob(
            schedule_id="nightly-retention",
            job_type="retention_enforce",
            interval=timedelta(hours=24),
        ))
        await scheduler.tick()  # Check and schedule due jobs
    """

    def __init__(
        self,
        session: AsyncSession,
        schedules: Iterable[ScheduledJob] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            session: Database session for job operations.
            schedules: Initial schedule definitions.
        """
        self.session = session
        self._schedules: dict[str, ScheduledJob] = {}
        self._job_queue = JobQueueService(session)
        for schedule in schedules or ():
            self.add_schedule(schedule)

    @property
    def schedules(self) -> list[ScheduledJob]:
        return list(self._schedules.values())

    def add_schedule(self, schedule: ScheduledJob) -> None:
        """Add a scheduled job definition.

        Raises:
            ConflictError: A schedule with the same id exists.
        """
        if schedule.schedule_id in self._schedules:
            raise ConflictError(f"Schedule already exists: {schedule.schedule_id}")
        self._schedules[schedule.schedule_id] = schedule
        logger.debug(
            "Added schedule: schedule_id=%s, job_type=%s, interval=%s",
            schedule.schedule_id,
            schedule.job_type,
            schedule.interval,
        )

    def update_schedule(
        self,
        schedule_id: str,
        *,
        interval: timedelta | None = None,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        enabled: bool | None = None,
    ) -> ScheduledJob:
        """Change an existing schedule in place.

        Raises:
            NotFoundError: Unknown schedule id.
        """
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            raise NotFoundError("Schedule", schedule_id)
        if interval is not None:
            schedule.interval = interval
        if payload is not None:
            schedule.payload = payload
        if priority is not None:
            schedule.priority = priority
        if enabled is not None:
            schedule.enabled = enabled
        return schedule

    def remove_schedule(self, schedule_id: str) -> ScheduledJob:
        """Drop a schedule.

        Raises:
            NotFoundError: Unknown schedule id.
        """
        try:
            return self._schedules.pop(schedule_id)
        except KeyError:
            raise NotFoundError("Schedule", schedule_id) from None

    def add_default_schedules(self, settings: ComplianceSettings) -> None:
        """Add the default compliance schedules."""
        defaults = build_default_schedules(settings)
        for schedule in defaults:
            self.add_schedule(schedule)
        logger.info("Added %d default schedules", len(defaults))

    async def tick(self) -> list[str]:
        """Check all schedules and enqueue jobs that are due.

        Returns:
            Ids of the schedules that enqueued a job.
        """
        now = datetime.now(UTC)
        scheduled: list[str] = []

        for schedule in self._schedules.values():
            if not schedule.enabled:
                continue

            if not self._is_due(schedule, now):
                continue

            if await self._has_pending_job(schedule.job_type, schedule.queue):
                logger.debug(
                    "Skipping schedule - pending job exists: schedule_id=%s",
                    schedule.schedule_id,
                )
                continue

            try:
                await self._job_queue.enqueue(
                    job_type=schedule.job_type,
                    payload=schedule.payload,
                    queue=schedule.queue,
                    priority=schedule.priority,
                )
                schedule.last_scheduled = now
                scheduled.append(schedule.schedule_id)

                logger.info(
                    "Scheduled job: schedule_id=%s, job_type=%s, queue=%s, next_due=%s",
                    schedule.schedule_id,
                    schedule.job_type,
                    schedule.queue,
                    (now + schedule.interval).isoformat(),
                )

            except Exception as e:
                logger.exception(
                    "Failed to schedule job: schedule_id=%s, error=%s",
                    schedule.schedule_id,
                    e,
                )

        return scheduled

    def _is_due(self, schedule: ScheduledJob, now: datetime) -> bool:
        if schedule.last_scheduled is None:
            return True
        return now >= schedule.last_scheduled + schedule.interval

    async def _has_pending_job(self, job_type: str, queue: str) -> bool:
        """Check if there's a pending or running job of this type."""
        stmt = (
            select(Job.job_id)
            .where(
                Job.job_type == job_type,
                Job.queue == queue,
                Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),
            )
            .limit(1)
        )

        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None


async def run_scheduler_loop(
    session_factory: async_sessionmaker[AsyncSession],
    schedules: list[ScheduledJob],
    check_interval: float = 60.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the scheduler loop as a background task.

    The ScheduledJob objects are shared across ticks, so last_scheduled
    survives from one check to the next.

    Args:
        session_factory: Factory for creating database sessions.
        schedules: Schedules to run.
        check_interval: Seconds between schedule checks.
        shutdown_event: Event to signal shutdown.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info(
        "Scheduler starting: check_interval=%ss, schedules=%d",
        check_interval,
        len(schedules),
    )

    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                scheduler = Scheduler(session, schedules)
                scheduled = await scheduler.tick()
                if scheduled:
                    await session.commit()
                    logger.debug("Scheduled jobs: %s", scheduled)

        except Exception as e:
            logger.exception("Error in scheduler loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=check_interval,
            )

    logger.info("Scheduler stopped")
