"""PostgreSQL-backed job queue service for background processing.

This service provides at-least-once job processing using PostgreSQL's
SELECT ... FOR UPDATE SKIP LOCKED pattern for safe concurrent access.

Key features:
- Atomic job claiming with SKIP LOCKED (no duplicate processing)
- Exponential backoff for retries (base * 2^(attempt-1))
- Dead letter handling for failed jobs
- Support for scheduled jobs (run_at timestamp)

Handlers must be safe under re-delivery: a job whose worker crashed is
picked up again once its lock goes stale.

Usage:
    from mailvault.services.job_queue import JobQueueService, JobType, Queues

    queue = JobQueueService(session)
    await queue.enqueue(
        JobType.EXPORT_JOB,
        payload={"exportJobId": str(export_job_id)},
        queue=Queues.COMPLIANCE,
    )
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from mailvault.db.models.base import JobStatus, utcnow
from mailvault.db.models.jobs import Job

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.core.config import Settings

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Supported job types for background processing.

    Each job type corresponds to a specific handler in the worker service.
    """

    RETENTION_ENFORCE = "retention_enforce"
    AUDIT_VERIFY = "audit_verify"
    EXPORT_JOB = "export_job"
    ARCHIVE_EXPORT_JOB = "archive_export_job"
    HOLD_NOTICE_REMINDER = "hold_notice_reminder"
    APPLY_HOLDS_TO_RECORD = "apply_holds_to_record"
    INDEX_RECORDS = "index_records"
    DELETE_DOCUMENTS = "delete_documents"


class Queues(str, Enum):
    """Named queues polled by workers."""

    COMPLIANCE = "compliance"
    INGESTION = "ingestion"
    INDEXING = "indexing"


class JobQueueError(Exception):
    """Base exception for job queue operations."""


class JobNotFoundError(JobQueueError):
    """Raised when a job cannot be found."""


def _value(item: str | Enum) -> str:
    return item.value if isinstance(item, Enum) else item


class JobQueueService:
    """PostgreSQL-backed job queue for reliable background processing.

    Attributes:
        session: SQLAlchemy async session for database operations.
        default_queue: Queue used when enqueue() is given none.
        default_max_attempts: Default maximum delivery attempts.
        default_lock_timeout: Default lock timeout in seconds.
        default_base_backoff: Default base backoff in seconds for retries.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_queue: str = Queues.COMPLIANCE.value,
        default_max_attempts: int = 5,
        default_lock_timeout: int = 300,
        default_base_backoff: int = 1,
    ) -> None:
        self.session = session
        self.default_queue = default_queue
        self.default_max_attempts = default_max_attempts
        self.default_lock_timeout = default_lock_timeout
        self.default_base_backoff = default_base_backoff

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> JobQueueService:
        """Create a queue service using the configured retry policy."""
        return cls(
            session,
            default_max_attempts=settings.queues.max_attempts,
            default_base_backoff=settings.queues.base_backoff_seconds,
        )

    async def enqueue(
        self,
        job_type: str | JobType,
        payload: dict[str, Any] | None = None,
        run_at: datetime | None = None,
        queue: str | Queues | None = None,
        priority: int = 100,
        max_attempts: int | None = None,
        correlation_id: str | None = None,
    ) -> uuid.UUID:
        """Add a new job to the queue.

        Args:
            job_type: Type of job (determines which handler processes it).
            payload: Job-specific data passed to the handler.
            run_at: When the job should be processed. Defaults to now.
            queue: Queue name for routing. Defaults to default_queue.
            priority: Job priority (lower = higher priority). Default 100.
            max_attempts: Maximum delivery attempts. Defaults to default_max_attempts.
            correlation_id: Optional ID for tracing related jobs.

        Returns:
            UUID of the created job.

        Raises:
            JobQueueError: If job creation fails.
        """
        job_type_value = _value(job_type)

        job = Job(
            job_type=job_type_value,
            status=JobStatus.PENDING,
            run_at=run_at or utcnow(),
            payload_json=payload,
            queue=_value(queue) if queue is not None else self.default_queue,
            priority=priority,
            max_attempts=max_attempts or self.default_max_attempts,
            lock_timeout_seconds=self.default_lock_timeout,
            base_backoff_seconds=self.default_base_backoff,
            correlation_id=correlation_id,
        )

        try:
            self.session.add(job)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue job: %s", str(e))
            raise JobQueueError(f"Failed to enqueue job: {e}") from e

        logger.info(
            "Job enqueued: job_id=%s, job_type=%s, queue=%s, run_at=%s",
            job.job_id,
            job_type_value,
            job.queue,
            job.run_at.isoformat(),
        )
        return job.job_id

    async def claim_job(
        self,
        worker_id: str,
        queue: str | Queues | None = None,
        job_types: list[str] | None = None,
    ) -> Job | None:
        """Claim the next available job for processing.

        Uses SELECT ... FOR UPDATE SKIP LOCKED to safely claim a job
        without race conditions. Workers can call this concurrently.

        Args:
            worker_id: Unique identifier for the claiming worker.
            queue: Queue to claim from. Defaults to default_queue.
            job_types: Optional list of job types to filter by.

        Returns:
            The claimed Job if one was available, None otherwise.

        Raises:
            JobQueueError: If claim operation fails.
        """
        queue_name = _value(queue) if queue is not None else self.default_queue
        now = utcnow()

        stmt = (
            select(Job)
            .where(
                Job.queue == queue_name,
                Job.status == JobStatus.PENDING,
                Job.run_at <= now,
            )
            .order_by(Job.priority, Job.run_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if job_types:
            stmt = stmt.where(Job.job_type.in_(job_types))

        try:
            result = await self.session.execute(stmt)
            job = result.scalar_one_or_none()
            if job is None:
                return None

            job.status = JobStatus.RUNNING
            job.locked_at = now
            job.locked_by = worker_id
            job.started_at = now
            job.attempts += 1
            job.updated_at = now

            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to claim job: %s", str(e))
            raise JobQueueError(f"Failed to claim job: {e}") from e

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, job_type=%s, attempt=%d/%d",
            job.job_id,
            worker_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
        )
        return job

    async def complete_job(
        self,
        job_id: uuid.UUID,
        result: dict[str, Any] | None = None,
    ) -> None:
        """Mark a job as successfully completed.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the update fails.
        """
        now = utcnow()
        job = await self._require_job(job_id)

        duration_ms = None
        if job.started_at:
            duration_ms = int((now - job.started_at).total_seconds() * 1000)

        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.updated_at = now
        job.result_json = result
        job.duration_ms = duration_ms
        job.locked_at = None
        job.locked_by = None

        await self._flush("complete", job_id)

        logger.info(
            "Job completed: job_id=%s, job_type=%s, duration_ms=%s",
            job_id,
            job.job_type,
            duration_ms,
        )

    async def fail_job(self, job_id: uuid.UUID, error: str) -> bool:
        """Record a failed attempt and schedule a retry with exponential backoff.

        If the job has exhausted max_attempts, it moves to FAILED status
        (dead letter). Otherwise, it's rescheduled after
        base_backoff_seconds * 2^(attempts-1).

        Returns:
            True if the job will be retried, False if it's dead-lettered.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the update fails.
        """
        now = utcnow()
        job = await self._require_job(job_id)

        job.last_error = error
        job.locked_at = None
        job.locked_by = None
        job.updated_at = now

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.completed_at = now
            if job.started_at:
                job.duration_ms = int((now - job.started_at).total_seconds() * 1000)

            await self._flush("fail", job_id)

            logger.warning(
                "Job dead-lettered: job_id=%s, job_type=%s, attempts=%d, error=%s",
                job_id,
                job.job_type,
                job.attempts,
                error,
            )
            return False

        backoff_seconds = job.base_backoff_seconds * (2 ** (job.attempts - 1))
        job.run_at = now + timedelta(seconds=backoff_seconds)
        job.status = JobStatus.PENDING

        await self._flush("fail", job_id)

        logger.info(
            "Job scheduled for retry: job_id=%s, job_type=%s, "
            "attempt=%d/%d, retry_at=%s, backoff=%ds",
            job_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
            job.run_at.isoformat(),
            backoff_seconds,
        )
        return True

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        """Retrieve a job by ID."""
        result = await self.session.execute(select(Job).where(Job.job_id == job_id))
        return result.scalar_one_or_none()

    async def get_backlog_count(self, queue: str | Queues) -> int:
        """Count jobs on a queue that are waiting, scheduled or running."""
        stmt = (
            select(func.count())
            .select_from(Job)
            .where(
                Job.queue == _value(queue),
                Job.status.in_((JobStatus.PENDING, JobStatus.RUNNING)),
            )
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def cleanup_stale_jobs(self, stale_threshold_seconds: int = 600) -> int:
        """Reset running jobs whose lock is older than the threshold.

        Workers may crash while processing jobs; their jobs are handed to
        another worker (re-delivery).

        Returns:
            Number of stale jobs reset.
        """
        now = utcnow()
        threshold = now - timedelta(seconds=stale_threshold_seconds)

        stmt = (
            update(Job)
            .where(
                Job.status == JobStatus.RUNNING,
                Job.locked_at < threshold,
            )
            .values(
                status=JobStatus.PENDING,
                locked_at=None,
                locked_by=None,
                run_at=now,
            )
            .returning(Job.job_id)
        )

        try:
            result = await self.session.execute(stmt)
            stale_job_ids = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to cleanup stale jobs: %s", str(e))
            raise JobQueueError(f"Failed to cleanup stale jobs: {e}") from e

        if stale_job_ids:
            logger.warning("Reset %d stale jobs: %s", len(stale_job_ids), stale_job_ids)
        return len(stale_job_ids)

    async def _require_job(self, job_id: uuid.UUID) -> Job:
        try:
            job = await self.get_job(job_id)
        except SQLAlchemyError as e:
            raise JobQueueError(f"Failed to load job: {e}") from e
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def _flush(self, operation: str, job_id: uuid.UUID) -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to %s job %s: %s", operation, job_id, str(e))
            raise JobQueueError(f"Failed to {operation} job: {e}") from e
