"""Job queue model for PostgreSQL-backed background processing.

Backs the compliance, ingestion and indexing queues:
- SKIP LOCKED for concurrent worker safety
- Retry with exponential backoff
- Dead letter handling for failed jobs
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import BigInteger, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mailvault.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_type,
)


class Job(Base):
    """Background job for async processing.

    Jobs are picked up by workers using SELECT ... FOR UPDATE SKIP LOCKED
    to ensure safe concurrent processing without external queue infrastructure.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # e.g. 'retention_enforce', 'export_job', 'index_records'
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        enum_type(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # When the job should be run (for scheduled and retried jobs)
    run_at: Mapped[datetime] = mapped_column(nullable=False)

    # Lock tracking for concurrent workers
    locked_at: Mapped[OptionalTimestampTZ]
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Workers re-acquire a running job once its lock is older than this
    lock_timeout_seconds: Mapped[int] = mapped_column(default=300, nullable=False)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=5, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Seconds before the first retry, doubles each attempt
    base_backoff_seconds: Mapped[int] = mapped_column(default=1, nullable=False)

    payload_json: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    # Lower = higher priority
    priority: Mapped[int] = mapped_column(default=100, nullable=False)

    # 'compliance', 'ingestion' or 'indexing'
    queue: Mapped[str] = mapped_column(String(100), default="default", nullable=False)

    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        # Primary query for workers: pending jobs ready to run, ordered by priority
        Index(
            "ix_jobs_queue_pending",
            "queue",
            "status",
            "run_at",
            "priority",
        ),
        Index("ix_jobs_status", "status"),
        Index("ix_jobs_job_type", "job_type"),
        Index("ix_jobs_correlation_id", "correlation_id"),
        # For cleanup of old completed jobs
        Index("ix_jobs_completed_at", "completed_at"),
    )
