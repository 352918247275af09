"""Export job models.

Targeted exports package the records selected by a hold, a case or an
explicit id list. Archive exports package everything archived up to a
fixed snapshot instant. Both move pending -> running -> completed | failed
exactly once.
"""

from __future__ import annotations

import uuid
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mailvault.db.models.base import (
    Base,
    ExportFormat,
    ExportStatus,
    MediumString,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_type,
)


class ExportJob(Base):
    """Targeted export of held or selected records.

    query holds exactly one of holdId, caseId or recordIds.
    """

    __tablename__ = "export_jobs"

    export_job_id: Mapped[UUIDPrimaryKey]
    case_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("ediscovery_cases.case_id", ondelete="SET NULL"),
        nullable=True,
    )
    format: Mapped[ExportFormat] = mapped_column(
        enum_type(ExportFormat, "export_format"),
        nullable=False,
    )
    status: Mapped[ExportStatus] = mapped_column(
        enum_type(ExportStatus, "export_status"),
        nullable=False,
        default=ExportStatus.PENDING,
    )
    query: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)

    file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    record_count: Mapped[int] = mapped_column(default=0, nullable=False)
    attachment_count: Mapped[int] = mapped_column(default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[MediumString]
    created_at: Mapped[TimestampTZ]
    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_export_jobs_status", "status"),
        Index("ix_export_jobs_case_id", "case_id"),
    )


class ArchiveExportJob(Base):
    """Full archive export as of snapshot_at."""

    __tablename__ = "archive_export_jobs"

    archive_export_job_id: Mapped[UUIDPrimaryKey]
    format: Mapped[ExportFormat] = mapped_column(
        enum_type(ExportFormat, "export_format"),
        nullable=False,
    )
    status: Mapped[ExportStatus] = mapped_column(
        enum_type(ExportStatus, "export_status"),
        nullable=False,
        default=ExportStatus.PENDING,
    )
    snapshot_at: Mapped[datetime] = mapped_column(nullable=False)

    file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    record_count: Mapped[int] = mapped_column(default=0, nullable=False)
    attachment_count: Mapped[int] = mapped_column(default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[MediumString]
    created_at: Mapped[TimestampTZ]
    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (Index("ix_archive_export_jobs_status", "status"),)
