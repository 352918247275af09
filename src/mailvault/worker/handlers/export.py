"""Export job handlers.

Both handlers delegate to the export services, which commit every status
transition themselves. The queue attempt is passed through: a transient
failure before the last attempt leaves the export running for the retry to
resume, and the last attempt records it as failed. A re-delivered job whose
export already finished is skipped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mailvault.core.settings import get_settings
from mailvault.services.export import ArchiveExportService, ExportService
from mailvault.worker.handlers.common import build_storage, require_uuid

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.db.models.jobs import Job

logger = logging.getLogger(__name__)


async def export_job_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle export_job jobs.

    Expected job payload:
        exportJobId: UUID of the ExportJob to build.

    Raises:
        ValueError: If the payload has no valid exportJobId.
        NotFoundError: If the export job does not exist.
    """
    export_job_id = require_uuid(job, "exportJobId")
    settings = get_settings()
    service = ExportService.from_settings(session, build_storage(settings), settings)

    export_job = await service.run_export_job(
        export_job_id, attempt=job.attempts, max_attempts=job.max_attempts
    )
    return {
        "exportJobId": str(export_job_id),
        "status": export_job.status.value,
        "filePath": export_job.file_path,
        "emailCount": export_job.record_count,
        "attachmentCount": export_job.attachment_count,
    }


async def archive_export_job_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle archive_export_job jobs.

    Expected job payload:
        archiveExportJobId: UUID of the ArchiveExportJob to build.
    """
    archive_export_job_id = require_uuid(job, "archiveExportJobId")
    settings = get_settings()
    service = ArchiveExportService.from_settings(session, build_storage(settings), settings)

    export_job = await service.run_archive_export_job(
        archive_export_job_id, attempt=job.attempts, max_attempts=job.max_attempts
    )
    return {
        "archiveExportJobId": str(archive_export_job_id),
        "status": export_job.status.value,
        "filePath": export_job.file_path,
        "emailCount": export_job.record_count,
        "attachmentCount": export_job.attachment_count,
    }
