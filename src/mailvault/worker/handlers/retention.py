"""Retention job handler for enforcing retention policies.

The actual enforcement logic lives in RetentionEnforcer; this handler only
wires it to storage, the search index hand-off and the configured deletion
switch. Retention bypasses the switch but never the legal hold check.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mailvault.core.settings import get_settings
from mailvault.services.archive import ArchiveService
from mailvault.services.retention import RetentionEnforcer
from mailvault.worker.handlers.common import build_search_index, build_storage

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.db.models.jobs import Job

logger = logging.getLogger(__name__)


async def enforce_retention_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle retention_enforce jobs.

    Args:
        session: Database session for the transaction.
        job: The job being processed (payload is ignored).

    Returns:
        Run totals: processedPolicies, deleted, notified, skippedOnHold, failed.
    """
    settings = get_settings()
    search_index = build_search_index(session, settings)
    await search_index.wait_for_capacity()
    archive = ArchiveService(
        session,
        build_storage(settings),
        enable_deletion=settings.compliance.enable_deletion,
        search_index=search_index,
    )
    result = await RetentionEnforcer(session, archive).run()

    logger.info("Retention job finished: job_id=%s, result=%s", job.job_id, result.to_dict())
    return result.to_dict()
