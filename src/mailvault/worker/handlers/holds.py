"""Places newly ingested records under matching legal holds.

The ingestion side enqueues one apply_holds_to_record job per archived
record. Re-delivery is harmless: holds that already hold the record are
skipped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mailvault.core.settings import get_settings
from mailvault.services.legal_hold import LegalHoldService
from mailvault.worker.handlers.common import build_search_index, require_uuid

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.db.models.jobs import Job

logger = logging.getLogger(__name__)


async def apply_holds_to_record_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle apply_holds_to_record jobs.

    Expected job payload:
        recordId: UUID of the archived record.

    Raises:
        ValueError: If the payload has no valid recordId.
        NotFoundError: If the record does not exist.
    """
    record_id = require_uuid(job, "recordId")
    settings = get_settings()
    search_index = build_search_index(session, settings)
    await search_index.wait_for_capacity()
    service = LegalHoldService(session, search_index=search_index)

    hold_ids = await service.apply_to_new_record(record_id)
    if hold_ids:
        logger.info("Record placed on hold: record_id=%s, holds=%d", record_id, len(hold_ids))
    return {"recordId": str(record_id), "holdIds": [str(hold_id) for hold_id in hold_ids]}
