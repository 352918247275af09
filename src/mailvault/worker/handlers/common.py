"""Helpers shared by the job handlers."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from mailvault.services.search import JobQueueSearchIndex
from mailvault.services.storage import S3StorageGateway

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.core.config import Settings
    from mailvault.db.models.jobs import Job


def require_uuid(job: Job, key: str) -> uuid.UUID:
    """Read a UUID field from the job payload.

    Raises:
        ValueError: The field is missing or not a UUID.
    """
    payload: dict[str, Any] = job.payload_json or {}
    value = payload.get(key)
    if not value:
        msg = f"{key} is required in job payload"
        raise ValueError(msg)
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        msg = f"{key} is not a valid UUID: {value}"
        raise ValueError(msg) from e


def build_storage(settings: Settings) -> S3StorageGateway:
    return S3StorageGateway.from_settings(settings)


def build_search_index(session: AsyncSession, settings: Settings) -> JobQueueSearchIndex:
    return JobQueueSearchIndex(session, settings.indexing)
