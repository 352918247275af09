"""Search index hand-off.

The compliance services never talk to the search engine directly. After
membership changes or deletions they ask a SearchIndex to re-index or drop
documents; the default implementation turns those requests into jobs on the
indexing queue. Index updates are best-effort: a failure is logged and never
undoes the compliance change that triggered it.

Producers apply backpressure before they start a unit of work: while the
committed indexing backlog is at or above max_queue_depth, wait_for_capacity
polls it on a fixed interval. Jobs enqueued later in the same transaction are
not counted, so a single run never waits on its own hand-offs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from mailvault.services.job_queue import JobQueueService, JobType, Queues

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.core.config import IndexingSettings
    from mailvault.db.models.archive import ArchivedRecord

logger = logging.getLogger(__name__)

EMAILS_INDEX = "emails"

# Ids per indexing job
INDEX_BATCH_SIZE = 500


class SearchIndex(Protocol):
    """Best-effort search index notifications."""

    async def reindex_by_ids(self, record_ids: Iterable[uuid.UUID]) -> None: ...

    async def delete_documents(self, index: str, document_ids: Iterable[uuid.UUID]) -> None: ...


class NullSearchIndex:
    """SearchIndex that drops every request (no search engine configured)."""

    async def reindex_by_ids(self, record_ids: Iterable[uuid.UUID]) -> None:
        return None

    async def delete_documents(self, index: str, document_ids: Iterable[uuid.UUID]) -> None:
        return None


class JobQueueSearchIndex:
    """SearchIndex that enqueues indexing jobs.

    Each enqueue runs in a SAVEPOINT so a failed hand-off cannot poison the
    caller's transaction. Call wait_for_capacity before the first write of a
    unit of work.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: IndexingSettings,
        *,
        sleep: Any = None,
    ) -> None:
        self._session = session
        self._queue = JobQueueService(session, default_queue=Queues.INDEXING.value)
        self._max_queue_depth = settings.max_queue_depth
        self._poll_seconds = settings.backpressure_poll_seconds
        self._sleep = sleep or asyncio.sleep

    async def wait_for_capacity(self) -> None:
        """Block while the indexing backlog is at or above max_queue_depth.

        A max_queue_depth of 0 disables backpressure. Only jobs visible to
        the session count, so call this before enqueueing anything in the
        current transaction.
        """
        if self._max_queue_depth <= 0:
            return
        while True:
            backlog = await self._queue.get_backlog_count(Queues.INDEXING)
            if backlog < self._max_queue_depth:
                return
            logger.warning(
                "Indexing backlog high, pausing: backlog=%d, max_queue_depth=%d",
                backlog,
                self._max_queue_depth,
            )
            await self._sleep(self._poll_seconds)

    async def reindex_by_ids(self, record_ids: Iterable[uuid.UUID]) -> None:
        ids = [str(record_id) for record_id in record_ids]
        for start in range(0, len(ids), INDEX_BATCH_SIZE):
            await self._enqueue(
                JobType.INDEX_RECORDS,
                {"index": EMAILS_INDEX, "recordIds": ids[start : start + INDEX_BATCH_SIZE]},
            )

    async def delete_documents(self, index: str, document_ids: Iterable[uuid.UUID]) -> None:
        ids = [str(document_id) for document_id in document_ids]
        for start in range(0, len(ids), INDEX_BATCH_SIZE):
            await self._enqueue(
                JobType.DELETE_DOCUMENTS,
                {"index": index, "documentIds": ids[start : start + INDEX_BATCH_SIZE]},
            )

    async def _enqueue(self, job_type: JobType, payload: dict[str, Any]) -> None:
        async with self._session.begin_nested():
            await self._queue.enqueue(job_type, payload, queue=Queues.INDEXING)


async def best_effort_reindex(index: SearchIndex, record_ids: Iterable[uuid.UUID]) -> None:
    """Ask the index to refresh documents, logging instead of raising."""
    ids = list(record_ids)
    if not ids:
        return
    try:
        await index.reindex_by_ids(ids)
    except Exception as e:
        logger.warning("Search re-index request failed for %d records: %s", len(ids), e)


async def best_effort_delete(
    index: SearchIndex, document_ids: Iterable[uuid.UUID], index_name: str = EMAILS_INDEX
) -> None:
    """Ask the index to drop documents, logging instead of raising."""
    ids = list(document_ids)
    if not ids:
        return
    try:
        await index.delete_documents(index_name, ids)
    except Exception as e:
        logger.warning("Search delete request failed for %d documents: %s", len(ids), e)


def build_search_document(record: ArchivedRecord) -> dict[str, Any]:
    """Flatten a record into the document shape sent to the search engine."""
    return {
        "id": str(record.record_id),
        "sourceId": str(record.source_id),
        "ownerEmail": record.owner_email,
        "senderEmail": record.sender_email,
        "subject": record.subject,
        "sentAt": record.sent_at.isoformat(),
        "archivedAt": record.archived_at.isoformat(),
        "mailboxPath": record.mailbox_path,
        "isOnHold": record.is_on_hold,
    }
