"""Indexing queue handlers.

The search engine itself is an external collaborator. These handlers turn
index_records / delete_documents jobs into calls on a DocumentSink, which
the deployment provides when it runs a worker on the indexing queue.
Records deleted between enqueue and processing are skipped.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, Protocol

from mailvault.services.records import load_records
from mailvault.services.search import EMAILS_INDEX, build_search_document

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.db.models.jobs import Job

    Handler = Callable[[AsyncSession, Job], Coroutine[Any, Any, dict[str, Any] | None]]

logger = logging.getLogger(__name__)


class DocumentSink(Protocol):
    """Receives documents for the search engine."""

    async def upsert_documents(self, index: str, documents: list[dict[str, Any]]) -> None: ...

    async def delete_documents(self, index: str, document_ids: list[str]) -> None: ...


def _payload_ids(job: Job, key: str) -> list[uuid.UUID]:
    payload = job.payload_json or {}
    values = payload.get(key)
    if not isinstance(values, list):
        msg = f"{key} must be a list in job payload"
        raise ValueError(msg)
    return [uuid.UUID(str(value)) for value in values]


def make_index_records_handler(sink: DocumentSink) -> Handler:
    """Build the index_records handler bound to a sink.

    Expected job payload:
        index: Target index name (defaults to 'emails').
        recordIds: Ids of the records to (re-)index.
    """

    async def index_records_handler(session: AsyncSession, job: Job) -> dict[str, Any] | None:
        record_ids = _payload_ids(job, "recordIds")
        index = (job.payload_json or {}).get("index") or EMAILS_INDEX

        records = await load_records(session, record_ids)
        documents = [build_search_document(records[rid]) for rid in record_ids if rid in records]
        if documents:
            await sink.upsert_documents(index, documents)

        skipped = len(record_ids) - len(documents)
        if skipped:
            logger.debug("Index job skipped missing records: job_id=%s, count=%d", job.job_id, skipped)
        return {"index": index, "indexed": len(documents), "skipped": skipped}

    return index_records_handler


def make_delete_documents_handler(sink: DocumentSink) -> Handler:
    """Build the delete_documents handler bound to a sink.

    Expected job payload:
        index: Index to delete from.
        documentIds: Ids of the documents to drop.
    """

    async def delete_documents_handler(session: AsyncSession, job: Job) -> dict[str, Any] | None:
        document_ids = [str(document_id) for document_id in _payload_ids(job, "documentIds")]
        index = (job.payload_json or {}).get("index") or EMAILS_INDEX
        if document_ids:
            await sink.delete_documents(index, document_ids)
        return {"index": index, "deleted": len(document_ids)}

    return delete_documents_handler
