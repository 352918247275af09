"""Tests for the search index hand-off.

Tests cover:
- Indexing jobs enqueued in batches on the indexing queue
- Backpressure while the indexing backlog is full
- Best-effort helpers that log instead of raising
- Search document shape
"""

import uuid
from unittest.mock import AsyncMock

import pytest

from mailvault.core.config import IndexingSettings
from mailvault.services import search
from mailvault.services.job_queue import JobQueueError, JobQueueService, JobType, Queues
from mailvault.services.search import (
    EMAILS_INDEX,
    JobQueueSearchIndex,
    best_effort_delete,
    best_effort_reindex,
    build_search_document,
)
from tests.factories import count_jobs, create_record, create_source


class TestJobQueueSearchIndex:
    """Tests for JobQueueSearchIndex."""

    @pytest.mark.asyncio
    async def test_reindex_batches(self, session, monkeypatch):
        """Test ids are split into one job per batch."""
        monkeypatch.setattr(search, "INDEX_BATCH_SIZE", 2)
        index = JobQueueSearchIndex(session, IndexingSettings())
        ids = [uuid.uuid4() for _ in range(5)]

        await index.reindex_by_ids(ids)

        assert await count_jobs(session, Queues.INDEXING, JobType.INDEX_RECORDS) == 3

    @pytest.mark.asyncio
    async def test_delete_documents_payload(self, session):
        """Test delete jobs carry the index name and string ids."""
        index = JobQueueSearchIndex(session, IndexingSettings())
        doc_id = uuid.uuid4()

        await index.delete_documents(EMAILS_INDEX, [doc_id])

        queue = JobQueueService(session)
        job = await queue.claim_job("w", queue=Queues.INDEXING)
        assert job.job_type == "delete_documents"
        assert job.payload_json == {"index": "emails", "documentIds": [str(doc_id)]}

    @pytest.mark.asyncio
    async def test_backpressure_waits_for_backlog(self, session):
        """Test producers sleep while the backlog is at max_queue_depth."""
        queue = JobQueueService(session)
        blocking_id = await queue.enqueue(JobType.INDEX_RECORDS, queue=Queues.INDEXING)
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            await queue.claim_job("indexer", queue=Queues.INDEXING)
            await queue.complete_job(blocking_id)

        index = JobQueueSearchIndex(
            session,
            IndexingSettings(max_queue_depth=1, backpressure_poll_seconds=0.5),
            sleep=fake_sleep,
        )

        await index.wait_for_capacity()

        assert sleeps == [0.5]
        assert await queue.get_backlog_count(Queues.INDEXING) == 0

    @pytest.mark.asyncio
    async def test_enqueue_never_waits_on_own_jobs(self, session, monkeypatch):
        """Test a producer past its capacity check enqueues every batch."""
        monkeypatch.setattr(search, "INDEX_BATCH_SIZE", 1)
        sleep = AsyncMock()
        index = JobQueueSearchIndex(session, IndexingSettings(max_queue_depth=1), sleep=sleep)

        await index.wait_for_capacity()
        await index.reindex_by_ids([uuid.uuid4() for _ in range(3)])

        sleep.assert_not_awaited()
        assert await count_jobs(session, Queues.INDEXING, JobType.INDEX_RECORDS) == 3

    @pytest.mark.asyncio
    async def test_zero_depth_disables_backpressure(self, session):
        """Test max_queue_depth 0 never sleeps."""
        sleep = AsyncMock()
        index = JobQueueSearchIndex(session, IndexingSettings(max_queue_depth=0), sleep=sleep)

        await index.wait_for_capacity()

        sleep.assert_not_awaited()


class TestBestEffort:
    """Tests for the best-effort helpers."""

    @pytest.mark.asyncio
    async def test_reindex_failure_is_logged(self, caplog):
        """Test queue errors are logged, not raised."""
        index = AsyncMock()
        index.reindex_by_ids.side_effect = JobQueueError("queue down")

        await best_effort_reindex(index, [uuid.uuid4()])

        assert "re-index request failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_logged(self, caplog):
        """Test any error from the index is logged, not raised."""
        index = AsyncMock()
        index.delete_documents.side_effect = ConnectionError("search engine unreachable")

        await best_effort_delete(index, [uuid.uuid4()])

        assert "delete request failed" in caplog.text
        assert "search engine unreachable" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_ids_do_nothing(self):
        """Test no request is made for an empty id list."""
        index = AsyncMock()

        await best_effort_reindex(index, [])
        await best_effort_delete(index, [])

        index.reindex_by_ids.assert_not_awaited()
        index.delete_documents.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_uses_emails_index(self):
        """Test deletes default to the emails index."""
        index = AsyncMock()
        doc_id = uuid.uuid4()

        await best_effort_delete(index, [doc_id])

        index.delete_documents.assert_awaited_once_with("emails", [doc_id])


class TestSearchDocument:
    """Tests for build_search_document."""

    @pytest.mark.asyncio
    async def test_document_fields(self, session):
        """Test the document flattens the record."""
        source = await create_source(session)
        record = await create_record(session, source, subject="Board minutes")

        document = build_search_document(record)

        assert document["id"] == str(record.record_id)
        assert document["sourceId"] == str(source.source_id)
        assert document["subject"] == "Board minutes"
        assert document["isOnHold"] is False
        assert document["sentAt"] == record.sent_at.isoformat()
