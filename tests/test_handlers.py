"""Tests for the worker job handlers.

Handlers are thin wiring around the services; these tests check the
payload contract, the result shape and the hand-off to the indexing queue.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mailvault.core.config import ComplianceSettings, IndexingSettings
from mailvault.core.errors import NotFoundError
from mailvault.db.models.base import AuditActionType, ExportStatus
from mailvault.services.audit_log import AuditLedgerService
from mailvault.services.job_queue import JobQueueService, JobType, Queues
from mailvault.services.legal_hold import LegalHoldService
from mailvault.services.retention import RetentionPolicyService
from mailvault.services.search import JobQueueSearchIndex
from mailvault.worker.handlers import (
    apply_holds_to_record_handler,
    enforce_retention_handler,
    export_job_handler,
    make_delete_documents_handler,
    make_index_records_handler,
    send_notice_reminders_handler,
    verify_audit_ledger_handler,
)
from mailvault.worker.handlers.common import require_uuid
from tests.factories import count_jobs, create_case, create_record, create_source


def make_job(payload=None):
    job = MagicMock()
    job.job_id = uuid.uuid4()
    job.payload_json = payload
    return job


@pytest.fixture
def settings():
    settings = MagicMock()
    settings.compliance = ComplianceSettings()
    settings.indexing = IndexingSettings()
    return settings


class TestRequireUuid:
    """Tests for require_uuid."""

    def test_reads_uuid(self):
        """Test a UUID string is parsed."""
        value = uuid.uuid4()
        assert require_uuid(make_job({"recordId": str(value)}), "recordId") == value

    @pytest.mark.parametrize("payload", [None, {}, {"recordId": ""}])
    def test_missing(self, payload):
        """Test a missing field raises ValueError."""
        with pytest.raises(ValueError, match="recordId is required"):
            require_uuid(make_job(payload), "recordId")

    def test_invalid(self):
        """Test a malformed value raises ValueError."""
        with pytest.raises(ValueError, match="not a valid UUID"):
            require_uuid(make_job({"recordId": "nope"}), "recordId")


class TestRetentionHandler:
    """Tests for enforce_retention_handler."""

    @pytest.mark.asyncio
    async def test_runs_enforcer(self, session, storage, settings):
        """Test the handler returns the run totals."""
        with (
            patch("mailvault.worker.handlers.retention.get_settings", return_value=settings),
            patch("mailvault.worker.handlers.retention.build_storage", return_value=storage),
        ):
            result = await enforce_retention_handler(session, make_job())

        assert result == {
            "processedPolicies": 0,
            "deleted": 0,
            "notified": 0,
            "skippedOnHold": 0,
            "failed": 0,
        }

    @pytest.mark.asyncio
    async def test_waits_for_indexing_capacity_first(self, session, storage, settings):
        """Test the run starts only once the committed indexing backlog drains."""
        queue = JobQueueService(session)
        blocking_id = await queue.enqueue(JobType.INDEX_RECORDS, queue=Queues.INDEXING)
        source = await create_source(session)
        for _ in range(2):
            await create_record(session, source, storage=storage)
        await RetentionPolicyService(session).create_policy(
            name="all", retention_period_days=30, actor="admin"
        )

        async def drain(seconds):
            await queue.claim_job("indexer", queue=Queues.INDEXING)
            await queue.complete_job(blocking_id)

        sleep = AsyncMock(side_effect=drain)
        index = JobQueueSearchIndex(session, IndexingSettings(max_queue_depth=1), sleep=sleep)
        with (
            patch("mailvault.worker.handlers.retention.get_settings", return_value=settings),
            patch("mailvault.worker.handlers.retention.build_storage", return_value=storage),
            patch("mailvault.worker.handlers.retention.build_search_index", return_value=index),
        ):
            result = await enforce_retention_handler(session, make_job())

        sleep.assert_awaited_once()
        assert result["deleted"] == 2
        assert await count_jobs(session, Queues.INDEXING, JobType.DELETE_DOCUMENTS) == 2


class TestAuditVerifyHandler:
    """Tests for verify_audit_ledger_handler."""

    @pytest.mark.asyncio
    async def test_records_outcome(self, session):
        """Test the outcome is stored and itself audited."""
        ledger = AuditLedgerService(session)
        await ledger.append(
            actor_identifier="admin",
            action_type=AuditActionType.CREATE,
            target_type="Thing",
            target_id="1",
        )

        result = await verify_audit_ledger_handler(session, make_job())

        assert result["ok"] is True
        assert result["entriesChecked"] == 1
        assert result["failedEntryId"] is None
        latest = await ledger.get_latest_verification()
        assert latest.ok is True
        entries = await ledger.get_entries(target_type="AuditLogVerification")
        assert len(entries) == 1
        assert (await ledger.verify()).ok


class TestHoldsHandler:
    """Tests for apply_holds_to_record_handler."""

    @pytest.mark.asyncio
    async def test_places_record_on_hold(self, session, search_index, settings):
        """Test a new record joins matching holds and gets re-indexed."""
        case = await create_case(session)
        view = await LegalHoldService(session, search_index).create_hold(
            case_id=case.case_id, actor="admin", criteria={"subjectContains": "merger"}
        )
        source = await create_source(session)
        record = await create_record(session, source, subject="Merger plan")

        with patch("mailvault.worker.handlers.holds.get_settings", return_value=settings):
            result = await apply_holds_to_record_handler(
                session, make_job({"recordId": str(record.record_id)})
            )

        assert result == {"recordId": str(record.record_id), "holdIds": [str(view.hold.hold_id)]}
        assert await count_jobs(session, Queues.INDEXING, JobType.INDEX_RECORDS) == 1

    @pytest.mark.asyncio
    async def test_unknown_record(self, session, settings):
        """Test an unknown record raises NotFoundError."""
        with (
            patch("mailvault.worker.handlers.holds.get_settings", return_value=settings),
            pytest.raises(NotFoundError),
        ):
            await apply_holds_to_record_handler(session, make_job({"recordId": str(uuid.uuid4())}))


class TestNoticeHandler:
    """Tests for send_notice_reminders_handler."""

    @pytest.mark.asyncio
    async def test_payload_overrides_threshold(self, session):
        """Test reminderDays from the payload is used as-is."""
        with patch(
            "mailvault.worker.handlers.notices.HoldNoticeService.send_reminders",
            AsyncMock(return_value=2),
        ) as send:
            result = await send_notice_reminders_handler(session, make_job({"reminderDays": 3}))

        send.assert_awaited_once_with(3)
        assert result == {"remindersSent": 2, "reminderDays": 3}

    @pytest.mark.asyncio
    async def test_configured_threshold(self, session, settings):
        """Test the configured threshold applies without a payload."""
        with patch("mailvault.worker.handlers.notices.get_settings", return_value=settings):
            result = await send_notice_reminders_handler(session, make_job())

        assert result == {"remindersSent": 0, "reminderDays": 7}


class TestExportHandler:
    """Tests for export_job_handler."""

    @pytest.mark.asyncio
    async def test_delegates_to_export_service(self, session, storage, settings):
        """Test the handler runs the job and reports its totals."""
        export_job_id = uuid.uuid4()
        finished = MagicMock(
            status=ExportStatus.COMPLETED,
            file_path="vault/exports/x/export.zip",
            record_count=4,
            attachment_count=1,
        )
        service = MagicMock()
        service.run_export_job = AsyncMock(return_value=finished)

        job = make_job({"exportJobId": str(export_job_id)})
        job.attempts = 2
        job.max_attempts = 5

        with (
            patch("mailvault.worker.handlers.export.get_settings", return_value=settings),
            patch("mailvault.worker.handlers.export.build_storage", return_value=storage),
            patch(
                "mailvault.worker.handlers.export.ExportService.from_settings",
                return_value=service,
            ),
        ):
            result = await export_job_handler(session, job)

        service.run_export_job.assert_awaited_once_with(export_job_id, attempt=2, max_attempts=5)
        assert result == {
            "exportJobId": str(export_job_id),
            "status": "completed",
            "filePath": "vault/exports/x/export.zip",
            "emailCount": 4,
            "attachmentCount": 1,
        }

    @pytest.mark.asyncio
    async def test_requires_export_job_id(self, session):
        """Test a payload without exportJobId is rejected."""
        with pytest.raises(ValueError, match="exportJobId"):
            await export_job_handler(session, make_job({}))


class TestIndexingHandlers:
    """Tests for the sink-based indexing handlers."""

    @pytest.mark.asyncio
    async def test_index_records(self, session):
        """Test existing records are sent and missing ones skipped."""
        source = await create_source(session)
        record = await create_record(session, source, subject="Hello")
        sink = AsyncMock()
        handler = make_index_records_handler(sink)

        result = await handler(
            session, make_job({"recordIds": [str(record.record_id), str(uuid.uuid4())]})
        )

        assert result == {"index": "emails", "indexed": 1, "skipped": 1}
        index, documents = sink.upsert_documents.await_args.args
        assert index == "emails"
        assert documents[0]["id"] == str(record.record_id)
        assert documents[0]["subject"] == "Hello"

    @pytest.mark.asyncio
    async def test_index_records_requires_list(self, session):
        """Test recordIds must be a list."""
        handler = make_index_records_handler(AsyncMock())

        with pytest.raises(ValueError, match="recordIds must be a list"):
            await handler(session, make_job({"recordIds": "abc"}))

    @pytest.mark.asyncio
    async def test_delete_documents(self, session):
        """Test document ids are forwarded to the sink."""
        sink = AsyncMock()
        handler = make_delete_documents_handler(sink)
        doc_id = uuid.uuid4()

        result = await handler(
            session, make_job({"index": "emails", "documentIds": [str(doc_id)]})
        )

        sink.delete_documents.assert_awaited_once_with("emails", [str(doc_id)])
        assert result == {"index": "emails", "deleted": 1}
