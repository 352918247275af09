"""Tests for retention policies and the enforcement run.

Tests cover:
- Policy CRUD and validation
- Expiry by sent date and policy conditions
- Priority ordering: earlier policies claim records
- Legal hold protection and failure isolation
- notify_admin policies and run totals
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from mailvault.core.config import IndexingSettings
from mailvault.core.errors import ConflictError, NotFoundError, ValidationError
from mailvault.db.models import ArchivedRecord
from mailvault.db.models.base import AuditActionType, RetentionAction
from mailvault.services.archive import ArchiveService
from mailvault.services.audit_log import AuditLedgerService
from mailvault.services.job_queue import JobType, Queues
from mailvault.services.legal_hold import LegalHoldService
from mailvault.services.retention import RetentionEnforcer, RetentionPolicyService
from mailvault.services.search import JobQueueSearchIndex
from tests.factories import BASE_TIME, count_jobs, create_case, create_record, create_source

ACTOR = "admin@example.com"
NOW = datetime(2024, 12, 31, tzinfo=UTC)


@pytest.fixture
def policies(session) -> RetentionPolicyService:
    return RetentionPolicyService(session)


@pytest.fixture
def archive(session, storage, search_index) -> ArchiveService:
    return ArchiveService(session, storage, search_index=search_index)


async def remaining_ids(session) -> set:
    from sqlalchemy import select

    result = await session.execute(select(ArchivedRecord.record_id))
    return set(result.scalars().all())


class TestRetentionPolicyService:
    """Tests for policy CRUD."""

    @pytest.mark.asyncio
    async def test_create_policy(self, policies):
        """Test policies are created with normalized conditions."""
        policy = await policies.create_policy(
            name=" Short-lived ",
            retention_period_days=30,
            actor=ACTOR,
            conditions={"senderEmail": " News@Example.com "},
        )

        assert policy.name == "Short-lived"
        assert policy.conditions == {"senderEmail": "news@example.com"}
        assert policy.action_on_expiry == RetentionAction.DELETE_PERMANENTLY
        assert policy.is_enabled

    @pytest.mark.asyncio
    async def test_create_policy_validation(self, policies):
        """Test invalid names, periods and conditions are rejected."""
        with pytest.raises(ValidationError):
            await policies.create_policy(name="  ", retention_period_days=30, actor=ACTOR)
        with pytest.raises(ValidationError):
            await policies.create_policy(name="zero", retention_period_days=0, actor=ACTOR)
        with pytest.raises(ValidationError):
            await policies.create_policy(
                name="dates",
                retention_period_days=30,
                actor=ACTOR,
                conditions={"startDate": "bogus"},
            )

    @pytest.mark.asyncio
    async def test_duplicate_name(self, policies):
        """Test policy names are unique."""
        await policies.create_policy(name="p", retention_period_days=30, actor=ACTOR)

        with pytest.raises(ConflictError):
            await policies.create_policy(name="p", retention_period_days=60, actor=ACTOR)

    @pytest.mark.asyncio
    async def test_update_and_list_in_priority_order(self, policies):
        """Test updates apply and listing follows priority then name."""
        low = await policies.create_policy(
            name="b-low", retention_period_days=30, actor=ACTOR, priority=50
        )
        await policies.create_policy(name="a-default", retention_period_days=30, actor=ACTOR)

        await policies.update_policy(low.policy_id, actor=ACTOR, priority=500, is_enabled=False)

        assert [p.name for p in await policies.list_policies()] == ["a-default", "b-low"]
        assert [p.name for p in await policies.list_policies(enabled_only=True)] == ["a-default"]

    @pytest.mark.asyncio
    async def test_delete_policy(self, session, policies):
        """Test deleting a policy is audited and removes it."""
        policy = await policies.create_policy(name="p", retention_period_days=30, actor=ACTOR)

        await policies.delete_policy(policy.policy_id, actor=ACTOR)

        with pytest.raises(NotFoundError):
            await policies.get_policy(policy.policy_id)
        entries = await AuditLedgerService(session).get_entries(target_id=policy.policy_id)
        assert entries[0].action_type == AuditActionType.DELETE


class TestRetentionEnforcer:
    """Tests for RetentionEnforcer.run."""

    @pytest.mark.asyncio
    async def test_deletes_expired_records_only(self, session, storage, policies, archive):
        """Test records sent before the cutoff are deleted with their blobs."""
        source = await create_source(session)
        old = await create_record(session, source, sent_at=BASE_TIME, storage=storage)
        recent = await create_record(
            session, source, sent_at=NOW - timedelta(days=5), storage=storage
        )
        await policies.create_policy(name="30 days", retention_period_days=30, actor=ACTOR)

        result = await RetentionEnforcer(session, archive).run(now=NOW)

        assert result.to_dict() == {
            "processedPolicies": 1,
            "deleted": 1,
            "notified": 0,
            "skippedOnHold": 0,
            "failed": 0,
        }
        assert await remaining_ids(session) == {recent.record_id}
        assert old.storage_path not in storage.objects
        assert recent.storage_path in storage.objects

    @pytest.mark.asyncio
    async def test_conditions_narrow_the_policy(self, session, storage, policies, archive):
        """Test only records matching the conditions are affected."""
        source = await create_source(session)
        news = await create_record(session, source, sender_email="news@example.com")
        other = await create_record(session, source, sender_email="boss@example.com")
        await policies.create_policy(
            name="newsletters",
            retention_period_days=30,
            actor=ACTOR,
            conditions={"senderEmail": "NEWS@example.com"},
        )

        await RetentionEnforcer(session, archive).run(now=NOW)

        remaining = await remaining_ids(session)
        assert news.record_id not in remaining
        assert other.record_id in remaining

    @pytest.mark.asyncio
    async def test_held_records_are_skipped(
        self, session, storage, policies, archive, search_index
    ):
        """Test records on legal hold are counted and never deleted."""
        source = await create_source(session)
        held = await create_record(session, source, subject="Merger", storage=storage)
        free = await create_record(session, source, subject="Lunch", storage=storage)
        case = await create_case(session)
        await LegalHoldService(session, search_index).create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        await policies.create_policy(name="all", retention_period_days=30, actor=ACTOR)

        result = await RetentionEnforcer(session, archive).run(now=NOW)

        assert result.deleted == 1
        assert result.skipped_on_hold == 1
        remaining = await remaining_ids(session)
        assert held.record_id in remaining
        assert free.record_id not in remaining
        assert held.storage_path in storage.objects

    @pytest.mark.asyncio
    async def test_higher_priority_policy_claims_records(self, session, policies, archive):
        """Test a record acted on by an earlier policy is excluded from later ones."""
        source = await create_source(session)
        await create_record(session, source, sender_email="news@example.com")
        notified: list = []

        async def notifier(policy, record_ids):
            notified.append((policy.name, list(record_ids)))

        await policies.create_policy(
            name="report",
            retention_period_days=30,
            actor=ACTOR,
            priority=10,
            action_on_expiry=RetentionAction.NOTIFY_ADMIN,
        )
        await policies.create_policy(
            name="purge", retention_period_days=30, actor=ACTOR, priority=20
        )

        result = await RetentionEnforcer(session, archive, notifier=notifier).run(now=NOW)

        assert result.notified == 1
        assert result.deleted == 0
        assert [name for name, _ in notified] == ["report"]
        assert len(await remaining_ids(session)) == 1

    @pytest.mark.asyncio
    async def test_disabled_policies_are_ignored(self, session, policies, archive):
        """Test disabled policies take no part in the run."""
        source = await create_source(session)
        await create_record(session, source)
        await policies.create_policy(
            name="off", retention_period_days=30, actor=ACTOR, is_enabled=False
        )

        result = await RetentionEnforcer(session, archive).run(now=NOW)

        assert result.processed_policies == 0
        assert len(await remaining_ids(session)) == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_run(self, session, storage, policies, archive):
        """Test a failing deletion is counted and rolled back while others proceed."""
        source = await create_source(session)
        broken = await create_record(session, source, storage=storage)
        fine = await create_record(session, source, storage=storage)
        storage.fail_on_delete.add(broken.storage_path)
        await policies.create_policy(name="all", retention_period_days=30, actor=ACTOR)

        result = await RetentionEnforcer(session, archive).run(now=NOW)

        assert result.failed == 1
        assert result.deleted == 1
        remaining = await remaining_ids(session)
        assert broken.record_id in remaining
        assert fine.record_id not in remaining

    @pytest.mark.asyncio
    async def test_run_does_not_wait_on_its_own_index_jobs(self, session, storage, policies):
        """Test a run enqueueing more delete jobs than max_queue_depth completes."""
        sleep = AsyncMock(side_effect=AssertionError("waited on its own backlog"))
        index = JobQueueSearchIndex(session, IndexingSettings(max_queue_depth=2), sleep=sleep)
        archive = ArchiveService(session, storage, search_index=index)
        source = await create_source(session)
        for _ in range(3):
            await create_record(session, source, storage=storage)
        await policies.create_policy(name="all", retention_period_days=30, actor=ACTOR)

        await index.wait_for_capacity()
        result = await RetentionEnforcer(session, archive).run(now=NOW)

        assert result.deleted == 3
        assert result.failed == 0
        assert await remaining_ids(session) == set()
        assert await count_jobs(session, Queues.INDEXING, JobType.DELETE_DOCUMENTS) == 3
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_is_audited_per_policy(self, session, policies, archive):
        """Test each policy run appends an entry with its counts."""
        source = await create_source(session)
        await create_record(session, source)
        policy = await policies.create_policy(name="all", retention_period_days=30, actor=ACTOR)

        await RetentionEnforcer(session, archive).run(now=NOW)

        entries = await AuditLedgerService(session).get_entries(target_id=policy.policy_id)
        run_entry = entries[0]
        assert run_entry.actor_identifier == "system"
        assert run_entry.details["deletedCount"] == 1
        assert run_entry.details["action"] == "delete_permanently"
        assert (await AuditLedgerService(session).verify()).ok

    @pytest.mark.asyncio
    async def test_unknown_policy_update(self, policies):
        """Test updating an unknown policy raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await policies.update_policy(uuid4(), actor=ACTOR, priority=1)
