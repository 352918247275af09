"""Tests for the legal hold engine.

Tests cover:
- Hold creation: validation, initial membership and hold flags
- Updates: membership diffing, soft removal and reactivation
- Release: memberships removed, flags kept for records under other holds
- Applying active holds to newly archived records
- Audit trail and search index notifications
- Serialization of concurrent updates to one hold
"""

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy import select

from mailvault.core.errors import ConflictError, NotFoundError, ValidationError
from mailvault.db.models import HoldMembership
from mailvault.db.models.base import AuditActionType, MembershipState
from mailvault.services.audit_log import AuditLedgerService
from mailvault.services.legal_hold import LegalHoldService, diff_membership
from tests.factories import create_case, create_custodian, create_record, create_source

ACTOR = "counsel@example.com"


async def on_hold(session, record) -> bool:
    await session.refresh(record)
    return record.is_on_hold


async def membership(session, hold_id, record_id) -> HoldMembership | None:
    row = await session.get(HoldMembership, (hold_id, record_id))
    if row is not None:
        await session.refresh(row)
    return row


@pytest.fixture
def service(session, search_index) -> LegalHoldService:
    return LegalHoldService(session, search_index)


class TestDiffMembership:
    """Tests for the pure membership diff."""

    def test_adds_and_removes(self):
        """Test new matches are added and stale members removed."""
        a, b, c = uuid4(), uuid4(), uuid4()

        to_add, to_remove = diff_membership([a, b], [b, c])

        assert to_add == [a]
        assert to_remove == [c]

    def test_duplicates_collapse(self):
        """Test duplicate ids appear once."""
        a = uuid4()
        assert diff_membership([a, a], []) == ([a], [])


class TestCreateHold:
    """Tests for create_hold."""

    @pytest.mark.asyncio
    async def test_requires_custodian_or_criteria(self, session, service):
        """Test a hold with neither custodian nor criteria is rejected."""
        case = await create_case(session)

        with pytest.raises(ValidationError):
            await service.create_hold(case_id=case.case_id, actor=ACTOR)

        with pytest.raises(ValidationError):
            await service.create_hold(
                case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "  "}
            )

    @pytest.mark.asyncio
    async def test_invalid_dates_rejected(self, session, service):
        """Test criteria validation errors propagate."""
        case = await create_case(session)

        with pytest.raises(ValidationError, match="startDate"):
            await service.create_hold(
                case_id=case.case_id,
                actor=ACTOR,
                criteria={"startDate": "2024-06-01", "endDate": "2024-01-01"},
            )

    @pytest.mark.asyncio
    async def test_unknown_case_or_custodian(self, session, service):
        """Test unknown references raise NotFoundError."""
        case = await create_case(session)

        with pytest.raises(NotFoundError):
            await service.create_hold(
                case_id=uuid4(), actor=ACTOR, criteria={"subjectContains": "x"}
            )
        with pytest.raises(NotFoundError):
            await service.create_hold(case_id=case.case_id, actor=ACTOR, custodian_id=uuid4())

    @pytest.mark.asyncio
    async def test_holds_matching_records(self, session, service, search_index):
        """Test matching records get memberships and the hold flag."""
        source = await create_source(session)
        merger = await create_record(session, source, subject="Merger update")
        lunch = await create_record(session, source, subject="Lunch")
        case = await create_case(session)

        view = await service.create_hold(
            case_id=case.case_id,
            actor=ACTOR,
            criteria={"subjectContains": "MERGER"},
            reason="  Litigation  ",
        )

        assert view.email_count == 1
        assert view.active_email_count == 1
        assert view.hold.criteria == {"subjectContains": "MERGER"}
        assert view.hold.reason == "Litigation"
        assert view.hold.applied_by == ACTOR
        assert await on_hold(session, merger)
        assert not await on_hold(session, lunch)
        assert merger.record_id in search_index.reindexed_ids

    @pytest.mark.asyncio
    async def test_unreachable_search_index_does_not_block(self, session):
        """Test a failing search hand-off is logged and the hold still applies."""
        index = AsyncMock()
        index.reindex_by_ids.side_effect = ConnectionError("search engine unreachable")
        source = await create_source(session)
        record = await create_record(session, source, sender_email="a@example.com")
        case = await create_case(session)

        view = await LegalHoldService(session, index).create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"senderEmail": "a@example.com"}
        )

        assert view.active_email_count == 1
        assert await on_hold(session, record)
        index.reindex_by_ids.assert_awaited()

    @pytest.mark.asyncio
    async def test_custodian_and_criteria_are_anded(self, session, service):
        """Test a custodian restricts criteria matches to their mailbox."""
        source = await create_source(session)
        mine = await create_record(session, source, owner_email="Dana@example.com", subject="Budget")
        theirs = await create_record(session, source, owner_email="eve@example.com", subject="Budget")
        custodian = await create_custodian(session, "dana@example.com")
        case = await create_case(session)

        view = await service.create_hold(
            case_id=case.case_id,
            actor=ACTOR,
            custodian_id=custodian.custodian_id,
            criteria={"subjectContains": "budget"},
        )

        members = await service.get_active_member_ids(view.hold.hold_id)
        assert members == [mine.record_id]
        assert not await on_hold(session, theirs)

    @pytest.mark.asyncio
    async def test_audit_entries(self, session, service):
        """Test creation appends CREATE then a membership UPDATE entry."""
        source = await create_source(session)
        await create_record(session, source, subject="Merger")
        case = await create_case(session)

        view = await service.create_hold(
            case_id=case.case_id,
            actor=ACTOR,
            criteria={"subjectContains": "merger"},
            actor_ip="192.0.2.1",
        )

        entries = await AuditLedgerService(session).get_entries(target_id=view.hold.hold_id)
        update_entry, create_entry = entries
        assert create_entry.action_type == AuditActionType.CREATE
        assert create_entry.details == {"caseId": str(case.case_id), "custodianId": None}
        assert create_entry.actor_ip == "192.0.2.1"
        assert update_entry.details == {
            "action": "membership_applied",
            "matchedEmailCount": 1,
        }


class TestUpdateHold:
    """Tests for update_hold."""

    @pytest.mark.asyncio
    async def test_rescope_diffs_membership(self, session, service):
        """Test changing criteria adds new matches and soft-removes old ones."""
        source = await create_source(session)
        alpha = await create_record(session, source, subject="Project Alpha")
        beta = await create_record(session, source, subject="Project Beta")
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "alpha"}
        )
        hold_id = view.hold.hold_id

        updated = await service.update_hold(
            hold_id, actor=ACTOR, criteria={"subjectContains": "beta"}
        )

        assert updated.email_count == 2
        assert updated.active_email_count == 1
        assert not await on_hold(session, alpha)
        assert await on_hold(session, beta)
        removed = await membership(session, hold_id, alpha.record_id)
        assert removed.state == MembershipState.REMOVED

    @pytest.mark.asyncio
    async def test_reactivates_soft_removed_membership(self, session, service):
        """Test a record matching again reuses its membership row."""
        source = await create_source(session)
        alpha = await create_record(session, source, subject="Project Alpha")
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "alpha"}
        )
        hold_id = view.hold.hold_id

        await service.update_hold(hold_id, actor=ACTOR, criteria={"subjectContains": "gamma"})
        final = await service.update_hold(
            hold_id, actor=ACTOR, criteria={"subjectContains": "alpha"}
        )

        assert final.email_count == 1
        assert final.active_email_count == 1
        row = await membership(session, hold_id, alpha.record_id)
        assert row.removed_at is None
        assert await on_hold(session, alpha)

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_serialized(self, session, service):
        """Test two simultaneous updates of one hold leave one active row per record."""
        source = await create_source(session)
        alpha = await create_record(session, source, subject="Project Alpha")
        beta = await create_record(session, source, subject="Project Beta")
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "alpha"}
        )
        hold_id = view.hold.hold_id

        first, second = await asyncio.gather(
            service.update_hold(hold_id, actor=ACTOR, criteria={"subjectContains": "beta"}),
            service.update_hold(hold_id, actor=ACTOR, criteria={"subjectContains": "project"}),
        )

        assert first.active_email_count == 1
        assert second.active_email_count == 2
        result = await session.execute(
            select(HoldMembership.record_id, HoldMembership.removed_at).where(
                HoldMembership.hold_id == hold_id
            )
        )
        rows = result.all()
        assert sorted(record_id for record_id, _ in rows) == sorted(
            [alpha.record_id, beta.record_id]
        )
        assert all(removed_at is None for _, removed_at in rows)
        assert await on_hold(session, alpha)
        assert await on_hold(session, beta)

    @pytest.mark.asyncio
    async def test_omitted_fields_are_kept(self, session, service):
        """Test updating only the reason keeps the selector."""
        source = await create_source(session)
        await create_record(session, source, subject="Merger")
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )

        updated = await service.update_hold(view.hold.hold_id, actor=ACTOR, reason="Amended")

        assert updated.hold.criteria == {"subjectContains": "merger"}
        assert updated.hold.reason == "Amended"
        assert updated.active_email_count == 1

    @pytest.mark.asyncio
    async def test_cannot_clear_both_selectors(self, session, service):
        """Test clearing criteria on a criteria-only hold is rejected."""
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )

        with pytest.raises(ValidationError):
            await service.update_hold(view.hold.hold_id, actor=ACTOR, criteria=None)

    @pytest.mark.asyncio
    async def test_released_hold_is_immutable(self, session, service):
        """Test updating a released hold raises ConflictError."""
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        await service.release_hold(view.hold.hold_id, actor=ACTOR)

        with pytest.raises(ConflictError):
            await service.update_hold(view.hold.hold_id, actor=ACTOR, reason="late")

    @pytest.mark.asyncio
    async def test_unknown_hold(self, service):
        """Test updating an unknown hold raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await service.update_hold(uuid4(), actor=ACTOR, reason="x")


class TestReleaseHold:
    """Tests for release_hold."""

    @pytest.mark.asyncio
    async def test_release_clears_flags(self, session, service):
        """Test releasing removes memberships and clears the flag."""
        source = await create_source(session)
        record = await create_record(session, source, subject="Merger")
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )

        await service.release_hold(view.hold.hold_id, actor=ACTOR)

        released = await service.get_hold(view.hold.hold_id)
        assert not released.hold.is_active
        assert released.email_count == 1
        assert released.active_email_count == 0
        assert not await on_hold(session, record)

    @pytest.mark.asyncio
    async def test_other_holds_keep_flag(self, session, service):
        """Test a record stays on hold while another hold covers it."""
        source = await create_source(session)
        record = await create_record(session, source, subject="Merger budget")
        case = await create_case(session)
        first = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "budget"}
        )

        await service.release_hold(first.hold.hold_id, actor=ACTOR)

        assert await on_hold(session, record)

    @pytest.mark.asyncio
    async def test_release_twice_is_noop(self, session, service):
        """Test releasing a released hold changes nothing."""
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        await service.release_hold(view.hold.hold_id, actor=ACTOR)
        ledger = AuditLedgerService(session)
        before = len(await ledger.get_entries())

        await service.release_hold(view.hold.hold_id, actor=ACTOR)

        assert len(await ledger.get_entries()) == before


class TestApplyToNewRecord:
    """Tests for apply_to_new_record."""

    @pytest.mark.asyncio
    async def test_new_record_joins_matching_holds(self, session, service):
        """Test a new record joins every active hold it matches."""
        source = await create_source(session)
        case = await create_case(session)
        matching = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "unrelated"}
        )
        record = await create_record(session, source, subject="Merger closing")

        added = await service.apply_to_new_record(record.record_id)

        assert added == [matching.hold.hold_id]
        assert await on_hold(session, record)

    @pytest.mark.asyncio
    async def test_idempotent(self, session, service):
        """Test a second call adds nothing and writes no audit entry."""
        source = await create_source(session)
        case = await create_case(session)
        await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        record = await create_record(session, source, subject="Merger closing")
        await service.apply_to_new_record(record.record_id)
        ledger = AuditLedgerService(session)
        before = len(await ledger.get_entries())

        assert await service.apply_to_new_record(record.record_id) == []
        assert len(await ledger.get_entries()) == before

    @pytest.mark.asyncio
    async def test_released_holds_are_ignored(self, session, service):
        """Test released holds never gain records."""
        source = await create_source(session)
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        await service.release_hold(view.hold.hold_id, actor=ACTOR)
        record = await create_record(session, source, subject="Merger closing")

        assert await service.apply_to_new_record(record.record_id) == []
        assert not await on_hold(session, record)

    @pytest.mark.asyncio
    async def test_unknown_record(self, service):
        """Test an unknown record raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await service.apply_to_new_record(uuid4())


class TestHoldQueries:
    """Tests for list_holds and list_held_records."""

    @pytest.mark.asyncio
    async def test_list_holds_with_counts(self, session, service):
        """Test list_holds reports counts per hold."""
        source = await create_source(session)
        await create_record(session, source, subject="Merger one")
        await create_record(session, source, subject="Merger two")
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )

        holds = await service.list_holds()

        assert [(h.hold.hold_id, h.email_count, h.active_email_count) for h in holds] == [
            (view.hold.hold_id, 2, 2)
        ]

    @pytest.mark.asyncio
    async def test_held_records_page(self, session, service):
        """Test paging through a hold's members."""
        source = await create_source(session)
        for i in range(3):
            await create_record(session, source, subject=f"Merger {i}")
        case = await create_case(session)
        view = await service.create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )

        page = await service.list_held_records(view.hold.hold_id, page=2, limit=2)

        assert page.total == 3
        assert len(page.items) == 1
        assert page.items[0].record.subject.startswith("Merger")
