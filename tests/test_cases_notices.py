"""Tests for eDiscovery cases, custodians and hold notices.

Tests cover:
- Case creation, update and per-case summaries
- Custodian registration
- Notice issue, acknowledgement and the reminder sweep
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from mailvault.core.errors import ConflictError, NotFoundError, ValidationError
from mailvault.db.models.base import CaseStatus, utcnow
from mailvault.services.audit_log import AuditLedgerService
from mailvault.services.cases import CaseService
from mailvault.services.hold_notices import REMINDER_CHANNEL, HoldNoticeService
from mailvault.services.legal_hold import LegalHoldService
from tests.factories import create_record, create_source

ACTOR = "counsel@example.com"


class TestCaseService:
    """Tests for CaseService."""

    @pytest.mark.asyncio
    async def test_create_case(self, session):
        """Test cases open with a trimmed name and an audit entry."""
        service = CaseService(session)

        created = await service.create_case(name="  Acme v. Widgets ", actor=ACTOR)

        assert created.name == "Acme v. Widgets"
        assert created.status == CaseStatus.OPEN
        entries = await AuditLedgerService(session).get_entries(target_type="ComplianceCase")
        assert entries[0].details == {"caseName": "Acme v. Widgets"}

    @pytest.mark.asyncio
    async def test_duplicate_and_blank_names(self, session):
        """Test duplicate names conflict and blank names are invalid."""
        service = CaseService(session)
        await service.create_case(name="Acme", actor=ACTOR)

        with pytest.raises(ConflictError):
            await service.create_case(name="Acme", actor=ACTOR)
        with pytest.raises(ValidationError):
            await service.create_case(name="   ", actor=ACTOR)

    @pytest.mark.asyncio
    async def test_update_case(self, session):
        """Test status and description updates."""
        service = CaseService(session)
        created = await service.create_case(name="Acme", actor=ACTOR)

        updated = await service.update_case(
            created.case_id, actor=ACTOR, status="closed", description=" Settled "
        )

        assert updated.status == CaseStatus.CLOSED
        assert updated.description == "Settled"
        assert [c.name for c in await service.list_cases()] == ["Acme"]

    @pytest.mark.asyncio
    async def test_update_case_errors(self, session):
        """Test unknown cases and statuses are rejected."""
        service = CaseService(session)
        created = await service.create_case(name="Acme", actor=ACTOR)

        with pytest.raises(ValidationError):
            await service.update_case(created.case_id, actor=ACTOR, status="archived")
        with pytest.raises(NotFoundError):
            await service.get_case(uuid4())

    @pytest.mark.asyncio
    async def test_case_summaries(self, session, search_index):
        """Test summaries count holds and memberships per case."""
        source = await create_source(session)
        await create_record(session, source, subject="Merger")
        cases = CaseService(session)
        busy = await cases.create_case(name="Busy", actor=ACTOR)
        empty = await cases.create_case(name="Empty", actor=ACTOR)
        holds = LegalHoldService(session, search_index)
        first = await holds.create_hold(
            case_id=busy.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        await holds.create_hold(
            case_id=busy.case_id, actor=ACTOR, criteria={"subjectContains": "merger"}
        )
        await holds.release_hold(first.hold.hold_id, actor=ACTOR)

        summaries = {s.case_id: s for s in await cases.get_case_summaries()}

        assert summaries[busy.case_id].total_hold_count == 2
        assert summaries[busy.case_id].active_hold_count == 1
        assert summaries[busy.case_id].total_email_count == 2
        assert summaries[busy.case_id].active_email_count == 1
        assert summaries[empty.case_id].total_hold_count == 0

    @pytest.mark.asyncio
    async def test_create_custodian(self, session):
        """Test custodian emails are lower-cased and unique."""
        service = CaseService(session)

        custodian = await service.create_custodian(email=" Dana@Example.com ", actor=ACTOR)

        assert custodian.email == "dana@example.com"
        with pytest.raises(ConflictError):
            await service.create_custodian(email="DANA@example.com", actor=ACTOR)
        assert [c.email for c in await service.list_custodians()] == ["dana@example.com"]


class TestHoldNotices:
    """Tests for HoldNoticeService."""

    async def _custodian_hold(self, session, search_index):
        cases = CaseService(session)
        case = await cases.create_case(name="Notices", actor=ACTOR)
        custodian = await cases.create_custodian(email="dana@example.com", actor=ACTOR)
        view = await LegalHoldService(session, search_index).create_hold(
            case_id=case.case_id, actor=ACTOR, custodian_id=custodian.custodian_id
        )
        return view.hold, custodian

    @pytest.mark.asyncio
    async def test_issue_defaults_to_hold_custodian(self, session, search_index):
        """Test a notice goes to the hold's custodian on the manual channel."""
        hold, custodian = await self._custodian_hold(session, search_index)
        service = HoldNoticeService(session)

        notice = await service.issue_notice(hold.hold_id, actor=ACTOR, notes=" Please keep ")

        assert notice.custodian_id == custodian.custodian_id
        assert notice.channel == "manual"
        assert notice.notes == "Please keep"
        assert notice.acknowledged_at is None

    @pytest.mark.asyncio
    async def test_issue_requires_custodian(self, session, search_index):
        """Test a criteria-only hold needs an explicit custodian."""
        cases = CaseService(session)
        case = await cases.create_case(name="Criteria", actor=ACTOR)
        view = await LegalHoldService(session, search_index).create_hold(
            case_id=case.case_id, actor=ACTOR, criteria={"subjectContains": "x"}
        )

        with pytest.raises(ValidationError):
            await HoldNoticeService(session).issue_notice(view.hold.hold_id, actor=ACTOR)
        with pytest.raises(NotFoundError):
            await HoldNoticeService(session).issue_notice(uuid4(), actor=ACTOR)

    @pytest.mark.asyncio
    async def test_acknowledge(self, session, search_index):
        """Test acknowledgement records who and when."""
        hold, _ = await self._custodian_hold(session, search_index)
        service = HoldNoticeService(session)
        notice = await service.issue_notice(hold.hold_id, actor=ACTOR)

        acked = await service.acknowledge_notice(
            hold.hold_id, notice.notice_id, actor="dana@example.com"
        )

        assert acked.acknowledged_by == "dana@example.com"
        assert acked.acknowledged_at is not None
        with pytest.raises(NotFoundError):
            await service.acknowledge_notice(uuid4(), notice.notice_id, actor=ACTOR)

    @pytest.mark.asyncio
    async def test_reminders_for_stale_unacknowledged_notices(self, session, search_index):
        """Test one reminder per stale pair, and none once reminded."""
        hold, _ = await self._custodian_hold(session, search_index)
        service = HoldNoticeService(session)
        await service.issue_notice(hold.hold_id, actor=ACTOR)
        later = utcnow() + timedelta(days=8)

        assert await service.send_reminders(7, now=later) == 1
        assert await service.send_reminders(7, now=later) == 0

        notices = await service.list_notices(hold.hold_id)
        assert notices[0].channel == REMINDER_CHANNEL
        assert notices[0].sent_at == later
        assert len(notices) == 2

    @pytest.mark.asyncio
    async def test_no_reminders_when_acknowledged_or_recent(self, session, search_index):
        """Test acknowledged and recent notices are left alone."""
        hold, _ = await self._custodian_hold(session, search_index)
        service = HoldNoticeService(session)
        notice = await service.issue_notice(hold.hold_id, actor=ACTOR)

        assert await service.send_reminders(7) == 0
        assert await service.send_reminders(0, now=utcnow() + timedelta(days=30)) == 0

        await service.acknowledge_notice(hold.hold_id, notice.notice_id, actor=ACTOR)
        assert await service.send_reminders(7, now=utcnow() + timedelta(days=8)) == 0

    @pytest.mark.asyncio
    async def test_released_holds_get_no_reminders(self, session, search_index):
        """Test the sweep skips released holds."""
        hold, _ = await self._custodian_hold(session, search_index)
        service = HoldNoticeService(session)
        await service.issue_notice(hold.hold_id, actor=ACTOR)
        await LegalHoldService(session, search_index).release_hold(hold.hold_id, actor=ACTOR)

        assert await service.send_reminders(7, now=utcnow() + timedelta(days=8)) == 0
