"""Legal hold notices: issue, acknowledge, and remind custodians.

A notice records that a custodian was told about a hold. Custodians are
expected to acknowledge it; the periodic reminder sweep issues a new
'reminder' notice whenever the latest notice for a (hold, custodian) pair
is still unacknowledged after the configured number of days.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from mailvault.core.errors import NotFoundError, ValidationError
from mailvault.db.models.base import AuditActionType, utcnow
from mailvault.db.models.compliance import Custodian, LegalHold, LegalHoldNotice
from mailvault.services.audit_log import AuditLedgerService

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

NOTICE_TARGET = "LegalHoldNotice"

MANUAL_CHANNEL = "manual"
REMINDER_CHANNEL = "reminder"
REMINDER_NOTES = "Automated reminder: legal hold notice pending acknowledgement."
SYSTEM_ACTOR = "system"

_UNSET: Any = object()


class HoldNoticeService:
    """Issues and tracks legal hold notices."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: AuditLedgerService | None = None,
    ) -> None:
        self._session = session
        self._ledger = ledger or AuditLedgerService(session)

    async def issue_notice(
        self,
        hold_id: uuid.UUID,
        *,
        actor: str,
        custodian_id: uuid.UUID | None = None,
        channel: str | None = None,
        notes: str | None = None,
        actor_ip: str | None = None,
    ) -> LegalHoldNotice:
        """Record that a custodian was sent a hold notice.

        Args:
            hold_id: Hold the notice is about.
            actor: Who sent it.
            custodian_id: Recipient; defaults to the hold's custodian.
            channel: Delivery channel, 'manual' when blank.
            notes: Free-text notes.
            actor_ip: Caller address.

        Raises:
            NotFoundError: Unknown hold or custodian.
            ValidationError: No custodian given and the hold has none.
        """
        hold = await self._session.get(LegalHold, hold_id)
        if hold is None:
            raise NotFoundError("Legal hold", hold_id)

        recipient_id = custodian_id or hold.custodian_id
        if recipient_id is None:
            raise ValidationError("Custodian is required to send a legal hold notice.")

        custodian = await self._session.get(Custodian, recipient_id)
        if custodian is None:
            raise NotFoundError("Custodian", recipient_id)

        notice = LegalHoldNotice(
            hold_id=hold_id,
            custodian_id=custodian.custodian_id,
            channel=(channel or "").strip() or MANUAL_CHANNEL,
            notes=_clean(notes),
            sent_by=actor,
            sent_at=utcnow(),
        )
        self._session.add(notice)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.CREATE,
            target_type=NOTICE_TARGET,
            target_id=notice.notice_id,
            actor_ip=actor_ip,
            details={
                "holdId": str(hold_id),
                "custodianId": str(custodian.custodian_id),
                "channel": notice.channel,
            },
        )
        return notice

    async def acknowledge_notice(
        self,
        hold_id: uuid.UUID,
        notice_id: uuid.UUID,
        *,
        actor: str,
        notes: str | None = _UNSET,
        actor_ip: str | None = None,
    ) -> LegalHoldNotice:
        """Mark a notice acknowledged, optionally replacing its notes.

        Raises:
            NotFoundError: No such notice under this hold.
        """
        result = await self._session.execute(
            select(LegalHoldNotice).where(
                LegalHoldNotice.notice_id == notice_id,
                LegalHoldNotice.hold_id == hold_id,
            )
        )
        notice = result.scalar_one_or_none()
        if notice is None:
            raise NotFoundError("Legal hold notice", notice_id)

        notice.acknowledged_at = utcnow()
        notice.acknowledged_by = actor
        if notes is not _UNSET:
            notice.notes = _clean(notes)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.UPDATE,
            target_type=NOTICE_TARGET,
            target_id=notice_id,
            actor_ip=actor_ip,
            details={"action": "acknowledge", "holdId": str(hold_id)},
        )
        return notice

    async def list_notices(self, hold_id: uuid.UUID) -> list[LegalHoldNotice]:
        """Notices of one hold, newest first."""
        result = await self._session.execute(
            select(LegalHoldNotice)
            .where(LegalHoldNotice.hold_id == hold_id)
            .order_by(LegalHoldNotice.sent_at.desc())
        )
        return list(result.scalars().all())

    async def send_reminders(
        self,
        reminder_days: int,
        *,
        now: datetime | None = None,
    ) -> int:
        """Re-notify custodians whose latest notice is still unacknowledged.

        Only active holds are considered. The latest notice per
        (hold, custodian) pair decides: if it is unacknowledged and was
        sent at least reminder_days ago, a 'reminder' notice is issued.

        Args:
            reminder_days: Age threshold in days; 0 or less disables the sweep.
            now: Reference time (defaults to the current time).

        Returns:
            Number of reminders issued.
        """
        if reminder_days <= 0:
            return 0
        now = now or utcnow()
        threshold = now - timedelta(days=reminder_days)

        result = await self._session.execute(
            select(LegalHoldNotice)
            .join(LegalHold, LegalHoldNotice.hold_id == LegalHold.hold_id)
            .where(LegalHold.removed_at.is_(None))
            .order_by(LegalHoldNotice.sent_at.desc(), LegalHoldNotice.notice_id)
        )

        latest: dict[tuple[uuid.UUID, uuid.UUID], LegalHoldNotice] = {}
        for notice in result.scalars().all():
            latest.setdefault((notice.hold_id, notice.custodian_id), notice)

        sent = 0
        for notice in latest.values():
            if notice.acknowledged_at is not None or notice.sent_at > threshold:
                continue

            reminder = LegalHoldNotice(
                hold_id=notice.hold_id,
                custodian_id=notice.custodian_id,
                channel=REMINDER_CHANNEL,
                sent_by=SYSTEM_ACTOR,
                sent_at=now,
                notes=REMINDER_NOTES,
            )
            self._session.add(reminder)
            await self._session.flush()
            sent += 1

            await self._ledger.append(
                actor_identifier=SYSTEM_ACTOR,
                action_type=AuditActionType.CREATE,
                target_type=NOTICE_TARGET,
                target_id=reminder.notice_id,
                actor_ip=SYSTEM_ACTOR,
                details={
                    "holdId": str(reminder.hold_id),
                    "custodianId": str(reminder.custodian_id),
                    "channel": REMINDER_CHANNEL,
                    "action": "reminder",
                },
            )

        if sent:
            logger.info("Legal hold notice reminders sent: count=%d", sent)
        return sent


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None
