"""Legal hold notice reminder handler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mailvault.core.settings import get_settings
from mailvault.services.hold_notices import HoldNoticeService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.db.models.jobs import Job

logger = logging.getLogger(__name__)


async def send_notice_reminders_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle hold_notice_reminder jobs.

    Expected job payload:
        reminderDays: (optional) Overrides the configured reminder threshold.

    Returns:
        Result dict with the number of reminders sent.
    """
    payload = job.payload_json or {}
    reminder_days = payload.get("reminderDays")
    if reminder_days is None:
        reminder_days = get_settings().compliance.legal_hold_notice_reminder_days

    sent = await HoldNoticeService(session).send_reminders(int(reminder_days))
    return {"remindersSent": sent, "reminderDays": int(reminder_days)}
