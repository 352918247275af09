"""Audit ledger verification handler.

Walks the whole hash chain, stores the outcome as an AuditVerification row
and appends an audit entry describing the run. Verification itself never
mutates existing ledger entries.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mailvault.db.models.base import AuditActionType, utcnow
from mailvault.services.audit_log import AuditLedgerService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.db.models.jobs import Job

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
VERIFICATION_TARGET = "AuditLogVerification"


async def verify_audit_ledger_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle audit_verify jobs.

    Returns:
        Result dict with ok, message, entriesChecked and failedEntryId.
    """
    ledger = AuditLedgerService(session)
    started_at = utcnow()

    result = await ledger.verify()
    verification = await ledger.record_verification(
        result, SYSTEM_ACTOR, started_at=started_at
    )
    await ledger.append(
        actor_identifier=SYSTEM_ACTOR,
        action_type=AuditActionType.CREATE,
        target_type=VERIFICATION_TARGET,
        target_id=verification.verification_id,
        actor_ip=SYSTEM_ACTOR,
        details={
            "ok": result.ok,
            "message": result.message,
            "failedEntryId": result.failed_entry_id,
        },
    )

    if not result.ok:
        logger.warning(
            "Audit ledger integrity check failed: job_id=%s, failed_entry_id=%s",
            job.job_id,
            result.failed_entry_id,
        )
    return {
        "ok": result.ok,
        "message": result.message,
        "entriesChecked": result.entries_checked,
        "failedEntryId": result.failed_entry_id,
    }
