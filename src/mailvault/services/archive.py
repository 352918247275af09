"""Archived record deletion behind the deletion guard.

The guard has two independent checks:
- Deletion must be enabled for the instance (retention skips this check)
- The record must not be held by any legal hold (nobody skips this check)

Deleting a record first removes its rows: attachment links, attachments no
other record references, hold memberships and the record itself. The audit
entry is appended and the search document dropped. Blobs go last, so a
failure before that point leaves the record and its content intact.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, exists, func, select

from mailvault.core.errors import DeletionBlockedError, NotFoundError
from mailvault.db.models.archive import ArchivedRecord, Attachment, RecordAttachment
from mailvault.db.models.base import AuditActionType
from mailvault.db.models.compliance import HoldMembership
from mailvault.services.audit_log import AuditLedgerService
from mailvault.services.search import EMAILS_INDEX, NullSearchIndex, SearchIndex, best_effort_delete

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.services.storage import StorageGateway

logger = logging.getLogger(__name__)

RECORD_TARGET = "ArchivedEmail"

DELETION_DISABLED_MESSAGE = "Deletion is disabled for this instance."
RECORD_ON_HOLD_MESSAGE = "Archived email is on legal hold and cannot be deleted."


class ArchiveService:
    """Deletes archived records and their blobs."""

    def __init__(
        self,
        session: AsyncSession,
        storage: StorageGateway,
        *,
        enable_deletion: bool = False,
        search_index: SearchIndex | None = None,
        ledger: AuditLedgerService | None = None,
    ) -> None:
        """Initialize the archive service.

        Args:
            session: SQLAlchemy async session for database operations.
            storage: Object storage holding record and attachment blobs.
            enable_deletion: Instance-wide switch for manual deletion.
            search_index: Receives document deletions. Defaults to a no-op index.
            ledger: Audit ledger; defaults to one bound to session.
        """
        self._session = session
        self._storage = storage
        self._enable_deletion = enable_deletion
        self._search_index = search_index or NullSearchIndex()
        self._ledger = ledger or AuditLedgerService(session)

    def assert_deletion_enabled(self) -> None:
        """Raises DeletionBlockedError if manual deletion is switched off."""
        if not self._enable_deletion:
            raise DeletionBlockedError(DELETION_DISABLED_MESSAGE)

    async def is_held(self, record: ArchivedRecord) -> bool:
        """True if the record's flag is set or any active membership exists."""
        if record.is_on_hold:
            return True
        result = await self._session.execute(
            select(
                exists().where(
                    HoldMembership.record_id == record.record_id,
                    HoldMembership.removed_at.is_(None),
                )
            )
        )
        return bool(result.scalar())

    async def delete_record(
        self,
        record_id: uuid.UUID,
        *,
        actor: str,
        actor_ip: str | None = None,
        reason: str = "manual",
        policy_id: uuid.UUID | None = None,
        bypass_deletion_switch: bool = False,
    ) -> None:
        """Permanently delete a record, its blob and orphaned attachments.

        Args:
            record_id: Record to delete.
            actor: Who requested the deletion.
            actor_ip: Caller address.
            reason: Recorded in the audit entry ('manual', 'retention_policy').
            policy_id: Retention policy responsible, if any.
            bypass_deletion_switch: Skip the enable_deletion check. The legal
                hold check always applies.

        Raises:
            DeletionBlockedError: Deletion disabled, or the record is held.
            NotFoundError: Unknown record.
            StorageError: A blob could not be deleted.
        """
        if not bypass_deletion_switch:
            self.assert_deletion_enabled()

        result = await self._session.execute(
            select(ArchivedRecord)
            .where(ArchivedRecord.record_id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("Archived record", record_id)
        if await self.is_held(record):
            raise DeletionBlockedError(RECORD_ON_HOLD_MESSAGE)

        orphaned_paths = await self._delete_attachments(record_id)
        record_path = record.storage_path

        # Only soft-removed memberships can remain at this point
        await self._session.execute(
            delete(HoldMembership).where(HoldMembership.record_id == record_id)
        )
        await self._session.delete(record)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.DELETE,
            target_type=RECORD_TARGET,
            target_id=record_id,
            actor_ip=actor_ip,
            details={
                "reason": reason,
                "policyId": str(policy_id) if policy_id else None,
            },
        )
        await best_effort_delete(self._search_index, [record_id], EMAILS_INDEX)

        await self._storage.delete(record_path)
        for path in orphaned_paths:
            await self._storage.delete(path)
        logger.info("Archived record deleted: record_id=%s, reason=%s", record_id, reason)

    async def _delete_attachments(self, record_id: uuid.UUID) -> list[str]:
        """Unlink a record's attachments and delete the unreferenced rows.

        Returns:
            Storage paths of the deleted attachments, for blob removal.
        """
        orphaned_paths: list[str] = []
        result = await self._session.execute(
            select(Attachment)
            .join(RecordAttachment, RecordAttachment.attachment_id == Attachment.attachment_id)
            .where(RecordAttachment.record_id == record_id)
        )
        attachments = result.scalars().all()

        for attachment in attachments:
            await self._session.execute(
                delete(RecordAttachment).where(
                    RecordAttachment.record_id == record_id,
                    RecordAttachment.attachment_id == attachment.attachment_id,
                )
            )
            remaining = (
                await self._session.execute(
                    select(func.count())
                    .select_from(RecordAttachment)
                    .where(RecordAttachment.attachment_id == attachment.attachment_id)
                )
            ).scalar_one()
            if remaining == 0:
                orphaned_paths.append(attachment.storage_path)
                await self._session.delete(attachment)
                logger.debug("Orphaned attachment deleted: attachment_id=%s", attachment.attachment_id)
        return orphaned_paths
