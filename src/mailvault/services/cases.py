"""eDiscovery cases and custodians."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, select

from mailvault.core.errors import ConflictError, NotFoundError, ValidationError
from mailvault.db.models.base import AuditActionType, CaseStatus, utcnow
from mailvault.db.models.compliance import Custodian, EdiscoveryCase, HoldMembership, LegalHold
from mailvault.services.audit_log import AuditLedgerService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass(frozen=True, slots=True)
class CaseSummary:
    """Hold and record counts for one case.

    Record counts are membership rows across the case's holds, so a record
    held by two holds of the same case counts twice.
    """

    case_id: uuid.UUID
    active_hold_count: int
    total_hold_count: int
    active_email_count: int
    total_email_count: int


class CaseService:
    """Manages eDiscovery cases and custodians."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: AuditLedgerService | None = None,
    ) -> None:
        self._session = session
        self._ledger = ledger or AuditLedgerService(session)

    async def create_case(
        self,
        *,
        name: str,
        actor: str,
        description: str | None = None,
        actor_ip: str | None = None,
    ) -> EdiscoveryCase:
        """Open a new case.

        Raises:
            ValidationError: Blank name.
            ConflictError: A case with that name exists.
        """
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Case name is required.")

        existing = await self._session.execute(
            select(EdiscoveryCase.case_id).where(EdiscoveryCase.name == clean_name)
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"A compliance case named {clean_name!r} already exists.")

        created = EdiscoveryCase(
            name=clean_name,
            description=_clean(description),
            status=CaseStatus.OPEN,
            created_by=actor,
        )
        self._session.add(created)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.CREATE,
            target_type="ComplianceCase",
            target_id=created.case_id,
            actor_ip=actor_ip,
            details={"caseName": created.name},
        )
        logger.info("Compliance case created: case_id=%s", created.case_id)
        return created

    async def update_case(
        self,
        case_id: uuid.UUID,
        *,
        actor: str,
        status: CaseStatus | str | None = _UNSET,
        description: str | None = _UNSET,
        actor_ip: str | None = None,
    ) -> EdiscoveryCase:
        """Change a case's status and/or description.

        Omitted arguments are left alone; a None status is ignored.

        Raises:
            NotFoundError: Unknown case.
            ValidationError: Unknown status value.
        """
        existing = await self._session.get(EdiscoveryCase, case_id)
        if existing is None:
            raise NotFoundError("Compliance case", case_id)

        changed_fields = []
        if status is not _UNSET:
            changed_fields.append("status")
            if status is not None:
                try:
                    existing.status = CaseStatus(status)
                except ValueError as e:
                    raise ValidationError(f"Invalid case status: {status}") from e
        if description is not _UNSET:
            changed_fields.append("description")
            existing.description = _clean(description)

        existing.updated_at = utcnow()
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.UPDATE,
            target_type="ComplianceCase",
            target_id=case_id,
            actor_ip=actor_ip,
            details={"changedFields": changed_fields},
        )
        return existing

    async def get_case(self, case_id: uuid.UUID) -> EdiscoveryCase:
        existing = await self._session.get(EdiscoveryCase, case_id)
        if existing is None:
            raise NotFoundError("Compliance case", case_id)
        return existing

    async def list_cases(self) -> list[EdiscoveryCase]:
        """All cases, newest first."""
        result = await self._session.execute(
            select(EdiscoveryCase).order_by(EdiscoveryCase.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_case_summaries(self) -> list[CaseSummary]:
        """Hold and record counts for every case (zeros for empty cases)."""
        hold_rows = await self._session.execute(
            select(
                LegalHold.case_id,
                func.count(),
                func.sum(case((LegalHold.removed_at.is_(None), 1), else_=0)),
            ).group_by(LegalHold.case_id)
        )
        hold_counts = {row[0]: (int(row[1]), int(row[2] or 0)) for row in hold_rows.all()}

        email_rows = await self._session.execute(
            select(
                LegalHold.case_id,
                func.count(),
                func.sum(case((HoldMembership.removed_at.is_(None), 1), else_=0)),
            )
            .select_from(HoldMembership)
            .join(LegalHold, HoldMembership.hold_id == LegalHold.hold_id)
            .group_by(LegalHold.case_id)
        )
        email_counts = {row[0]: (int(row[1]), int(row[2] or 0)) for row in email_rows.all()}

        case_ids = (await self._session.execute(select(EdiscoveryCase.case_id))).scalars().all()
        summaries = []
        for case_id in case_ids:
            total_holds, active_holds = hold_counts.get(case_id, (0, 0))
            total_emails, active_emails = email_counts.get(case_id, (0, 0))
            summaries.append(
                CaseSummary(
                    case_id=case_id,
                    active_hold_count=active_holds,
                    total_hold_count=total_holds,
                    active_email_count=active_emails,
                    total_email_count=total_emails,
                )
            )
        return summaries

    async def create_custodian(
        self,
        *,
        email: str,
        actor: str,
        display_name: str | None = None,
        source_type: str = "manual",
        actor_ip: str | None = None,
    ) -> Custodian:
        """Register a custodian; the email is stored lower-cased.

        Raises:
            ValidationError: Blank email.
            ConflictError: The email is already registered.
        """
        normalized = (email or "").strip().lower()
        if not normalized:
            raise ValidationError("Custodian email is required.")

        existing = await self._session.execute(
            select(Custodian.custodian_id).where(Custodian.email == normalized)
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Custodian already exists: {normalized}")

        created = Custodian(
            email=normalized,
            display_name=_clean(display_name),
            source_type=source_type,
        )
        self._session.add(created)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.CREATE,
            target_type="Custodian",
            target_id=created.custodian_id,
            actor_ip=actor_ip,
            details={"custodianEmail": created.email},
        )
        return created

    async def list_custodians(self) -> list[Custodian]:
        """All custodians, newest first."""
        result = await self._session.execute(
            select(Custodian).order_by(Custodian.created_at.desc())
        )
        return list(result.scalars().all())


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None
