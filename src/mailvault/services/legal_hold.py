"""Legal hold engine.

Maintains the membership relation between legal holds and archived
records, and the derived ArchivedRecord.is_on_hold flag:

    is_on_hold == (an active membership exists under any hold)

Membership rows are never deleted. A record leaving a hold's matching set
is soft-removed (removed_at set) and reactivated if it matches again.
Every change to a hold's membership runs under that hold's in-process lock
and a row lock on the hold, so concurrent create/update/release/apply calls
for the same hold are linearized.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, select, update

from mailvault.core.errors import ConflictError, NotFoundError, ValidationError
from mailvault.db.models.archive import ArchivedRecord
from mailvault.db.models.base import AuditActionType, utcnow
from mailvault.db.models.compliance import Custodian, EdiscoveryCase, HoldMembership, LegalHold
from mailvault.services.audit_log import AuditLedgerService
from mailvault.services.criteria import HoldCriteria, build_criteria_clause, matches
from mailvault.services.records import chunked, iter_record_batches
from mailvault.services.search import NullSearchIndex, SearchIndex, best_effort_reindex

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

HOLD_TARGET = "LegalHold"
RECORD_TARGET = "ArchivedEmail"

SYSTEM_ACTOR = "system"

_UNSET: Any = object()

_hold_locks: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]
] = weakref.WeakKeyDictionary()


def hold_lock(hold_id: uuid.UUID) -> asyncio.Lock:
    """In-process lock for one hold id on the running event loop.

    Locks are dropped once no coroutine holds a reference to them.
    """
    loop = asyncio.get_running_loop()
    locks = _hold_locks.get(loop)
    if locks is None:
        locks = weakref.WeakValueDictionary()
        _hold_locks[loop] = locks
    lock = locks.get(hold_id)
    if lock is None:
        lock = asyncio.Lock()
        locks[hold_id] = lock
    return lock


def diff_membership(
    matching_ids: Iterable[uuid.UUID],
    active_ids: Iterable[uuid.UUID],
) -> tuple[list[uuid.UUID], list[uuid.UUID]]:
    """Compare a hold's new matching set with its active membership.

    Args:
        matching_ids: Records the hold selects now.
        active_ids: Records with an active membership row.

    Returns:
        (to_add, to_remove): matching ids without an active membership, and
        active ids that no longer match. Both keep input order and contain
        no duplicates.
    """
    matching = list(dict.fromkeys(matching_ids))
    active = list(dict.fromkeys(active_ids))
    matching_set = set(matching)
    active_set = set(active)
    to_add = [record_id for record_id in matching if record_id not in active_set]
    to_remove = [record_id for record_id in active if record_id not in matching_set]
    return to_add, to_remove


def coerce_criteria(value: HoldCriteria | Mapping[str, Any] | None) -> HoldCriteria | None:
    """Normalize criteria input; empty criteria become None."""
    if value is None:
        return None
    if isinstance(value, HoldCriteria):
        return value if value.to_dict() else None
    return HoldCriteria.from_dict(value)


@dataclass(frozen=True, slots=True)
class HoldWithCounts:
    """A hold together with its membership counts."""

    hold: LegalHold
    email_count: int
    active_email_count: int


@dataclass(frozen=True, slots=True)
class HeldRecord:
    """One membership row joined with its record."""

    membership: HoldMembership
    record: ArchivedRecord


@dataclass(frozen=True, slots=True)
class HeldRecordPage:
    items: list[HeldRecord]
    total: int
    page: int
    limit: int


class LegalHoldService:
    """Creates, updates and releases legal holds and keeps memberships current.

    Example:
        service = LegalHoldService(session, search_index)
        view = await service.create_hold(
            case_id=case.case_id,
            custodian_id=custodian.custodian_id,
            criteria={"subjectContains": "merger"},
            actor="alice@example.com",
        )
        await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        search_index: SearchIndex | None = None,
        ledger: AuditLedgerService | None = None,
    ) -> None:
        """Initialize the legal hold service.

        Args:
            session: SQLAlchemy async session for database operations.
            search_index: Receives re-index requests for records whose
                flag may have changed. Defaults to a no-op index.
            ledger: Audit ledger; defaults to one bound to session.
        """
        self._session = session
        self._search_index = search_index or NullSearchIndex()
        self._ledger = ledger or AuditLedgerService(session)

    async def create_hold(
        self,
        *,
        case_id: uuid.UUID,
        actor: str,
        custodian_id: uuid.UUID | None = None,
        criteria: HoldCriteria | Mapping[str, Any] | None = None,
        reason: str | None = None,
        actor_ip: str | None = None,
    ) -> HoldWithCounts:
        """Create a hold and place every currently matching record under it.

        Raises:
            ValidationError: Neither a custodian nor criteria, or invalid criteria.
            NotFoundError: Unknown case or custodian.
        """
        normalized = coerce_criteria(criteria)
        if custodian_id is None and normalized is None:
            raise ValidationError("Legal hold requires a custodian or at least one criteria field.")

        if await self._session.get(EdiscoveryCase, case_id) is None:
            raise NotFoundError("Compliance case", case_id)
        if custodian_id is not None and await self._session.get(Custodian, custodian_id) is None:
            raise NotFoundError("Custodian", custodian_id)

        hold = LegalHold(
            hold_id=uuid.uuid4(),
            case_id=case_id,
            custodian_id=custodian_id,
            criteria=normalized.to_dict() if normalized else None,
            reason=_clean(reason),
            applied_by=actor,
            applied_at=utcnow(),
        )
        self._session.add(hold)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.CREATE,
            target_type=HOLD_TARGET,
            target_id=hold.hold_id,
            actor_ip=actor_ip,
            details={
                "caseId": str(case_id),
                "custodianId": str(custodian_id) if custodian_id else None,
            },
        )

        async with self._locked_hold(hold.hold_id) as locked:
            matching = await self._matching_ids(locked)
            await self._activate_memberships(locked.hold_id, matching, actor)
            await self.recalculate_flags(matching)

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.UPDATE,
            target_type=HOLD_TARGET,
            target_id=hold.hold_id,
            actor_ip=actor_ip,
            details={"action": "membership_applied", "matchedEmailCount": len(matching)},
        )

        logger.info(
            "Legal hold created: hold_id=%s, case_id=%s, matched=%d",
            hold.hold_id,
            case_id,
            len(matching),
        )
        return await self.get_hold(hold.hold_id)

    async def update_hold(
        self,
        hold_id: uuid.UUID,
        *,
        actor: str,
        custodian_id: uuid.UUID | None = _UNSET,
        criteria: HoldCriteria | Mapping[str, Any] | None = _UNSET,
        reason: str | None = _UNSET,
        actor_ip: str | None = None,
    ) -> HoldWithCounts:
        """Change a hold's selector or reason and re-diff its membership.

        Omitted arguments keep their current value; passing None for
        custodian_id or criteria clears it.

        Raises:
            NotFoundError: Unknown hold or custodian.
            ConflictError: The hold has been released.
            ValidationError: The result would select nothing by construction.
        """
        changed_fields = [
            key
            for key, value in (
                ("custodianId", custodian_id),
                ("holdCriteria", criteria),
                ("reason", reason),
            )
            if value is not _UNSET
        ]

        async with self._locked_hold(hold_id) as hold:
            if not hold.is_active:
                raise ConflictError("Cannot update a released legal hold.")

            next_custodian_id = hold.custodian_id
            if custodian_id is not _UNSET:
                if custodian_id is not None and (
                    await self._session.get(Custodian, custodian_id) is None
                ):
                    raise NotFoundError("Custodian", custodian_id)
                next_custodian_id = custodian_id

            next_criteria = HoldCriteria.from_dict(hold.criteria)
            if criteria is not _UNSET:
                next_criteria = coerce_criteria(criteria)

            if next_custodian_id is None and next_criteria is None:
                raise ValidationError(
                    "Legal hold requires a custodian or at least one criteria field."
                )

            hold.custodian_id = next_custodian_id
            hold.criteria = next_criteria.to_dict() if next_criteria else None
            if reason is not _UNSET:
                hold.reason = _clean(reason)
            await self._session.flush()

            await self._ledger.append(
                actor_identifier=actor,
                action_type=AuditActionType.UPDATE,
                target_type=HOLD_TARGET,
                target_id=hold_id,
                actor_ip=actor_ip,
                details={"changedFields": changed_fields},
            )

            matching = await self._matching_ids(hold)
            active = await self._member_ids(hold_id, active_only=True)
            to_add, to_remove = diff_membership(matching, active)

            await self._activate_memberships(hold_id, to_add, actor)
            await self._deactivate_memberships(hold_id, to_remove)
            await self.recalculate_flags(list(dict.fromkeys([*active, *matching])))

            await self._ledger.append(
                actor_identifier=actor,
                action_type=AuditActionType.UPDATE,
                target_type=HOLD_TARGET,
                target_id=hold_id,
                actor_ip=actor_ip,
                details={
                    "action": "membership_recalculated",
                    "matchedEmailCount": len(matching),
                    "addedEmailCount": len(to_add),
                    "removedEmailCount": len(to_remove),
                },
            )

            logger.info(
                "Legal hold updated: hold_id=%s, matched=%d, added=%d, removed=%d",
                hold_id,
                len(matching),
                len(to_add),
                len(to_remove),
            )
            return await self.get_hold(hold_id)

    async def release_hold(
        self,
        hold_id: uuid.UUID,
        *,
        actor: str,
        actor_ip: str | None = None,
    ) -> None:
        """Release a hold, soft-removing all of its memberships.

        Releasing an already released hold does nothing.

        Raises:
            NotFoundError: Unknown hold.
        """
        async with self._locked_hold(hold_id) as hold:
            if not hold.is_active:
                logger.debug("Legal hold already released: hold_id=%s", hold_id)
                return

            hold.removed_at = utcnow()
            await self._session.flush()

            await self._ledger.append(
                actor_identifier=actor,
                action_type=AuditActionType.UPDATE,
                target_type=HOLD_TARGET,
                target_id=hold_id,
                actor_ip=actor_ip,
                details={"action": "release"},
            )

            affected = await self._member_ids(hold_id, active_only=False)
            active = await self._member_ids(hold_id, active_only=True)
            await self._deactivate_memberships(hold_id, active)
            await self.recalculate_flags(affected)

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.UPDATE,
            target_type=HOLD_TARGET,
            target_id=hold_id,
            actor_ip=actor_ip,
            details={"action": "membership_released", "removedEmailCount": len(active)},
        )
        logger.info("Legal hold released: hold_id=%s, removed=%d", hold_id, len(active))

    async def apply_to_new_record(
        self,
        record_id: uuid.UUID,
        actor: str = SYSTEM_ACTOR,
    ) -> list[uuid.UUID]:
        """Place a newly archived record under every active hold it matches.

        Safe to call repeatedly: holds the record is already actively held
        by are skipped, and nothing is written when no new hold matches.

        Returns:
            Ids of the holds that gained the record.

        Raises:
            NotFoundError: Unknown record.
        """
        record = await self._session.get(ArchivedRecord, record_id)
        if record is None:
            raise NotFoundError("Archived record", record_id)

        already_held = set(
            (
                await self._session.execute(
                    select(HoldMembership.hold_id).where(
                        HoldMembership.record_id == record_id,
                        HoldMembership.removed_at.is_(None),
                    )
                )
            )
            .scalars()
            .all()
        )

        stmt = (
            select(LegalHold, Custodian.email)
            .outerjoin(Custodian, LegalHold.custodian_id == Custodian.custodian_id)
            .where(LegalHold.removed_at.is_(None))
            .order_by(LegalHold.applied_at, LegalHold.hold_id)
        )
        candidates = [
            hold.hold_id
            for hold, custodian_email in (await self._session.execute(stmt)).all()
            if hold.hold_id not in already_held
            and matches(HoldCriteria.from_dict(hold.criteria), record, custodian_email)
        ]

        added: list[uuid.UUID] = []
        for hold_id in candidates:
            async with self._locked_hold(hold_id) as hold:
                # Released or re-scoped while waiting for the lock
                if not hold.is_active or not matches(
                    HoldCriteria.from_dict(hold.criteria),
                    record,
                    await self._custodian_email(hold),
                ):
                    continue
                if await self._activate_memberships(hold_id, [record_id], actor):
                    added.append(hold_id)

        if not added:
            return []

        await self.recalculate_flags([record_id])
        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.UPDATE,
            target_type=RECORD_TARGET,
            target_id=record_id,
            actor_ip=SYSTEM_ACTOR,
            details={
                "action": "legal_hold_applied",
                "holdIds": [str(hold_id) for hold_id in added],
            },
        )
        logger.info("Legal holds applied to record: record_id=%s, holds=%d", record_id, len(added))
        return added

    async def recalculate_flags(self, record_ids: Sequence[uuid.UUID]) -> None:
        """Recompute is_on_hold for each record from active memberships.

        Consults every hold, not only the one being changed, then asks the
        search index to refresh the records.
        """
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return

        for chunk in chunked(ids):
            result = await self._session.execute(
                select(HoldMembership.record_id)
                .where(
                    HoldMembership.record_id.in_(chunk),
                    HoldMembership.removed_at.is_(None),
                )
                .distinct()
            )
            held = set(result.scalars().all())
            released = [record_id for record_id in chunk if record_id not in held]

            if held:
                await self._session.execute(
                    update(ArchivedRecord)
                    .where(ArchivedRecord.record_id.in_(list(held)))
                    .values(is_on_hold=True)
                )
            if released:
                await self._session.execute(
                    update(ArchivedRecord)
                    .where(ArchivedRecord.record_id.in_(released))
                    .values(is_on_hold=False)
                )

        await best_effort_reindex(self._search_index, ids)

    async def list_holds(self) -> list[HoldWithCounts]:
        """All holds, newest first, with membership counts."""
        result = await self._session.execute(
            select(LegalHold).order_by(LegalHold.applied_at.desc())
        )
        holds = result.scalars().all()
        counts = await self._membership_counts()
        return [
            HoldWithCounts(
                hold=hold,
                email_count=counts.get(hold.hold_id, (0, 0))[0],
                active_email_count=counts.get(hold.hold_id, (0, 0))[1],
            )
            for hold in holds
        ]

    async def get_hold(self, hold_id: uuid.UUID) -> HoldWithCounts:
        """Fetch one hold with its membership counts.

        Raises:
            NotFoundError: Unknown hold.
        """
        hold = await self._session.get(LegalHold, hold_id)
        if hold is None:
            raise NotFoundError("Legal hold", hold_id)
        total, active = (await self._membership_counts(hold_id)).get(hold_id, (0, 0))
        return HoldWithCounts(hold=hold, email_count=total, active_email_count=active)

    async def list_held_records(
        self,
        hold_id: uuid.UUID,
        page: int = 1,
        limit: int = 25,
    ) -> HeldRecordPage:
        """Page through a hold's memberships (active and removed), newest match first."""
        page = max(page, 1)
        total = (
            await self._session.execute(
                select(func.count())
                .select_from(HoldMembership)
                .where(HoldMembership.hold_id == hold_id)
            )
        ).scalar_one()

        result = await self._session.execute(
            select(HoldMembership, ArchivedRecord)
            .join(ArchivedRecord, HoldMembership.record_id == ArchivedRecord.record_id)
            .where(HoldMembership.hold_id == hold_id)
            .order_by(HoldMembership.matched_at.desc(), HoldMembership.record_id)
            .limit(limit)
            .offset((page - 1) * limit)
        )
        items = [HeldRecord(membership=m, record=r) for m, r in result.all()]
        return HeldRecordPage(items=items, total=total, page=page, limit=limit)

    async def get_active_member_ids(self, hold_id: uuid.UUID) -> list[uuid.UUID]:
        """Ids of records actively held by one hold."""
        return await self._member_ids(hold_id, active_only=True)

    @asynccontextmanager
    async def _locked_hold(self, hold_id: uuid.UUID) -> AsyncIterator[LegalHold]:
        async with hold_lock(hold_id):
            result = await self._session.execute(
                select(LegalHold)
                .where(LegalHold.hold_id == hold_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            hold = result.scalar_one_or_none()
            if hold is None:
                raise NotFoundError("Legal hold", hold_id)
            yield hold

    async def _matching_ids(self, hold: LegalHold) -> list[uuid.UUID]:
        """Ids of every record the hold currently selects."""
        custodian_email = await self._custodian_email(hold)
        criteria = HoldCriteria.from_dict(hold.criteria)
        clause = build_criteria_clause(criteria, custodian_email)

        matching: list[uuid.UUID] = []
        async for batch in iter_record_batches(self._session, clause):
            matching.extend(
                record.record_id
                for record in batch
                if matches(criteria, record, custodian_email)
            )
        return matching

    async def _custodian_email(self, hold: LegalHold) -> str | None:
        if hold.custodian_id is None:
            return None
        custodian = await self._session.get(Custodian, hold.custodian_id)
        return custodian.email if custodian else None

    async def _member_ids(self, hold_id: uuid.UUID, *, active_only: bool) -> list[uuid.UUID]:
        stmt = (
            select(HoldMembership.record_id)
            .where(HoldMembership.hold_id == hold_id)
            .order_by(HoldMembership.matched_at, HoldMembership.record_id)
        )
        if active_only:
            stmt = stmt.where(HoldMembership.removed_at.is_(None))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _activate_memberships(
        self,
        hold_id: uuid.UUID,
        record_ids: Sequence[uuid.UUID],
        actor: str | None,
    ) -> list[uuid.UUID]:
        """Insert missing memberships and reactivate soft-removed ones.

        Must run under the hold's lock.

        Returns:
            Ids whose membership was created or reactivated.
        """
        now = utcnow()
        activated: list[uuid.UUID] = []
        for chunk in chunked(list(dict.fromkeys(record_ids))):
            result = await self._session.execute(
                select(HoldMembership).where(
                    HoldMembership.hold_id == hold_id,
                    HoldMembership.record_id.in_(chunk),
                )
            )
            existing = {m.record_id: m for m in result.scalars().all()}

            for record_id in chunk:
                membership = existing.get(record_id)
                if membership is None:
                    self._session.add(
                        HoldMembership(
                            hold_id=hold_id,
                            record_id=record_id,
                            matched_at=now,
                            matched_by=actor,
                        )
                    )
                elif membership.removed_at is not None:
                    membership.removed_at = None
                    membership.matched_at = now
                    membership.matched_by = actor
                else:
                    continue
                activated.append(record_id)

        await self._session.flush()
        return activated

    async def _deactivate_memberships(
        self, hold_id: uuid.UUID, record_ids: Sequence[uuid.UUID]
    ) -> None:
        now = utcnow()
        for chunk in chunked(list(record_ids)):
            await self._session.execute(
                update(HoldMembership)
                .where(
                    HoldMembership.hold_id == hold_id,
                    HoldMembership.record_id.in_(chunk),
                    HoldMembership.removed_at.is_(None),
                )
                .values(removed_at=now)
            )

    async def _membership_counts(
        self, hold_id: uuid.UUID | None = None
    ) -> dict[uuid.UUID, tuple[int, int]]:
        """(total, active) membership counts per hold."""
        stmt = select(
            HoldMembership.hold_id,
            func.count(),
            func.sum(case((HoldMembership.removed_at.is_(None), 1), else_=0)),
        ).group_by(HoldMembership.hold_id)
        if hold_id is not None:
            stmt = stmt.where(HoldMembership.hold_id == hold_id)
        result = await self._session.execute(stmt)
        return {row[0]: (int(row[1]), int(row[2] or 0)) for row in result.all()}


def _clean(value: str | None) -> str | None:
    """Trim a free-text value; blank becomes None."""
    if value is None:
        return None
    return value.strip() or None
