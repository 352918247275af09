"""Retention policy management and enforcement.

This module provides:
- RetentionPolicyService: CRUD operations for retention policies
- RetentionEnforcer: the periodic run that applies enabled policies

Policies are evaluated in ascending priority (then name). A record claimed
by an earlier policy in a run is excluded from later policies, so each
record is acted on at most once per run. Records on legal hold are counted
and never touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, select

from mailvault.core.errors import (
    ConflictError,
    DeletionBlockedError,
    NotFoundError,
    ValidationError,
)
from mailvault.db.models.archive import ArchivedRecord
from mailvault.db.models.base import AuditActionType, RetentionAction, utcnow
from mailvault.db.models.retention import RetentionPolicy
from mailvault.services.audit_log import AuditLedgerService
from mailvault.services.criteria import HoldCriteria, build_criteria_clause, matches
from mailvault.services.records import iter_record_batches

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable, Mapping
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from mailvault.services.archive import ArchiveService

    RetentionNotifier = Callable[[RetentionPolicy, list[uuid.UUID]], Awaitable[None]]

logger = logging.getLogger(__name__)

POLICY_TARGET = "RetentionPolicy"
SYSTEM_ACTOR = "system"
RETENTION_REASON = "retention"

_UNSET: Any = object()


def normalize_conditions(conditions: Mapping[str, Any] | None) -> dict[str, str]:
    """Validate policy conditions and return their normalized JSON form.

    Raises:
        ValidationError: Invalid dates or an inverted date range.
    """
    criteria = HoldCriteria.from_dict(conditions)
    return criteria.to_dict() if criteria else {}


class RetentionPolicyService:
    """CRUD operations for retention policies."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: AuditLedgerService | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            session: Database session for operations.
            ledger: Audit ledger; defaults to one bound to session.
        """
        self._session = session
        self._ledger = ledger or AuditLedgerService(session)

    async def create_policy(
        self,
        *,
        name: str,
        retention_period_days: int,
        actor: str,
        action_on_expiry: RetentionAction = RetentionAction.DELETE_PERMANENTLY,
        priority: int = 100,
        conditions: Mapping[str, Any] | None = None,
        description: str | None = None,
        is_enabled: bool = True,
        actor_ip: str | None = None,
    ) -> RetentionPolicy:
        """Create a new retention policy.

        Args:
            name: Unique policy name.
            retention_period_days: Records sent more than this many days ago expire.
            actor: Who created the policy.
            action_on_expiry: What happens to expired records.
            priority: Evaluation order, lower first.
            conditions: Record selector (criteria shape); empty selects all.
            description: Human-readable policy description.
            is_enabled: Whether the policy takes part in enforcement runs.
            actor_ip: Caller address.

        Returns:
            The created RetentionPolicy.

        Raises:
            ValidationError: Blank name, non-positive period or bad conditions.
            ConflictError: A policy with that name exists.
        """
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Retention policy name is required.")
        _validate_period(retention_period_days)
        normalized = normalize_conditions(conditions)
        await self._ensure_unique_name(clean_name)

        policy = RetentionPolicy(
            name=clean_name,
            description=(description or "").strip() or None,
            priority=priority,
            retention_period_days=retention_period_days,
            conditions=normalized,
            action_on_expiry=RetentionAction(action_on_expiry),
            is_enabled=is_enabled,
        )
        self._session.add(policy)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.CREATE,
            target_type=POLICY_TARGET,
            target_id=policy.policy_id,
            actor_ip=actor_ip,
            details={"policyName": policy.name},
        )

        logger.info(
            "Created retention policy: name=%s, days=%d, action=%s",
            policy.name,
            retention_period_days,
            policy.action_on_expiry.value,
        )
        return policy

    async def get_policy(self, policy_id: uuid.UUID) -> RetentionPolicy:
        """Get a retention policy by ID.

        Raises:
            NotFoundError: Unknown policy.
        """
        policy = await self._session.get(RetentionPolicy, policy_id)
        if policy is None:
            raise NotFoundError("Retention policy", policy_id)
        return policy

    async def list_policies(self, *, enabled_only: bool = False) -> list[RetentionPolicy]:
        """Policies in evaluation order (priority, then name)."""
        query = select(RetentionPolicy).order_by(RetentionPolicy.priority, RetentionPolicy.name)
        if enabled_only:
            query = query.where(RetentionPolicy.is_enabled.is_(True))
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def update_policy(
        self,
        policy_id: uuid.UUID,
        *,
        actor: str,
        name: str = _UNSET,
        retention_period_days: int = _UNSET,
        action_on_expiry: RetentionAction = _UNSET,
        priority: int = _UNSET,
        conditions: Mapping[str, Any] | None = _UNSET,
        description: str | None = _UNSET,
        is_enabled: bool = _UNSET,
        actor_ip: str | None = None,
    ) -> RetentionPolicy:
        """Change a policy; omitted arguments keep their current value.

        Raises:
            NotFoundError: Unknown policy.
            ValidationError: Invalid name, period or conditions.
            ConflictError: The new name is taken by another policy.
        """
        policy = await self.get_policy(policy_id)
        changed_fields: list[str] = []

        if name is not _UNSET:
            clean_name = (name or "").strip()
            if not clean_name:
                raise ValidationError("Retention policy name is required.")
            if clean_name != policy.name:
                await self._ensure_unique_name(clean_name)
            policy.name = clean_name
            changed_fields.append("name")
        if retention_period_days is not _UNSET:
            _validate_period(retention_period_days)
            policy.retention_period_days = retention_period_days
            changed_fields.append("retentionPeriodDays")
        if action_on_expiry is not _UNSET:
            policy.action_on_expiry = RetentionAction(action_on_expiry)
            changed_fields.append("actionOnExpiry")
        if priority is not _UNSET:
            policy.priority = priority
            changed_fields.append("priority")
        if conditions is not _UNSET:
            policy.conditions = normalize_conditions(conditions)
            changed_fields.append("conditions")
        if description is not _UNSET:
            policy.description = (description or "").strip() or None
            changed_fields.append("description")
        if is_enabled is not _UNSET:
            policy.is_enabled = is_enabled
            changed_fields.append("isEnabled")

        policy.updated_at = utcnow()
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.UPDATE,
            target_type=POLICY_TARGET,
            target_id=policy_id,
            actor_ip=actor_ip,
            details={"changedFields": changed_fields},
        )
        return policy

    async def delete_policy(
        self,
        policy_id: uuid.UUID,
        *,
        actor: str,
        actor_ip: str | None = None,
    ) -> None:
        """Delete a policy definition (records are not affected).

        Raises:
            NotFoundError: Unknown policy.
        """
        policy = await self.get_policy(policy_id)
        policy_name = policy.name
        await self._session.delete(policy)
        await self._session.flush()

        await self._ledger.append(
            actor_identifier=actor,
            action_type=AuditActionType.DELETE,
            target_type=POLICY_TARGET,
            target_id=policy_id,
            actor_ip=actor_ip,
            details={"policyName": policy_name, "action": "policy_deleted"},
        )
        logger.info("Deleted retention policy: name=%s", policy_name)

    async def _ensure_unique_name(self, name: str) -> None:
        result = await self._session.execute(
            select(RetentionPolicy.policy_id).where(RetentionPolicy.name == name)
        )
        if result.scalar_one_or_none() is not None:
            raise ConflictError(f"A retention policy named {name!r} already exists.")


@dataclass
class RetentionRunResult:
    """Totals of one enforcement run.

    Attributes:
        processed_policies: Enabled policies evaluated.
        deleted: Records permanently deleted.
        notified: Records reported by notify_admin policies.
        skipped_on_hold: Expired records left alone because they are held.
        failed: Records whose action raised an error.
    """

    processed_policies: int = 0
    deleted: int = 0
    notified: int = 0
    skipped_on_hold: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processedPolicies": self.processed_policies,
            "deleted": self.deleted,
            "notified": self.notified,
            "skippedOnHold": self.skipped_on_hold,
            "failed": self.failed,
        }


@dataclass
class _PolicyOutcome:
    deleted: int = 0
    notified: int = 0
    skipped_on_hold: int = 0
    failed: int = 0


class RetentionEnforcer:
    """Applies enabled retention policies to expired records.

    Example:
        enforcer = RetentionEnforcer(session, archive_service)
        result = await enforcer.run()
        logger.info("Retention: %s", result.to_dict())
    """

    def __init__(
        self,
        session: AsyncSession,
        archive: ArchiveService,
        *,
        notifier: RetentionNotifier | None = None,
        ledger: AuditLedgerService | None = None,
    ) -> None:
        """Initialize the enforcer.

        Args:
            session: Database session for operations.
            archive: Performs deletions (through the legal hold check).
            notifier: Called with (policy, record_ids) for notify_admin policies.
            ledger: Audit ledger; defaults to one bound to session.
        """
        self._session = session
        self._archive = archive
        self._notifier = notifier
        self._ledger = ledger or AuditLedgerService(session)

    async def run(self, *, now: datetime | None = None) -> RetentionRunResult:
        """Evaluate every enabled policy once.

        Args:
            now: Reference time for expiry cutoffs (defaults to current time).

        Returns:
            Run totals. Individual record failures are counted, not raised.
        """
        now = now or utcnow()
        result = await self._session.execute(
            select(RetentionPolicy)
            .where(RetentionPolicy.is_enabled.is_(True))
            .order_by(RetentionPolicy.priority, RetentionPolicy.name)
        )
        policies = list(result.scalars().all())

        totals = RetentionRunResult(processed_policies=len(policies))
        claimed: set[uuid.UUID] = set()

        for policy in policies:
            outcome = await self._apply_policy(policy, now, claimed)
            totals.deleted += outcome.deleted
            totals.notified += outcome.notified
            totals.skipped_on_hold += outcome.skipped_on_hold
            totals.failed += outcome.failed

        logger.info(
            "Retention run finished: policies=%d, deleted=%d, notified=%d, "
            "skipped_on_hold=%d, failed=%d",
            totals.processed_policies,
            totals.deleted,
            totals.notified,
            totals.skipped_on_hold,
            totals.failed,
        )
        return totals

    async def _apply_policy(
        self,
        policy: RetentionPolicy,
        now: datetime,
        claimed: set[uuid.UUID],
    ) -> _PolicyOutcome:
        """Apply one policy, adding the ids it acted on to claimed."""
        outcome = _PolicyOutcome()
        policy_id = policy.policy_id
        policy_name = policy.name
        action = policy.action_on_expiry
        expiry_date = now - timedelta(days=policy.retention_period_days)

        try:
            criteria = HoldCriteria.from_dict(policy.conditions)
        except ValidationError:
            logger.exception("Retention policy has invalid conditions: name=%s", policy_name)
            return outcome

        eligible: list[uuid.UUID] = []
        clause = and_(build_criteria_clause(criteria), ArchivedRecord.sent_at <= expiry_date)
        async for batch in iter_record_batches(self._session, clause):
            for record in batch:
                if not matches(criteria, record) or record.sent_at > expiry_date:
                    continue
                if record.is_on_hold:
                    outcome.skipped_on_hold += 1
                elif record.record_id not in claimed:
                    eligible.append(record.record_id)

        # Claimed even on failure, so a lower-priority policy cannot act on it
        claimed.update(eligible)

        if action == RetentionAction.DELETE_PERMANENTLY:
            for record_id in eligible:
                await self._delete(record_id, policy_id, outcome)
        elif action == RetentionAction.NOTIFY_ADMIN:
            outcome.notified = len(eligible)
            await self._notify(policy, eligible)

        await self._ledger.append(
            actor_identifier=SYSTEM_ACTOR,
            action_type=AuditActionType.DELETE,
            target_type=POLICY_TARGET,
            target_id=policy_id,
            actor_ip=SYSTEM_ACTOR,
            details={
                "policyName": policy_name,
                "action": action.value,
                "expiryDate": expiry_date.isoformat(),
                "deletedCount": outcome.deleted,
                "notifiedCount": outcome.notified,
                "skippedOnHold": outcome.skipped_on_hold,
                "failedCount": outcome.failed,
            },
        )
        return outcome

    async def _delete(
        self,
        record_id: uuid.UUID,
        policy_id: uuid.UUID,
        outcome: _PolicyOutcome,
    ) -> None:
        try:
            async with self._session.begin_nested():
                await self._archive.delete_record(
                    record_id,
                    actor=SYSTEM_ACTOR,
                    actor_ip=SYSTEM_ACTOR,
                    reason=RETENTION_REASON,
                    policy_id=policy_id,
                    bypass_deletion_switch=True,
                )
        except DeletionBlockedError:
            # Placed on hold after candidates were collected
            outcome.skipped_on_hold += 1
        except Exception:
            logger.exception(
                "Retention deletion failed: record_id=%s, policy_id=%s", record_id, policy_id
            )
            outcome.failed += 1
        else:
            outcome.deleted += 1

    async def _notify(self, policy: RetentionPolicy, record_ids: list[uuid.UUID]) -> None:
        if self._notifier is None or not record_ids:
            return
        try:
            await self._notifier(policy, record_ids)
        except Exception:
            logger.exception("Retention notifier failed: policy=%s", policy.name)


def _validate_period(days: int) -> None:
    if days < 1:
        raise ValidationError("Retention period must be at least one day.")
