"""Tamper-evident audit ledger service.

Every privileged action (hold changes, deletions, exports, verifications)
is appended to a single hash chain. Each entry's hash covers the previous
entry's hash plus a canonical serialization of the entry, enabling
detection of:
- Entry modification (hash mismatch)
- Entry deletion or reordering (prev_hash mismatch)

Verification never mutates the ledger; its outcome is persisted separately
as an AuditVerification row.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import select, text

from mailvault.db.models.audit import AuditLogRecord, AuditVerification
from mailvault.db.models.base import AuditActionType, utcnow

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# prev_hash of the first entry in the ledger
GENESIS_HASH = "0" * 64

# Transaction-scoped advisory lock serializing appends on PostgreSQL; other
# dialects fall back to an in-process lock
LEDGER_LOCK_KEY = 0x6D61696C7661  # "mailva"

VERIFY_BATCH_SIZE = 1000

_append_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = (
    weakref.WeakKeyDictionary()
)


def _append_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _append_locks.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        _append_locks[loop] = lock
    return lock


def sha256_hex(data: bytes) -> str:
    """Default ledger hash: hex-encoded SHA-256."""
    return hashlib.sha256(data).hexdigest()


class ChainEntry(Protocol):
    """Fields of a ledger entry that take part in the hash chain."""

    entry_id: int
    actor_identifier: str
    action_type: AuditActionType
    target_type: str
    target_id: str | None
    actor_ip: str | None
    details: dict[str, Any] | None
    recorded_at: datetime
    prev_hash: str
    entry_hash: str


@dataclass(frozen=True, slots=True)
class AuditLogEntry:
    """Immutable view of a persisted ledger entry.

    Attributes:
        entry_id: Position in the global ledger sequence.
        actor_identifier: Who performed the action ('system' for jobs).
        action_type: CREATE, READ, UPDATE or DELETE.
        target_type: Kind of entity affected (e.g. 'LegalHold').
        target_id: Identifier of the affected entity.
        actor_ip: Caller address, or 'system'.
        details: Action-specific JSON details.
        recorded_at: When the entry was appended.
        prev_hash: Hash of the previous entry (or the genesis value).
        entry_hash: Hash of this entry.
    """

    entry_id: int
    actor_identifier: str
    action_type: AuditActionType
    target_type: str
    target_id: str | None
    actor_ip: str | None
    details: dict[str, Any] | None
    recorded_at: datetime
    prev_hash: str
    entry_hash: str

    @classmethod
    def from_record(cls, record: AuditLogRecord) -> AuditLogEntry:
        return cls(
            entry_id=record.entry_id,
            actor_identifier=record.actor_identifier,
            action_type=record.action_type,
            target_type=record.target_type,
            target_id=record.target_id,
            actor_ip=record.actor_ip,
            details=record.details,
            recorded_at=record.recorded_at,
            prev_hash=record.prev_hash,
            entry_hash=record.entry_hash,
        )


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome of walking the hash chain.

    Attributes:
        ok: True if every entry checked out.
        message: Human-readable summary.
        entries_checked: Number of entries examined (including the failing one).
        failed_entry_id: Id of the first entry whose hash or link is wrong.
    """

    ok: bool
    message: str
    entries_checked: int
    failed_entry_id: int | None = None


def normalize_details(details: dict[str, Any] | None) -> dict[str, Any] | None:
    """Round-trip details through JSON so the hashed form equals the stored form.

    UUIDs, datetimes and enums become strings, exactly as they will read
    back from the JSON column.
    """
    if details is None:
        return None
    return json.loads(json.dumps(details, default=_json_default))


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def canonical_entry(
    *,
    actor_identifier: str,
    action_type: AuditActionType | str,
    target_type: str,
    target_id: str | None,
    actor_ip: str | None,
    details: dict[str, Any] | None,
    recorded_at: datetime,
) -> str:
    """Deterministic JSON serialization of the hashed entry fields."""
    canonical = {
        "actionType": action_type.value
        if isinstance(action_type, AuditActionType)
        else action_type,
        "actorIdentifier": actor_identifier,
        "actorIp": actor_ip,
        "details": details,
        "recordedAt": recorded_at.isoformat(),
        "targetId": target_id,
        "targetType": target_type,
    }
    return json.dumps(canonical, sort_keys=True, separators=(",", ":"))


def compute_entry_hash(
    *,
    prev_hash: str,
    actor_identifier: str,
    action_type: AuditActionType | str,
    target_type: str,
    target_id: str | None,
    actor_ip: str | None,
    details: dict[str, Any] | None,
    recorded_at: datetime,
    hash_func: Callable[[bytes], str] = sha256_hex,
) -> str:
    """Compute an entry hash without a service instance (for verification tools).

    Returns:
        hash_func(prev_hash || canonical(entry)).
    """
    payload = canonical_entry(
        actor_identifier=actor_identifier,
        action_type=action_type,
        target_type=target_type,
        target_id=target_id,
        actor_ip=actor_ip,
        details=details,
        recorded_at=recorded_at,
    )
    return hash_func((prev_hash + payload).encode("utf-8"))


class ChainFolder:
    """Incremental verifier: feed entries in ascending id order.

    Stops recording after the first failure; later entries are ignored.
    """

    def __init__(self, hash_func: Callable[[bytes], str] = sha256_hex) -> None:
        self._hash_func = hash_func
        self._prev_hash = GENESIS_HASH
        self.entries_checked = 0
        self.failed_entry_id: int | None = None
        self.failure_reason: str | None = None

    @property
    def failed(self) -> bool:
        return self.failed_entry_id is not None

    def feed(self, entry: ChainEntry) -> bool:
        """Check one entry. Returns False once the chain is broken."""
        if self.failed:
            return False

        self.entries_checked += 1

        if entry.prev_hash != self._prev_hash:
            self.failed_entry_id = entry.entry_id
            self.failure_reason = "previous hash link does not match"
            return False

        computed = compute_entry_hash(
            prev_hash=entry.prev_hash,
            actor_identifier=entry.actor_identifier,
            action_type=entry.action_type,
            target_type=entry.target_type,
            target_id=entry.target_id,
            actor_ip=entry.actor_ip,
            details=entry.details,
            recorded_at=entry.recorded_at,
            hash_func=self._hash_func,
        )
        if computed != entry.entry_hash:
            self.failed_entry_id = entry.entry_id
            self.failure_reason = "entry hash does not match its content"
            return False

        self._prev_hash = entry.entry_hash
        return True

    def result(self) -> VerificationResult:
        if self.failed:
            return VerificationResult(
                ok=False,
                message=(
                    f"Audit log verification failed at entry {self.failed_entry_id}: "
                    f"{self.failure_reason}."
                ),
                entries_checked=self.entries_checked,
                failed_entry_id=self.failed_entry_id,
            )
        return VerificationResult(
            ok=True,
            message=f"Audit log integrity verified ({self.entries_checked} entries).",
            entries_checked=self.entries_checked,
        )


def fold_chain(
    entries: Iterable[ChainEntry],
    hash_func: Callable[[bytes], str] = sha256_hex,
) -> VerificationResult:
    """Verify an ordered sequence of entries without database access.

    Args:
        entries: Entries in ascending entry_id order.
        hash_func: Hash function the chain was built with.

    Returns:
        VerificationResult naming the first failing entry, if any.
    """
    folder = ChainFolder(hash_func)
    for entry in entries:
        if not folder.feed(entry):
            break
    return folder.result()


class AuditLedgerService:
    """Append-only, hash-chained audit ledger.

    Example:
        ledger = AuditLedgerService(session)
        await ledger.append(
            actor_identifier="alice@example.com",
            action_type=AuditActionType.CREATE,
            target_type="LegalHold",
            target_id=str(hold.hold_id),
            details={"caseId": str(case_id)},
        )

        result = await ledger.verify()
        if not result.ok:
            alert(result.failed_entry_id)
    """

    def __init__(
        self,
        session: AsyncSession,
        hash_func: Callable[[bytes], str] = sha256_hex,
    ) -> None:
        """Initialize the ledger service.

        Args:
            session: SQLAlchemy async session for database operations.
            hash_func: Collision-resistant hash returning a hex string.
        """
        self._session = session
        self._hash_func = hash_func

    async def append(
        self,
        *,
        actor_identifier: str,
        action_type: AuditActionType,
        target_type: str,
        target_id: Any = None,
        actor_ip: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Append a new entry to the ledger.

        Appends are serialized so that every entry links to the entry with
        the next-lower id. The entry becomes durable when the caller's
        transaction commits.

        Args:
            actor_identifier: Who performed the action.
            action_type: CREATE, READ, UPDATE or DELETE.
            target_type: Kind of entity affected.
            target_id: Identifier of the affected entity (stringified).
            actor_ip: Caller address.
            details: Action-specific details (JSON-serializable).

        Returns:
            The persisted entry.
        """
        normalized = normalize_details(details)
        target = str(target_id) if target_id is not None else None

        async with self._serialized_append():
            prev_hash = await self._latest_hash()
            recorded_at = utcnow()
            entry_hash = compute_entry_hash(
                prev_hash=prev_hash,
                actor_identifier=actor_identifier,
                action_type=action_type,
                target_type=target_type,
                target_id=target,
                actor_ip=actor_ip,
                details=normalized,
                recorded_at=recorded_at,
                hash_func=self._hash_func,
            )

            record = AuditLogRecord(
                actor_identifier=actor_identifier,
                action_type=action_type,
                target_type=target_type,
                target_id=target,
                actor_ip=actor_ip,
                details=normalized,
                recorded_at=recorded_at,
                prev_hash=prev_hash,
                entry_hash=entry_hash,
            )
            self._session.add(record)
            await self._session.flush()

        logger.debug(
            "Audit entry appended: entry_id=%s, action=%s, target=%s/%s",
            record.entry_id,
            action_type.value,
            target_type,
            target,
        )
        return AuditLogEntry.from_record(record)

    async def verify(self) -> VerificationResult:
        """Walk the whole ledger in ascending id order.

        Returns:
            VerificationResult; on failure failed_entry_id is the first
            entry whose link or hash is wrong.
        """
        folder = ChainFolder(self._hash_func)
        last_id: int | None = None

        while not folder.failed:
            stmt = (
                select(AuditLogRecord)
                .order_by(AuditLogRecord.entry_id)
                .limit(VERIFY_BATCH_SIZE)
                .execution_options(populate_existing=True)
            )
            if last_id is not None:
                stmt = stmt.where(AuditLogRecord.entry_id > last_id)

            result = await self._session.execute(stmt)
            batch = result.scalars().all()
            if not batch:
                break

            for record in batch:
                if not folder.feed(record):
                    break
            last_id = batch[-1].entry_id

        outcome = folder.result()
        if outcome.ok:
            logger.info("Audit ledger verified: entries=%d", outcome.entries_checked)
        else:
            logger.error(
                "Audit ledger verification failed: entry_id=%s, reason=%s",
                outcome.failed_entry_id,
                folder.failure_reason,
            )
        return outcome

    async def record_verification(
        self,
        result: VerificationResult,
        verified_by: str | None = None,
        *,
        started_at: datetime | None = None,
    ) -> AuditVerification:
        """Persist the outcome of a verification run."""
        record = AuditVerification(
            started_at=started_at or utcnow(),
            completed_at=utcnow(),
            ok=result.ok,
            message=result.message,
            entries_checked=result.entries_checked,
            failed_entry_id=result.failed_entry_id,
            verified_by=verified_by,
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def get_entries(
        self,
        *,
        actor_identifier: str | None = None,
        action_type: AuditActionType | None = None,
        target_type: str | None = None,
        target_id: Any = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        """Query ledger entries with filtering, newest first."""
        query = select(AuditLogRecord).order_by(AuditLogRecord.entry_id.desc())

        if actor_identifier is not None:
            query = query.where(AuditLogRecord.actor_identifier == actor_identifier)
        if action_type is not None:
            query = query.where(AuditLogRecord.action_type == action_type)
        if target_type is not None:
            query = query.where(AuditLogRecord.target_type == target_type)
        if target_id is not None:
            query = query.where(AuditLogRecord.target_id == str(target_id))

        query = query.limit(limit).offset(offset)
        result = await self._session.execute(query)
        return [AuditLogEntry.from_record(r) for r in result.scalars().all()]

    async def get_latest_verification(self) -> AuditVerification | None:
        query = (
            select(AuditVerification).order_by(AuditVerification.started_at.desc()).limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    @asynccontextmanager
    async def _serialized_append(self) -> AsyncIterator[None]:
        """Serialize appends across processes on PostgreSQL, in-process otherwise.

        The advisory lock is held until the caller commits, so it is never
        awaited while holding the in-process lock.
        """
        if self._session.get_bind().dialect.name == "postgresql":
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": LEDGER_LOCK_KEY}
            )
            yield
            return
        async with _append_lock():
            yield

    async def _latest_hash(self) -> str:
        query = (
            select(AuditLogRecord.entry_hash).order_by(AuditLogRecord.entry_id.desc()).limit(1)
        )
        result = await self._session.execute(query)
        latest = result.scalar_one_or_none()
        return latest if latest is not None else GENESIS_HASH
