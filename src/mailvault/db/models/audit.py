"""Audit ledger models: hash-chained log entries and verification runs.

Entries are append-only. Each entry's hash covers the previous entry's
hash, so any in-place modification or deletion breaks the chain from that
point on.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import BigInteger, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mailvault.db.models.base import (
    AuditActionType,
    Base,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_type,
)

# SQLite only autoincrements INTEGER PRIMARY KEY columns
SequenceId = BigInteger().with_variant(Integer(), "sqlite")


class AuditLogRecord(Base):
    """Tamper-evident audit log entry.

    entry_id is a single global monotonic sequence; the chain is walked in
    ascending entry_id order.
    """

    __tablename__ = "audit_log_entries"

    entry_id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)

    actor_identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[AuditActionType] = mapped_column(
        enum_type(AuditActionType, "audit_action_type"),
        nullable=False,
    )
    target_type: Mapped[str] = mapped_column(String(100), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    recorded_at: Mapped[TimestampTZ]

    # Chain link: hash of the previous entry, or the genesis value
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_audit_log_entries_recorded_at", "recorded_at"),
        Index("ix_audit_log_entries_actor", "actor_identifier"),
        Index("ix_audit_log_entries_target", "target_type", "target_id"),
        Index("ix_audit_log_entries_action_type", "action_type"),
    )


class AuditVerification(Base):
    """Outcome of one ledger verification run."""

    __tablename__ = "audit_verifications"

    verification_id: Mapped[UUIDPrimaryKey]
    started_at: Mapped[TimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]
    ok: Mapped[bool] = mapped_column(Boolean, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    entries_checked: Mapped[int] = mapped_column(default=0, nullable=False)
    failed_entry_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (Index("ix_audit_verifications_started_at", "started_at"),)
