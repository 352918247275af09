"""eDiscovery models: cases, custodians, legal holds, memberships and notices.

Covers the legal hold lifecycle:
- A hold belongs to a case and selects records by custodian, criteria or both
- Membership rows link holds to the records they currently (or once) held
- Notices track custodian notification and acknowledgement
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mailvault.db.models.base import (
    Base,
    CaseStatus,
    MediumString,
    MembershipState,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_type,
)


class EdiscoveryCase(Base):
    """A litigation or investigation matter grouping legal holds."""

    __tablename__ = "ediscovery_cases"

    case_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[CaseStatus] = mapped_column(
        enum_type(CaseStatus, "case_status"),
        nullable=False,
        default=CaseStatus.OPEN,
    )
    created_by: Mapped[MediumString]


class Custodian(Base):
    """A person whose mailbox can be placed on hold by identity."""

    __tablename__ = "custodians"

    custodian_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    # Stored lower-cased
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")


class LegalHold(Base):
    """A preservation instruction over a set of archived records.

    A hold always has a custodian, non-empty criteria, or both. Once
    removed_at is set the hold is released and never changes again.
    """

    __tablename__ = "legal_holds"

    hold_id: Mapped[UUIDPrimaryKey]
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("ediscovery_cases.case_id", ondelete="CASCADE"),
        nullable=False,
    )
    custodian_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("custodians.custodian_id", ondelete="CASCADE"),
        nullable=True,
    )

    # Normalized HoldCriteria as a JSON object (None when custodian-only)
    criteria: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    applied_by: Mapped[MediumString]
    applied_at: Mapped[TimestampTZ]
    removed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_legal_holds_case_id", "case_id"),
        Index("ix_legal_holds_removed_at", "removed_at"),
    )

    @property
    def is_active(self) -> bool:
        """True until the hold is released."""
        return self.removed_at is None


class HoldMembership(Base):
    """Record-to-hold membership.

    Append-only: a row is soft-removed by setting removed_at and may be
    reactivated later, but the (hold_id, record_id) pair is never
    duplicated or deleted.
    """

    __tablename__ = "legal_hold_memberships"

    hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("legal_holds.hold_id", ondelete="CASCADE"),
        primary_key=True,
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("archived_records.record_id", ondelete="CASCADE"),
        primary_key=True,
    )
    matched_at: Mapped[TimestampTZ]
    removed_at: Mapped[OptionalTimestampTZ]
    matched_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_legal_hold_memberships_record_id", "record_id"),
        Index("ix_legal_hold_memberships_active", "hold_id", "removed_at"),
    )

    @property
    def state(self) -> MembershipState:
        """Active or removed, derived from removed_at."""
        return MembershipState.ACTIVE if self.removed_at is None else MembershipState.REMOVED


class LegalHoldNotice(Base):
    """A hold notice sent to a custodian, optionally acknowledged."""

    __tablename__ = "legal_hold_notices"

    notice_id: Mapped[UUIDPrimaryKey]
    hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("legal_holds.hold_id", ondelete="CASCADE"),
        nullable=False,
    )
    custodian_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("custodians.custodian_id", ondelete="CASCADE"),
        nullable=False,
    )
    # 'manual' for operator-issued notices, 'reminder' for automated sweeps
    channel: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")
    sent_at: Mapped[TimestampTZ]
    sent_by: Mapped[MediumString]
    acknowledged_at: Mapped[OptionalTimestampTZ]
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_legal_hold_notices_hold_id", "hold_id"),
        Index("ix_legal_hold_notices_custodian_id", "custodian_id"),
    )
