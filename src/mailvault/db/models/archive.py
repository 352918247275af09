"""Archived record models: sources, records and attachments.

Records are created by ingestion (outside this package). Their content is
immutable; only the cached is_on_hold flag is mutated, by the legal hold
engine. Attachments are content-deduplicated and may be shared by
several records through the record_attachments link table.
"""

from __future__ import annotations

import uuid
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from mailvault.db.models.base import (
    Base,
    EmailString,
    MediumString,
    PathString,
    TimestampTZ,
    UUIDPrimaryKey,
)


class IngestionSource(Base):
    """A mailbox or import source that records were archived from."""

    __tablename__ = "ingestion_sources"

    source_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    name: Mapped[MediumString]


class ArchivedRecord(Base):
    """An archived email message.

    The raw message lives in object storage at storage_path. The
    is_on_hold flag is derived state: it is true exactly when an active
    membership row exists for this record under any legal hold.
    """

    __tablename__ = "archived_records"

    record_id: Mapped[UUIDPrimaryKey]
    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("ingestion_sources.source_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Mailbox owner the message was archived for
    owner_email: Mapped[EmailString]
    sender_email: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")

    sent_at: Mapped[datetime] = mapped_column(nullable=False)
    archived_at: Mapped[TimestampTZ]

    # SHA-256 of the raw message blob
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_path: Mapped[PathString]
    # Folder path inside the source mailbox (e.g. "INBOX/Projects")
    mailbox_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    is_on_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        # Snapshot export pagination order
        Index("ix_archived_records_archived_at_record_id", "archived_at", "record_id"),
        Index("ix_archived_records_sent_at", "sent_at"),
        Index("ix_archived_records_owner_email", "owner_email"),
        Index("ix_archived_records_sender_email", "sender_email"),
        Index("ix_archived_records_source_id", "source_id"),
        Index("ix_archived_records_is_on_hold", "is_on_hold"),
    )


class Attachment(Base):
    """A stored attachment blob, shared across records with identical content."""

    __tablename__ = "attachments"

    attachment_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    filename: Mapped[PathString]
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    storage_path: Mapped[PathString]


class RecordAttachment(Base):
    """Link between a record and one of its attachments."""

    __tablename__ = "record_attachments"

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("archived_records.record_id", ondelete="CASCADE"),
        primary_key=True,
    )
    attachment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("attachments.attachment_id", ondelete="CASCADE"),
        primary_key=True,
    )

    __table_args__ = (Index("ix_record_attachments_attachment_id", "attachment_id"),)
