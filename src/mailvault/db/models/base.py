"""Base model definitions, column types, and shared enums.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Portable column types (JSONB on PostgreSQL, UTC-normalized timestamps)
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from sqlalchemy import JSON, DateTime, Enum, MetaData, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry
from sqlalchemy.types import TypeDecorator

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    Backends without native timezone support (SQLite) hand back naive
    values; those are re-attached to UTC so comparisons and ISO output
    stay consistent with PostgreSQL timestamptz.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class JSONDocument(TypeDecorator):
    """JSON column stored as JSONB on PostgreSQL and plain JSON elsewhere."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


# Plain `datetime` and `dict` annotations resolve to the portable types above
type_registry = registry(
    type_annotation_map={
        datetime: UTCDateTime(),
        dict[str, Any]: JSONDocument(),
    }
)

# UUID primary key generated client-side so rows are addressable before flush
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(UTCDateTime(), default=utcnow, nullable=False),
]

# Optional timestamp with timezone
OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(UTCDateTime(), nullable=True),
]

# Standard string lengths for common fields
EmailString = Annotated[str, mapped_column(String(320))]
ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]
PathString = Annotated[str, mapped_column(String(1024))]


class Base(DeclarativeBase):
    """Declarative base for all MailVault models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class CaseStatus(enum.Enum):
    """eDiscovery case lifecycle.

    Values:
        OPEN: Case is active and may receive new holds
        CLOSED: Case is closed; existing holds are unaffected
    """

    OPEN = "open"
    CLOSED = "closed"


class MembershipState(enum.Enum):
    """State of a hold membership row.

    Rows are never deleted; a removed row keeps its removal timestamp
    as evidence of the past match.
    """

    ACTIVE = "active"
    REMOVED = "removed"


class RetentionAction(enum.Enum):
    """Action taken when a record exceeds a policy's retention period.

    Values:
        DELETE_PERMANENTLY: Delete blob, metadata and orphaned attachments
        NOTIFY_ADMIN: Count the record for administrator review only
    """

    DELETE_PERMANENTLY = "delete_permanently"
    NOTIFY_ADMIN = "notify_admin"


class AuditActionType(enum.Enum):
    """Privileged action categories recorded in the audit ledger."""

    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ExportFormat(enum.Enum):
    """Payload format of an export container.

    Values:
        EML: One raw .eml entry per record
        MBOX: A single concatenated export.mbox entry
        JSON: export.json array plus .eml and attachment entries
    """

    EML = "eml"
    MBOX = "mbox"
    JSON = "json"


class ExportStatus(enum.Enum):
    """Lifecycle of an export job: pending -> running -> completed | failed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Completed and failed jobs never change state again."""
        return self in (ExportStatus.COMPLETED, ExportStatus.FAILED)


class JobStatus(enum.Enum):
    """Status of a background job.

    Values:
        PENDING: Job is waiting to be processed
        RUNNING: Job is currently being executed
        COMPLETED: Job finished successfully
        FAILED: Job failed after max retries
        CANCELLED: Job was manually cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def enum_type(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Named enum column type persisting member values (not member names)."""
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda members: [member.value for member in members],
    )
