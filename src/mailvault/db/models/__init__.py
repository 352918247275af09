"""SQLAlchemy ORM models for MailVault.

This package contains all database models organized by domain:
- base: Common metadata, column types and enums
- archive: Ingestion sources, archived records and attachments
- compliance: eDiscovery cases, custodians, legal holds and notices
- retention: Retention policies
- audit: Hash-chained audit ledger and verification runs
- exports: Targeted and archive export jobs
- jobs: PostgreSQL-backed job queue
"""

from mailvault.db.models.archive import (
    ArchivedRecord,
    Attachment,
    IngestionSource,
    RecordAttachment,
)
from mailvault.db.models.audit import AuditLogRecord, AuditVerification
from mailvault.db.models.base import (
    AuditActionType,
    Base,
    CaseStatus,
    ExportFormat,
    ExportStatus,
    JobStatus,
    MembershipState,
    RetentionAction,
    metadata,
    utcnow,
)
from mailvault.db.models.compliance import (
    Custodian,
    EdiscoveryCase,
    HoldMembership,
    LegalHold,
    LegalHoldNotice,
)
from mailvault.db.models.exports import ArchiveExportJob, ExportJob
from mailvault.db.models.jobs import Job
from mailvault.db.models.retention import RetentionPolicy

__all__ = [
    "ArchiveExportJob",
    "ArchivedRecord",
    "Attachment",
    "AuditActionType",
    "AuditLogRecord",
    "AuditVerification",
    "Base",
    "CaseStatus",
    "Custodian",
    "EdiscoveryCase",
    "ExportFormat",
    "ExportJob",
    "ExportStatus",
    "HoldMembership",
    "IngestionSource",
    "Job",
    "JobStatus",
    "LegalHold",
    "LegalHoldNotice",
    "MembershipState",
    "RecordAttachment",
    "RetentionAction",
    "RetentionPolicy",
    "metadata",
    "utcnow",
]
