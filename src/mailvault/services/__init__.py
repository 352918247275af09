"""MailVault service layer.

This package contains the compliance services and their collaborators:
- HoldCriteria / matches: Normalized criteria and the record predicate
- LegalHoldService: Hold lifecycle and record-to-hold membership
- RetentionEnforcer: Priority-ordered retention policy enforcement
- AuditLedgerService: Hash-chained, append-only audit ledger
- ExportService / ArchiveExportService: Streaming eml/mbox/json exports
- ArchiveService: Record deletion behind the deletion guard
- S3StorageGateway: Object storage over S3
- JobQueueService: PostgreSQL-backed background job processing
"""

from mailvault.services.archive import ArchiveService
from mailvault.services.audit_log import AuditLedgerService, VerificationResult
from mailvault.services.cases import CaseService
from mailvault.services.criteria import HoldCriteria, matches
from mailvault.services.export import ArchiveExportService, ExportService
from mailvault.services.hold_notices import HoldNoticeService
from mailvault.services.job_queue import JobQueueService, JobType, Queues
from mailvault.services.legal_hold import LegalHoldService
from mailvault.services.retention import (
    RetentionEnforcer,
    RetentionPolicyService,
    RetentionRunResult,
)
from mailvault.services.search import JobQueueSearchIndex, NullSearchIndex, SearchIndex
from mailvault.services.storage import S3StorageGateway, StorageGateway

__all__ = [
    "ArchiveExportService",
    "ArchiveService",
    "AuditLedgerService",
    "CaseService",
    "ExportService",
    "HoldCriteria",
    "HoldNoticeService",
    "JobQueueSearchIndex",
    "JobQueueService",
    "JobType",
    "LegalHoldService",
    "NullSearchIndex",
    "Queues",
    "RetentionEnforcer",
    "RetentionPolicyService",
    "RetentionRunResult",
    "S3StorageGateway",
    "SearchIndex",
    "StorageGateway",
    "VerificationResult",
    "matches",
]
