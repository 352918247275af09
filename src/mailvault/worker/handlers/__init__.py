"""Job handlers for the MailVault worker service.

Each handler is responsible for processing a specific job type:
- retention: Enforce retention policies
- audit_verify: Verify the audit ledger hash chain
- export: Build targeted and full-archive export containers
- notices: Send legal hold notice reminders
- holds: Place newly archived records under matching holds
- indexing: Forward index updates to a search engine sink
"""

from mailvault.worker.handlers.audit_verify import verify_audit_ledger_handler
from mailvault.worker.handlers.export import archive_export_job_handler, export_job_handler
from mailvault.worker.handlers.holds import apply_holds_to_record_handler
from mailvault.worker.handlers.indexing import (
    DocumentSink,
    make_delete_documents_handler,
    make_index_records_handler,
)
from mailvault.worker.handlers.notices import send_notice_reminders_handler
from mailvault.worker.handlers.retention import enforce_retention_handler

__all__ = [
    "DocumentSink",
    "apply_holds_to_record_handler",
    "archive_export_job_handler",
    "enforce_retention_handler",
    "export_job_handler",
    "make_delete_documents_handler",
    "make_index_records_handler",
    "send_notice_reminders_handler",
    "verify_audit_ledger_handler",
]
