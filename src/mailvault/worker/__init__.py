"""MailVault worker service.

PostgreSQL-backed background job runner for:
- Retention enforcement (deletion through the legal hold guard)
- Periodic audit ledger verification
- Targeted and full-archive exports
- Legal hold notice reminders
- Applying active holds to newly archived records

Usage:
    # Run as module
    python -m mailvault.worker

    # Or through the console script
    mailvault-worker
"""

from mailvault.worker.main import Worker, WorkerConfig, run

__all__ = ["Worker", "WorkerConfig", "run"]
