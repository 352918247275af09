"""MailVault - compliance and archival integrity engine for email archives.

Provides legal hold membership reconciliation, priority-ordered retention
enforcement, a hash-chained audit ledger and streaming archive exports
for an email archive with eDiscovery obligations.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
