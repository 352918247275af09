"""MailVault Core module.

Shared components used across all services:
- Configuration management
- Error taxonomy
"""

from mailvault.core.config import (
    ComplianceSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    ExportSettings,
    IndexingSettings,
    QueueSettings,
    S3Settings,
    Settings,
    StorageSettings,
)
from mailvault.core.errors import (
    ComplianceError,
    ConflictError,
    DeletionBlockedError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from mailvault.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ComplianceError",
    "ComplianceSettings",
    "ConfigValidationError",
    "ConflictError",
    "DatabaseSettings",
    "DeletionBlockedError",
    "Environment",
    "ExportSettings",
    "IndexingSettings",
    "NotFoundError",
    "QueueSettings",
    "S3Settings",
    "Settings",
    "StorageSettings",
    "TransientError",
    "ValidationError",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
