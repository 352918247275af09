"""Error taxonomy shared by the compliance services.

Each error maps to a caller-facing outcome:
- ValidationError: bad selector, criteria or date range (4xx-equivalent)
- NotFoundError: unknown hold, case, custodian, record or job (404-equivalent)
- ConflictError: state conflict such as a released hold or duplicate name (409-equivalent)
- TransientError: retryable failure, left to the job queue's backoff policy
"""

from __future__ import annotations


class ComplianceError(Exception):
    """Base exception for compliance engine operations.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        """Initialize with error message.

        Args:
            message: Human-readable error description.
        """
        self.message = message
        super().__init__(message)


class ValidationError(ComplianceError):
    """Raised when input (criteria, dates, selectors) is invalid."""


class NotFoundError(ComplianceError):
    """Raised when a referenced entity does not exist.

    Attributes:
        entity: Entity type that was not found.
        entity_id: Identifier that was looked up.
    """

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ConflictError(ComplianceError):
    """Raised when an operation conflicts with current state."""


class DeletionBlockedError(ConflictError):
    """Raised when the deletion guard refuses to delete a record."""


class TransientError(ComplianceError):
    """Raised for failures that may succeed on retry."""
