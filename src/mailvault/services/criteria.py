"""Record selectors shared by legal holds and retention policies.

A HoldCriteria is an immutable, normalized selector over archived records.
Specified fields are AND-ed together; unspecified fields impose nothing.
The pure matches() predicate is the source of truth; build_criteria_clause()
produces an equivalent SQL filter used to narrow candidates in the database
before the predicate confirms each one.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, fields
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, true

from mailvault.core.errors import ValidationError
from mailvault.db.models.archive import ArchivedRecord

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.sql.elements import ColumnElement

# JSON key for each criteria field
_FIELD_KEYS = {
    "owner_email": "ownerEmail",
    "source_id": "sourceId",
    "sender_email": "senderEmail",
    "subject_contains": "subjectContains",
    "start_date": "startDate",
    "end_date": "endDate",
}

_LOWERCASED = frozenset({"owner_email", "sender_email"})


def parse_criteria_date(value: str) -> datetime | None:
    """Parse an ISO-8601 date or timestamp.

    Date-only strings are UTC midnight; naive timestamps are taken as UTC.

    Returns:
        Aware UTC datetime, or None if the string is not a valid date.
    """
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed_date = date.fromisoformat(value)
        except ValueError:
            return None
        parsed = datetime(parsed_date.year, parsed_date.month, parsed_date.day)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _lower(value: str | None) -> str:
    return (value or "").lower()


@dataclass(frozen=True, slots=True)
class HoldCriteria:
    """Normalized record selector.

    Build instances with HoldCriteria.parse() (or from_dict()) so that
    values are trimmed, emails lower-cased and dates validated.

    Attributes:
        owner_email: Mailbox owner (case-insensitive equality).
        source_id: Ingestion source id (exact match).
        sender_email: Sender address (case-insensitive equality).
        subject_contains: Case-insensitive substring of the subject.
        start_date: Inclusive lower bound on sent_at (ISO string as given).
        end_date: Inclusive upper bound on sent_at (ISO string as given).
    """

    owner_email: str | None = None
    source_id: str | None = None
    sender_email: str | None = None
    subject_contains: str | None = None
    start_date: str | None = None
    end_date: str | None = None

    @classmethod
    def parse(
        cls,
        *,
        owner_email: str | None = None,
        source_id: Any = None,
        sender_email: str | None = None,
        subject_contains: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> HoldCriteria | None:
        """Normalize and validate raw criteria values.

        Returns:
            The criteria, or None when nothing remains after normalization.

        Raises:
            ValidationError: On an unparseable date or an inverted range.
        """
        raw = {
            "owner_email": owner_email,
            "source_id": str(source_id) if source_id is not None else None,
            "sender_email": sender_email,
            "subject_contains": subject_contains,
            "start_date": start_date,
            "end_date": end_date,
        }
        values: dict[str, str] = {}
        for name, value in raw.items():
            if value is None:
                continue
            stripped = str(value).strip()
            if not stripped:
                continue
            values[name] = stripped.lower() if name in _LOWERCASED else stripped

        if "source_id" in values:
            values["source_id"] = _canonical_id(values["source_id"])

        if not values:
            return None

        criteria = cls(**values)
        criteria._validate_dates()
        return criteria

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> HoldCriteria | None:
        """Build criteria from a camelCase (or snake_case) mapping."""
        if not data:
            return None
        kwargs = {name: data.get(key, data.get(name)) for name, key in _FIELD_KEYS.items()}
        return cls.parse(**kwargs)

    def to_dict(self) -> dict[str, str]:
        """camelCase mapping of the specified fields, for JSON storage."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                result[_FIELD_KEYS[f.name]] = value
        return result

    @property
    def start_at(self) -> datetime | None:
        return parse_criteria_date(self.start_date) if self.start_date else None

    @property
    def end_at(self) -> datetime | None:
        return parse_criteria_date(self.end_date) if self.end_date else None

    def _validate_dates(self) -> None:
        start = self.start_at
        end = self.end_at
        if self.start_date and start is None:
            raise ValidationError("Invalid startDate format.")
        if self.end_date and end is None:
            raise ValidationError("Invalid endDate format.")
        if start is not None and end is not None and start > end:
            raise ValidationError("startDate cannot be later than endDate.")


def matches(
    criteria: HoldCriteria | None,
    record: ArchivedRecord,
    custodian_email: str | None = None,
) -> bool:
    """Decide whether a record satisfies a selector.

    Args:
        criteria: Normalized criteria, or None for no field constraints.
        record: Archived record to test.
        custodian_email: When set, the record's owner must equal it
            (case-insensitive), AND-ed with any criteria.

    Returns:
        True if every specified constraint holds.
    """
    if custodian_email and _lower(record.owner_email) != _lower(custodian_email):
        return False

    if criteria is None:
        return True

    if criteria.owner_email and _lower(record.owner_email) != criteria.owner_email:
        return False

    if criteria.source_id and str(record.source_id) != criteria.source_id:
        return False

    if criteria.sender_email and _lower(record.sender_email) != criteria.sender_email:
        return False

    if criteria.subject_contains and criteria.subject_contains.lower() not in _lower(
        record.subject
    ):
        return False

    start = criteria.start_at
    if start is not None and record.sent_at < start:
        return False

    end = criteria.end_at
    return not (end is not None and record.sent_at > end)


def build_criteria_clause(
    criteria: HoldCriteria | None,
    custodian_email: str | None = None,
) -> ColumnElement[bool]:
    """SQL filter over ArchivedRecord equivalent to matches()."""
    conditions: list[ColumnElement[bool]] = []

    if custodian_email:
        conditions.append(func.lower(ArchivedRecord.owner_email) == custodian_email.lower())

    if criteria is not None:
        if criteria.owner_email:
            conditions.append(func.lower(ArchivedRecord.owner_email) == criteria.owner_email)
        if criteria.source_id:
            conditions.append(ArchivedRecord.source_id == _as_uuid(criteria.source_id))
        if criteria.sender_email:
            conditions.append(func.lower(ArchivedRecord.sender_email) == criteria.sender_email)
        if criteria.subject_contains:
            conditions.append(
                func.lower(ArchivedRecord.subject).contains(
                    criteria.subject_contains.lower(), autoescape=True
                )
            )
        if criteria.start_at is not None:
            conditions.append(ArchivedRecord.sent_at >= criteria.start_at)
        if criteria.end_at is not None:
            conditions.append(ArchivedRecord.sent_at <= criteria.end_at)

    if not conditions:
        return true()
    return and_(*conditions)


def _as_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        # Not a UUID: no record can match
        return uuid.UUID(int=0)


def _canonical_id(value: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return value
