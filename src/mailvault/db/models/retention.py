"""Retention policy model.

Policies are evaluated by ascending priority; a record claimed by an
earlier policy in a run is excluded from later ones.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mailvault.db.models.base import (
    Base,
    RetentionAction,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_type,
)


class RetentionPolicy(Base):
    """Retention policy definition.

    conditions uses the same shape as legal hold criteria and selects the
    records the policy applies to; an empty object selects every record.
    """

    __tablename__ = "retention_policies"

    policy_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lower values are evaluated first
    priority: Mapped[int] = mapped_column(default=100, nullable=False)

    retention_period_days: Mapped[int] = mapped_column(nullable=False)

    conditions: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)

    action_on_expiry: Mapped[RetentionAction] = mapped_column(
        enum_type(RetentionAction, "retention_action"),
        nullable=False,
        default=RetentionAction.DELETE_PERMANENTLY,
    )

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_retention_policies_enabled_priority", "is_enabled", "priority"),)
