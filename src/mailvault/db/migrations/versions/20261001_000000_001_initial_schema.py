"""Initial schema with all core tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-01 00:00:00.000000+00:00

Creates all tables for MailVault:
- ingestion_sources, archived_records, attachments, record_attachments (archive)
- ediscovery_cases, custodians, legal_holds, legal_hold_memberships,
  legal_hold_notices (eDiscovery)
- retention_policies (retention)
- audit_log_entries, audit_verifications (audit ledger)
- export_jobs, archive_export_jobs (exports)
- jobs (background processing)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _uuid_pk(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    """Apply migration: Initial schema with all core tables."""
    # Create enum types first
    case_status = postgresql.ENUM("open", "closed", name="case_status", create_type=False)
    case_status.create(op.get_bind(), checkfirst=True)

    retention_action = postgresql.ENUM(
        "delete_permanently", "notify_admin", name="retention_action", create_type=False
    )
    retention_action.create(op.get_bind(), checkfirst=True)

    audit_action_type = postgresql.ENUM(
        "CREATE", "READ", "UPDATE", "DELETE", name="audit_action_type", create_type=False
    )
    audit_action_type.create(op.get_bind(), checkfirst=True)

    export_format = postgresql.ENUM("eml", "mbox", "json", name="export_format", create_type=False)
    export_format.create(op.get_bind(), checkfirst=True)

    export_status = postgresql.ENUM(
        "pending", "running", "completed", "failed", name="export_status", create_type=False
    )
    export_status.create(op.get_bind(), checkfirst=True)

    job_status = postgresql.ENUM(
        "pending",
        "running",
        "completed",
        "failed",
        "cancelled",
        name="job_status",
        create_type=False,
    )
    job_status.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # Archive domain
    # =========================================================================
    op.create_table(
        "ingestion_sources",
        _uuid_pk("source_id"),
        _timestamp("created_at"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("source_id", name=op.f("pk_ingestion_sources")),
    )

    op.create_table(
        "archived_records",
        _uuid_pk("record_id"),
        sa.Column("source_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("owner_email", sa.String(320), nullable=False),
        sa.Column("sender_email", sa.String(320), nullable=False, server_default=""),
        sa.Column("subject", sa.Text(), nullable=False, server_default=""),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("archived_at"),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("storage_path", sa.String(1024), nullable=False),
        sa.Column("mailbox_path", sa.String(1024), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_on_hold", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(
            ["source_id"],
            ["ingestion_sources.source_id"],
            name=op.f("fk_archived_records_source_id_ingestion_sources"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("record_id", name=op.f("pk_archived_records")),
    )
    op.create_index(
        op.f("ix_archived_records_archived_at_record_id"),
        "archived_records",
        ["archived_at", "record_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_archived_records_sent_at"), "archived_records", ["sent_at"], unique=False
    )
    op.create_index(
        op.f("ix_archived_records_owner_email"), "archived_records", ["owner_email"], unique=False
    )
    op.create_index(
        op.f("ix_archived_records_sender_email"),
        "archived_records",
        ["sender_email"],
        unique=False,
    )
    op.create_index(
        op.f("ix_archived_records_source_id"), "archived_records", ["source_id"], unique=False
    )
    op.create_index(
        op.f("ix_archived_records_is_on_hold"), "archived_records", ["is_on_hold"], unique=False
    )

    op.create_table(
        "attachments",
        _uuid_pk("attachment_id"),
        _timestamp("created_at"),
        sa.Column("filename", sa.String(1024), nullable=False),
        sa.Column("mime_type", sa.String(255), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("storage_path", sa.String(1024), nullable=False),
        sa.PrimaryKeyConstraint("attachment_id", name=op.f("pk_attachments")),
        sa.UniqueConstraint("content_hash", name=op.f("uq_attachments_content_hash")),
    )

    op.create_table(
        "record_attachments",
        sa.Column("record_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("attachment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["archived_records.record_id"],
            name=op.f("fk_record_attachments_record_id_archived_records"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["attachment_id"],
            ["attachments.attachment_id"],
            name=op.f("fk_record_attachments_attachment_id_attachments"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("record_id", "attachment_id", name=op.f("pk_record_attachments")),
    )
    op.create_index(
        op.f("ix_record_attachments_attachment_id"),
        "record_attachments",
        ["attachment_id"],
        unique=False,
    )

    # =========================================================================
    # eDiscovery domain
    # =========================================================================
    op.create_table(
        "ediscovery_cases",
        _uuid_pk("case_id"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", case_status, nullable=False, server_default=sa.text("'open'")),
        sa.Column("created_by", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("case_id", name=op.f("pk_ediscovery_cases")),
        sa.UniqueConstraint("name", name=op.f("uq_ediscovery_cases_name")),
    )

    op.create_table(
        "custodians",
        _uuid_pk("custodian_id"),
        _timestamp("created_at"),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("source_type", sa.String(50), nullable=False, server_default="manual"),
        sa.PrimaryKeyConstraint("custodian_id", name=op.f("pk_custodians")),
        sa.UniqueConstraint("email", name=op.f("uq_custodians_email")),
    )

    op.create_table(
        "legal_holds",
        _uuid_pk("hold_id"),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("custodian_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("criteria", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("applied_by", sa.String(255), nullable=False),
        _timestamp("applied_at"),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["case_id"],
            ["ediscovery_cases.case_id"],
            name=op.f("fk_legal_holds_case_id_ediscovery_cases"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["custodian_id"],
            ["custodians.custodian_id"],
            name=op.f("fk_legal_holds_custodian_id_custodians"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("hold_id", name=op.f("pk_legal_holds")),
    )
    op.create_index(op.f("ix_legal_holds_case_id"), "legal_holds", ["case_id"], unique=False)
    op.create_index(
        op.f("ix_legal_holds_removed_at"), "legal_holds", ["removed_at"], unique=False
    )

    op.create_table(
        "legal_hold_memberships",
        sa.Column("hold_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("record_id", postgresql.UUID(as_uuid=True), nullable=False),
        _timestamp("matched_at"),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("matched_by", sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(
            ["hold_id"],
            ["legal_holds.hold_id"],
            name=op.f("fk_legal_hold_memberships_hold_id_legal_holds"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["archived_records.record_id"],
            name=op.f("fk_legal_hold_memberships_record_id_archived_records"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("hold_id", "record_id", name=op.f("pk_legal_hold_memberships")),
    )
    op.create_index(
        op.f("ix_legal_hold_memberships_record_id"),
        "legal_hold_memberships",
        ["record_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_legal_hold_memberships_active"),
        "legal_hold_memberships",
        ["hold_id", "removed_at"],
        unique=False,
    )

    op.create_table(
        "legal_hold_notices",
        _uuid_pk("notice_id"),
        sa.Column("hold_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("custodian_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("channel", sa.String(50), nullable=False, server_default="manual"),
        _timestamp("sent_at"),
        sa.Column("sent_by", sa.String(255), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["hold_id"],
            ["legal_holds.hold_id"],
            name=op.f("fk_legal_hold_notices_hold_id_legal_holds"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["custodian_id"],
            ["custodians.custodian_id"],
            name=op.f("fk_legal_hold_notices_custodian_id_custodians"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("notice_id", name=op.f("pk_legal_hold_notices")),
    )
    op.create_index(
        op.f("ix_legal_hold_notices_hold_id"), "legal_hold_notices", ["hold_id"], unique=False
    )
    op.create_index(
        op.f("ix_legal_hold_notices_custodian_id"),
        "legal_hold_notices",
        ["custodian_id"],
        unique=False,
    )

    # =========================================================================
    # Retention domain
    # =========================================================================
    op.create_table(
        "retention_policies",
        _uuid_pk("policy_id"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("retention_period_days", sa.Integer(), nullable=False),
        sa.Column(
            "conditions",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "action_on_expiry",
            retention_action,
            nullable=False,
            server_default=sa.text("'delete_permanently'"),
        ),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("policy_id", name=op.f("pk_retention_policies")),
        sa.UniqueConstraint("name", name=op.f("uq_retention_policies_name")),
    )
    op.create_index(
        op.f("ix_retention_policies_enabled_priority"),
        "retention_policies",
        ["is_enabled", "priority"],
        unique=False,
    )

    # =========================================================================
    # Audit ledger
    # =========================================================================
    op.create_table(
        "audit_log_entries",
        sa.Column("entry_id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("actor_identifier", sa.String(255), nullable=False),
        sa.Column("action_type", audit_action_type, nullable=False),
        sa.Column("target_type", sa.String(100), nullable=False),
        sa.Column("target_id", sa.String(255), nullable=True),
        sa.Column("actor_ip", sa.String(64), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _timestamp("recorded_at"),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.PrimaryKeyConstraint("entry_id", name=op.f("pk_audit_log_entries")),
    )
    op.create_index(
        op.f("ix_audit_log_entries_recorded_at"),
        "audit_log_entries",
        ["recorded_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_audit_log_entries_actor"),
        "audit_log_entries",
        ["actor_identifier"],
        unique=False,
    )
    op.create_index(
        op.f("ix_audit_log_entries_target"),
        "audit_log_entries",
        ["target_type", "target_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_audit_log_entries_action_type"),
        "audit_log_entries",
        ["action_type"],
        unique=False,
    )

    op.create_table(
        "audit_verifications",
        _uuid_pk("verification_id"),
        _timestamp("started_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ok", sa.Boolean(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("entries_checked", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_entry_id", sa.BigInteger(), nullable=True),
        sa.Column("verified_by", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("verification_id", name=op.f("pk_audit_verifications")),
    )
    op.create_index(
        op.f("ix_audit_verifications_started_at"),
        "audit_verifications",
        ["started_at"],
        unique=False,
    )

    # =========================================================================
    # Exports
    # =========================================================================
    op.create_table(
        "export_jobs",
        _uuid_pk("export_job_id"),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("format", export_format, nullable=False),
        sa.Column("status", export_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column(
            "query",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("file_path", sa.String(1024), nullable=True),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("attachment_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        _timestamp("created_at"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["case_id"],
            ["ediscovery_cases.case_id"],
            name=op.f("fk_export_jobs_case_id_ediscovery_cases"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("export_job_id", name=op.f("pk_export_jobs")),
    )
    op.create_index(op.f("ix_export_jobs_status"), "export_jobs", ["status"], unique=False)
    op.create_index(op.f("ix_export_jobs_case_id"), "export_jobs", ["case_id"], unique=False)

    op.create_table(
        "archive_export_jobs",
        _uuid_pk("archive_export_job_id"),
        sa.Column("format", export_format, nullable=False),
        sa.Column("status", export_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("file_path", sa.String(1024), nullable=True),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("attachment_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=False),
        _timestamp("created_at"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("archive_export_job_id", name=op.f("pk_archive_export_jobs")),
    )
    op.create_index(
        op.f("ix_archive_export_jobs_status"), "archive_export_jobs", ["status"], unique=False
    )

    # =========================================================================
    # Jobs domain (background processing)
    # =========================================================================
    op.create_table(
        "jobs",
        _uuid_pk("job_id"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column("status", job_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column(
            "lock_timeout_seconds",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("300"),
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "base_backoff_seconds",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("queue", sa.String(100), nullable=False, server_default="default"),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_jobs")),
    )
    op.create_index(
        op.f("ix_jobs_queue_pending"),
        "jobs",
        ["queue", "status", "run_at", "priority"],
        unique=False,
    )
    op.create_index(op.f("ix_jobs_status"), "jobs", ["status"], unique=False)
    op.create_index(op.f("ix_jobs_job_type"), "jobs", ["job_type"], unique=False)
    op.create_index(op.f("ix_jobs_correlation_id"), "jobs", ["correlation_id"], unique=False)
    op.create_index(op.f("ix_jobs_completed_at"), "jobs", ["completed_at"], unique=False)


def downgrade() -> None:
    """Revert migration: Initial schema with all core tables."""
    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_table("jobs")
    op.drop_table("archive_export_jobs")
    op.drop_table("export_jobs")
    op.drop_table("audit_verifications")
    op.drop_table("audit_log_entries")
    op.drop_table("retention_policies")
    op.drop_table("legal_hold_notices")
    op.drop_table("legal_hold_memberships")
    op.drop_table("legal_holds")
    op.drop_table("custodians")
    op.drop_table("ediscovery_cases")
    op.drop_table("record_attachments")
    op.drop_table("attachments")
    op.drop_table("archived_records")
    op.drop_table("ingestion_sources")

    # Drop enum types
    for enum_name in (
        "job_status",
        "export_status",
        "export_format",
        "audit_action_type",
        "retention_action",
        "case_status",
    ):
        postgresql.ENUM(name=enum_name).drop(op.get_bind(), checkfirst=True)
