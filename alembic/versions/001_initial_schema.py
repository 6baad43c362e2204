"""Initial DSR compliance schema.

Revision ID: 001
Revises:
Create Date: 2026-10-18

Adds:
- businesses, customers, review_requests, processing_objections
  (platform records the engine acts on; PII only in encrypted_fields)
- data_subject_requests, workflow_transitions
- identity_verifications (challenges inline as JSONB)
- retention_policies, archival_jobs
- deletion_requests, deletion_certificates
- compliance_audit_events (hash-chained, append-only)
- encryption_keys (wrapped per-record data keys, tombstoned on destroy)

Indexes:
- ix_customers_business_email_index              (business_id, email_index)
- ix_customers_business_phone_index              (business_id, phone_index)
- ix_identity_verifications_secret_digests       GIN (secret_digests)
- ix_identity_verifications_contact              (business_id, requestor_email, created_at)
- ix_compliance_audit_events_business_created    (business_id, created_at)
- uq_compliance_audit_events_chain               UNIQUE (business_id, sequence)
- archival_jobs.dedupe_key                       UNIQUE

Notes:
- No enum types; status values stored as VARCHAR for schema flexibility.
- deletion_certificates.deletion_request_id is RESTRICT: a certified
  deletion request can never be removed.
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid(name: str, *, nullable: bool = False, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), nullable=nullable, **kwargs)


def _ts(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _jsonb(name: str, default: str = "[]") -> sa.Column:
    return sa.Column(name, postgresql.JSONB, nullable=False, server_default=default)


def upgrade() -> None:
    """Create every table of the compliance engine."""

    # ------------------------------------------------------------------
    # Platform records
    # ------------------------------------------------------------------
    op.create_table(
        "businesses",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "customers",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        _ts("created_at"),
        _ts("last_activity_at"),
        sa.Column(
            "encrypted_fields",
            postgresql.JSONB,
            nullable=False,
            server_default="{}",
            comment="PII field name -> versioned AES-GCM ciphertext",
        ),
        sa.Column("email_index", sa.String(64), nullable=True),
        sa.Column("phone_index", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="ACTIVE"),
        sa.Column("consent_state", sa.String(32), nullable=False, server_default="GRANTED"),
        _ts("consent_updated_at", nullable=True),
        sa.Column("processing_restricted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("restriction_reason", sa.Text(), nullable=True),
        _ts("archived_at", nullable=True),
        _ts("anonymized_at", nullable=True),
        _ts("deleted_at", nullable=True),
        sa.ForeignKeyConstraint(
            ["business_id"],
            ["businesses.id"],
            name="fk_customers_business_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_customers_business_id", "customers", ["business_id"])
    op.create_index("ix_customers_business_email_index", "customers", ["business_id", "email_index"])
    op.create_index("ix_customers_business_phone_index", "customers", ["business_id", "phone_index"])

    op.create_table(
        "review_requests",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        _uuid("customer_id"),
        sa.Column("channel", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        _ts("created_at"),
        _ts("last_activity_at"),
        _jsonb("encrypted_fields", "{}"),
        _ts("archived_at", nullable=True),
        _ts("anonymized_at", nullable=True),
        _ts("deleted_at", nullable=True),
        sa.ForeignKeyConstraint(
            ["business_id"],
            ["businesses.id"],
            name="fk_review_requests_business_id",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["customer_id"],
            ["customers.id"],
            name="fk_review_requests_customer_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_review_requests_business_id", "review_requests", ["business_id"])
    op.create_index("ix_review_requests_customer_id", "review_requests", ["customer_id"])

    op.create_table(
        "processing_objections",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        _uuid("customer_id"),
        _uuid("request_id"),
        _jsonb("processing_purposes"),
        sa.Column("grounds", sa.Text(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_processing_objections_business_id", "processing_objections", ["business_id"])
    op.create_index("ix_processing_objections_customer_id", "processing_objections", ["customer_id"])

    # ------------------------------------------------------------------
    # data_subject_requests / workflow_transitions
    # ------------------------------------------------------------------
    op.create_table(
        "data_subject_requests",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        sa.Column(
            "right_type",
            sa.String(32),
            nullable=False,
            comment="ACCESS | RECTIFICATION | ERASURE | RESTRICT | PORTABILITY | OBJECT | CONSENT_WITHDRAW",
        ),
        sa.Column("requestor_email", sa.String(254), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column(
            "due_date",
            sa.DateTime(timezone=True),
            nullable=False,
            comment="Statutory deadline; never moved, see extended_due_date",
        ),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("requestor_phone", sa.String(32), nullable=True),
        _jsonb("identity_data", "{}"),
        sa.Column("channel", sa.String(32), nullable=False),
        sa.Column("priority", sa.String(16), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _jsonb("request_data", "{}"),
        _uuid("verification_id", nullable=True),
        _uuid("customer_id", nullable=True),
        _ts("extended_due_date", nullable=True),
        sa.Column("extension_reason", sa.Text(), nullable=True),
        _ts("completed_at", nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _jsonb("response_data", "{}"),
        sa.ForeignKeyConstraint(
            ["business_id"],
            ["businesses.id"],
            name="fk_data_subject_requests_business_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_data_subject_requests_business_id", "data_subject_requests", ["business_id"])
    op.create_index("ix_data_subject_requests_status", "data_subject_requests", ["status"])

    op.create_table(
        "workflow_transitions",
        _uuid("id", primary_key=True),
        _uuid("request_id"),
        _uuid("business_id"),
        sa.Column("from_status", sa.String(32), nullable=False),
        sa.Column("to_status", sa.String(32), nullable=False),
        sa.Column("actor", sa.String(32), nullable=False),
        _ts("created_at"),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        _jsonb("metadata", "{}"),
        sa.ForeignKeyConstraint(
            ["request_id"],
            ["data_subject_requests.id"],
            name="fk_workflow_transitions_request_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_workflow_transitions_request_id", "workflow_transitions", ["request_id"])

    # ------------------------------------------------------------------
    # identity_verifications
    # ------------------------------------------------------------------
    op.create_table(
        "identity_verifications",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        sa.Column("requestor_email", sa.String(254), nullable=False),
        sa.Column("method", sa.String(32), nullable=False),
        sa.Column("risk_level", sa.String(16), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        _jsonb("challenges"),
        _jsonb("secret_digests"),
        _uuid("request_id", nullable=True),
        sa.Column("requestor_phone", sa.String(32), nullable=True),
        _uuid("customer_id", nullable=True),
        sa.Column("confidence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        _jsonb("risk_factors"),
        _ts("completed_at", nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default="0",
            comment="Optimistic concurrency counter, bumped on every save",
        ),
    )
    op.create_index("ix_identity_verifications_business_id", "identity_verifications", ["business_id"])
    op.create_index("ix_identity_verifications_status", "identity_verifications", ["status"])
    op.create_index("ix_identity_verifications_request_id", "identity_verifications", ["request_id"])
    op.create_index(
        "ix_identity_verifications_secret_digests",
        "identity_verifications",
        ["secret_digests"],
        postgresql_using="gin",
    )
    op.create_index(
        "ix_identity_verifications_contact",
        "identity_verifications",
        ["business_id", "requestor_email", "created_at"],
    )

    # ------------------------------------------------------------------
    # retention_policies / archival_jobs
    # ------------------------------------------------------------------
    op.create_table(
        "retention_policies",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("data_category", sa.String(32), nullable=False),
        _jsonb("entity_types"),
        sa.Column("retention_period", sa.Integer(), nullable=False),
        sa.Column("retention_unit", sa.String(16), nullable=False),
        sa.Column("action_after_retention", sa.String(16), nullable=False),
        sa.Column("legal_basis", sa.Text(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("jurisdiction", sa.String(8), nullable=False, server_default="UK"),
        sa.Column("auto_apply", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _jsonb("conditions", "{}"),
        sa.Column(
            "delete_inactive_after_days",
            sa.Integer(),
            nullable=True,
            comment="Inactivity age escalating customer PII to DELETE; NULL uses the configured default",
        ),
        _ts("last_executed", nullable=True),
        _ts("next_execution", nullable=True),
        sa.ForeignKeyConstraint(
            ["business_id"],
            ["businesses.id"],
            name="fk_retention_policies_business_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_retention_policies_business_id", "retention_policies", ["business_id"])
    op.create_index("ix_retention_policies_next_execution", "retention_policies", ["next_execution"])

    op.create_table(
        "archival_jobs",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        sa.Column("job_type", sa.String(16), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        _jsonb("target_entity_ids"),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        sa.Column(
            "dedupe_key",
            sa.String(64),
            nullable=False,
            unique=True,
            comment="Hash of policy, action, entity type and targets; blocks duplicate jobs",
        ),
        _ts("created_at"),
        _ts("updated_at"),
        _uuid("policy_id", nullable=True),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_by", sa.String(255), nullable=True),
        _ts("approved_at", nullable=True),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        _jsonb("completed_item_ids"),
        _jsonb("failed_items", "{}"),
        _ts("heartbeat_at", nullable=True),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        _uuid("deletion_request_id", nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["policy_id"],
            ["retention_policies.id"],
            name="fk_archival_jobs_policy_id",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_archival_jobs_business_id", "archival_jobs", ["business_id"])
    op.create_index("ix_archival_jobs_status", "archival_jobs", ["status"])
    op.create_index("ix_archival_jobs_policy_id", "archival_jobs", ["policy_id"])

    # ------------------------------------------------------------------
    # deletion_requests / deletion_certificates
    # ------------------------------------------------------------------
    op.create_table(
        "deletion_requests",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        sa.Column("scope", sa.String(32), nullable=False),
        sa.Column("target_entity_type", sa.String(32), nullable=False),
        _jsonb("target_entity_ids"),
        sa.Column("method", sa.String(32), nullable=False),
        sa.Column("legal_basis", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(16), nullable=False),
        sa.Column("request_type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("requested_by", sa.String(255), nullable=True),
        _uuid("policy_id", nullable=True),
        _uuid("gdpr_request_id", nullable=True),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_by", sa.String(255), nullable=True),
        _ts("approved_at", nullable=True),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        _jsonb("completed_item_ids"),
        _jsonb("failed_items", "{}"),
        _jsonb("destroyed_key_refs"),
        _ts("heartbeat_at", nullable=True),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        _uuid("certificate_id", nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_deletion_requests_business_id", "deletion_requests", ["business_id"])
    op.create_index("ix_deletion_requests_status", "deletion_requests", ["status"])
    op.create_index("ix_deletion_requests_gdpr_request_id", "deletion_requests", ["gdpr_request_id"])

    op.create_table(
        "deletion_certificates",
        _uuid("id", primary_key=True),
        _uuid("deletion_request_id", unique=True),
        _uuid("business_id"),
        sa.Column("method", sa.String(32), nullable=False),
        sa.Column("scope", sa.String(32), nullable=False),
        sa.Column("records_deleted", sa.Integer(), nullable=False),
        sa.Column("records_failed", sa.Integer(), nullable=False),
        sa.Column("key_destruction_proof", sa.String(64), nullable=False),
        sa.Column("signature", sa.String(64), nullable=False, comment="HMAC-SHA256, hex"),
        sa.Column("legal_basis", sa.Text(), nullable=False),
        sa.Column("verification_status", sa.String(16), nullable=False),
        _ts("issued_at"),
        _ts("valid_until"),
        _uuid("gdpr_request_id", nullable=True),
        sa.ForeignKeyConstraint(
            ["deletion_request_id"],
            ["deletion_requests.id"],
            name="fk_deletion_certificates_deletion_request_id",
            ondelete="RESTRICT",
        ),
    )
    op.create_index("ix_deletion_certificates_business_id", "deletion_certificates", ["business_id"])

    # ------------------------------------------------------------------
    # compliance_audit_events
    # ------------------------------------------------------------------
    op.create_table(
        "compliance_audit_events",
        _uuid("id", primary_key=True),
        _uuid("business_id"),
        sa.Column("sequence", sa.BigInteger(), nullable=False),
        sa.Column("correlation_id", sa.String(128), nullable=True),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        _ts("created_at"),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=True),
        _jsonb("tags"),
        sa.UniqueConstraint("business_id", "sequence", name="uq_compliance_audit_events_chain"),
    )
    op.create_index(
        "ix_compliance_audit_events_business_created",
        "compliance_audit_events",
        ["business_id", "created_at"],
    )
    op.create_index(
        "ix_compliance_audit_events_correlation_id",
        "compliance_audit_events",
        ["correlation_id"],
    )

    # ------------------------------------------------------------------
    # encryption_keys
    # ------------------------------------------------------------------
    op.create_table(
        "encryption_keys",
        sa.Column("key_ref", sa.String(128), primary_key=True, comment="'<entity_type>/<entity_id>'"),
        sa.Column("wrapped_key", sa.LargeBinary(), nullable=True),
        _ts("created_at"),
        _ts("destroyed_at", nullable=True),
    )


def downgrade() -> None:
    """Drop every table in reverse dependency order."""
    op.drop_table("encryption_keys")
    op.drop_table("compliance_audit_events")
    op.drop_table("deletion_certificates")
    op.drop_table("deletion_requests")
    op.drop_table("archival_jobs")
    op.drop_table("retention_policies")
    op.drop_table("identity_verifications")
    op.drop_table("workflow_transitions")
    op.drop_table("data_subject_requests")
    op.drop_table("processing_objections")
    op.drop_table("review_requests")
    op.drop_table("customers")
    op.drop_table("businesses")
