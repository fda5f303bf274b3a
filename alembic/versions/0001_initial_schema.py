"""contracts, signatures, escrow entries, disputes and their audit tables

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    op.create_table(
        "contracts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("reference", sa.String(length=32), nullable=False),

        sa.Column("listing_id", sa.String(length=64), nullable=False),
        sa.Column("landlord_id", sa.String(length=128), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("landlord_phone", sa.String(length=32), nullable=False),
        sa.Column("tenant_phone", sa.String(length=32), nullable=False),

        sa.Column("monthly_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("custom_fields_json", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("content_hash", sa.String(length=64), nullable=False),

        sa.Column("status", sa.String(length=24), nullable=False, server_default=sa.text("'DRAFT'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("signature_count", sa.Integer(), nullable=False, server_default=sa.text("0")),

        sa.Column("document_status", sa.String(length=16), nullable=False, server_default=sa.text("'NOT_REQUESTED'")),
        sa.Column("document_ref", sa.String(length=512), nullable=True),
        sa.Column("document_sha256", sa.String(length=64), nullable=True),

        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("sent_for_signature_at"),
        _ts("fully_signed_at"),
        _ts("retraction_expires_at"),
        _ts("retraction_reminder_sent_at"),
        _ts("activated_at"),
        _ts("terminated_at"),
        _ts("cancelled_at"),
        sa.Column("closing_reason", sa.Text(), nullable=True),

        sa.Column("next_due_date", sa.Date(), nullable=True),
        sa.Column("escrow_schedule_stopped", sa.Boolean(), nullable=False, server_default=sa.text("false")),

        sa.UniqueConstraint("reference", name="uq_contracts_reference"),
        sa.CheckConstraint("signature_count >= 0 AND signature_count <= 2", name="ck_contracts_signature_count"),
        sa.CheckConstraint("monthly_amount > 0", name="ck_contracts_amount_positive"),
    )
    op.create_index("ix_contracts_status", "contracts", ["status"])
    op.create_index("ix_contracts_landlord", "contracts", ["landlord_id"])
    op.create_index("ix_contracts_tenant", "contracts", ["tenant_id"])

    op.create_table(
        "otp_challenges",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=False),
        sa.Column("purpose", sa.String(length=32), nullable=False),
        sa.Column("scope_ref", sa.String(length=64), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("code_hash", sa.String(length=256), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        _ts("created_at", nullable=False),
        _ts("expires_at", nullable=False),
        _ts("consumed_at"),
        sa.Column("consumed_result", sa.String(length=24), nullable=True),
        _ts("verified_at"),
    )
    op.create_index("ix_otp_subject_purpose_created", "otp_challenges", ["subject", "purpose", "created_at"])
    op.create_index("ix_otp_scope", "otp_challenges", ["subject", "purpose", "scope_ref"])

    op.create_table(
        "signatures",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("contract_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("signer_id", sa.String(length=128), nullable=False),
        sa.Column("otp_challenge_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("otp_challenges.id", ondelete="RESTRICT"), nullable=False),
        _ts("otp_verified_at", nullable=False),
        _ts("signed_at", nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("signature_hash", sa.String(length=64), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=256), nullable=True),
        sa.UniqueConstraint("contract_id", "role", name="uq_signatures_contract_role"),
    )
    op.create_index("ix_signatures_contract", "signatures", ["contract_id"])

    op.create_table(
        "escrow_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("contract_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default=sa.text("'INSTALLMENT'")),
        sa.Column("split_from_entry_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("escrow_entries.id", ondelete="RESTRICT"), nullable=True),

        sa.Column("payer_id", sa.String(length=128), nullable=False),
        sa.Column("beneficiary_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),

        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("frozen_from_status", sa.String(length=16), nullable=True),
        sa.Column("frozen_by_dispute_id", postgresql.UUID(as_uuid=True), nullable=True),

        sa.Column("gateway_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_idempotency_key", sa.String(length=64), nullable=True),
        sa.Column("gateway_ref", sa.String(length=128), nullable=True),
        sa.Column("needs_attention", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_error", sa.Text(), nullable=True),

        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("authorized_at"),
        _ts("captured_at"),
        _ts("held_at"),
        _ts("auto_release_at"),
        _ts("beneficiary_confirmed_at"),

        _ts("released_at"),
        _ts("refunded_at"),
        sa.Column("released_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("payout_status", sa.String(length=16), nullable=True),
        sa.Column("payout_idempotency_key", sa.String(length=64), nullable=True),

        sa.UniqueConstraint("contract_id", "due_date", "kind", name="uq_escrow_contract_due_kind"),
        sa.CheckConstraint("amount > 0", name="ck_escrow_amount_positive"),
    )
    op.create_index("ix_escrow_status", "escrow_entries", ["status"])
    op.create_index("ix_escrow_contract", "escrow_entries", ["contract_id"])
    op.create_index("ix_escrow_auto_release", "escrow_entries", ["status", "auto_release_at"])

    op.create_table(
        "disputes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("reference", sa.String(length=32), nullable=False),
        sa.Column("contract_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("escrow_entry_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("escrow_entries.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("active_entry_lock", postgresql.UUID(as_uuid=True), nullable=True),

        sa.Column("claimant_id", sa.String(length=128), nullable=False),
        sa.Column("respondent_id", sa.String(length=128), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("motif", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence_json", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("mediator_id", sa.String(length=128), nullable=True),

        sa.Column("status", sa.String(length=24), nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("split_release_amount", sa.Numeric(14, 2), nullable=True),

        _ts("opened_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("assigned_at"),
        _ts("resolved_at"),
        _ts("withdrawn_at"),
        _ts("sla_flagged_at"),

        sa.UniqueConstraint("reference", name="uq_disputes_reference"),
        # one non-terminal dispute per escrow entry, across all service instances
        sa.UniqueConstraint("active_entry_lock", name="uq_disputes_active_entry"),
    )
    op.create_index("ix_disputes_contract", "disputes", ["contract_id"])
    op.create_index("ix_disputes_entry", "disputes", ["escrow_entry_id"])
    op.create_index("ix_disputes_status", "disputes", ["status"])
    op.create_index("ix_disputes_mediator", "disputes", ["mediator_id"])

    op.create_table(
        "status_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=24), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("from_status", sa.String(length=24), nullable=True),
        sa.Column("to_status", sa.String(length=24), nullable=False),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("prev_hash", sa.String(length=64), nullable=False),
        sa.Column("entry_hash", sa.String(length=64), nullable=False),
        sa.Column("payload_json", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("entity_type", "entity_id", "seq", name="uq_status_history_seq"),
    )
    op.create_index("ix_status_history_entity", "status_history", ["entity_type", "entity_id"])

    op.create_table(
        "compensation_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=24), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("dedupe_key", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("details_json", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _ts("created_at", nullable=False),
        _ts("resolved_at"),
        sa.UniqueConstraint("dedupe_key", name="uq_compensation_dedupe"),
    )
    op.create_index("ix_compensation_status_action", "compensation_log", ["status", "action"])

    op.create_table(
        "idempotency_key_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("endpoint_key", sa.String(length=128), nullable=False),
        sa.Column("idem_key", sa.String(length=128), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_status", sa.String(length=16), nullable=False, server_default=sa.text("'200'")),
        sa.Column("response_json", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("user_id", "endpoint_key", "idem_key", name="uq_idem_scope"),
    )
    op.create_index("ix_idem_lookup", "idempotency_key_records", ["user_id", "endpoint_key"])


def downgrade():
    op.drop_index("ix_idem_lookup", table_name="idempotency_key_records")
    op.drop_table("idempotency_key_records")
    op.drop_index("ix_compensation_status_action", table_name="compensation_log")
    op.drop_table("compensation_log")
    op.drop_index("ix_status_history_entity", table_name="status_history")
    op.drop_table("status_history")
    for ix in ("ix_disputes_mediator", "ix_disputes_status", "ix_disputes_entry", "ix_disputes_contract"):
        op.drop_index(ix, table_name="disputes")
    op.drop_table("disputes")
    for ix in ("ix_escrow_auto_release", "ix_escrow_contract", "ix_escrow_status"):
        op.drop_index(ix, table_name="escrow_entries")
    op.drop_table("escrow_entries")
    op.drop_index("ix_signatures_contract", table_name="signatures")
    op.drop_table("signatures")
    op.drop_index("ix_otp_scope", table_name="otp_challenges")
    op.drop_index("ix_otp_subject_purpose_created", table_name="otp_challenges")
    op.drop_table("otp_challenges")
    for ix in ("ix_contracts_tenant", "ix_contracts_landlord", "ix_contracts_status"):
        op.drop_index(ix, table_name="contracts")
    op.drop_table("contracts")
