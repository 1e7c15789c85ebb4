"""Initial schema - escrow ledger tables

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Milestones
    op.create_table(
        "milestones",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("contract_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column("homeowner_ref", sa.String(255), nullable=False),
        sa.Column("contractor_ref", sa.String(255), nullable=False),
        sa.Column("payer_ref", sa.String(255), nullable=True),
        sa.Column("payees", postgresql.JSONB, nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="draft", index=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_approval_deadline", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("dispute_window_closes_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("funding_attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("failure_reason", sa.String(100), nullable=True),
        sa.Column("failure_detail", sa.Text, nullable=True),
        sa.Column("cancellation_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.UniqueConstraint("project_id", "sequence", name="uq_milestone_project_sequence"),
        sa.CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
    )

    op.create_table(
        "milestone_transitions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("milestones.id"), nullable=False, index=True),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("from_status", sa.String(30), nullable=False),
        sa.Column("to_status", sa.String(30), nullable=False),
        sa.Column("trigger", sa.String(50), nullable=False),
        sa.Column("actor", sa.String(255), nullable=False, server_default="system"),
        *_timestamps(),
    )

    # Escrow holds
    op.create_table(
        "escrow_holds",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("milestones.id"), nullable=False, unique=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("released_amount", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("state", sa.String(30), nullable=False, server_default="requested", index=True),
        sa.Column("payer_ref", sa.String(255), nullable=False),
        sa.Column("provider_ref", sa.String(255), nullable=True, unique=True),
        sa.Column("request_generation", sa.Integer, nullable=False, server_default=sa.text("1")),
        sa.Column("frozen", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_code", sa.String(100), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_hold_positive_amount"),
        sa.CheckConstraint("released_amount >= 0", name="ck_hold_released_non_negative"),
        sa.CheckConstraint("released_amount <= amount", name="ck_hold_no_over_release"),
    )

    # Disputes
    op.create_table(
        "disputes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("milestones.id"), nullable=False, index=True),
        sa.Column("opened_by", sa.String(20), nullable=False),
        sa.Column("opened_by_ref", sa.String(255), nullable=False),
        sa.Column("dispute_type", sa.String(30), nullable=False, server_default="milestone_completion"),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="opened", index=True),
        sa.Column("evidence", postgresql.JSONB, nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("evidence_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("escalation_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolution_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proposal", postgresql.JSONB, nullable=True),
        sa.Column("proposal_responses", postgresql.JSONB, nullable=True),
        sa.Column("review_attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("history", postgresql.JSONB, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "dispute_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("dispute_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("disputes.id"), nullable=False, index=True),
        sa.Column("author_role", sa.String(20), nullable=False),
        sa.Column("author_ref", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        *_timestamps(),
    )

    # Mediation
    op.create_table(
        "mediation_cases",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("dispute_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("disputes.id"), nullable=False, unique=True),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("milestones.id"), nullable=False, index=True),
        sa.Column("mediator_ref", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="assigned", index=True),
        sa.Column("assignment_attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_assignment_error", sa.Text, nullable=True),
        sa.Column("blocked", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("decision", postgresql.JSONB, nullable=True),
        sa.Column("review_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # Resolutions
    op.create_table(
        "resolutions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("milestones.id"), nullable=False, unique=True),
        sa.Column("dispute_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("disputes.id"), nullable=True, unique=True),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("held_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("homeowner_share", sa.Numeric(14, 2), nullable=False),
        sa.Column("contractor_share", sa.Numeric(14, 2), nullable=False),
        sa.Column("shares", postgresql.JSONB, nullable=False),
        sa.Column("decided_by", sa.String(20), nullable=False),
        sa.Column("decided_by_ref", sa.String(255), nullable=True),
        *_timestamps(),
    )

    # Payments
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("milestones.id"), nullable=False, index=True),
        sa.Column("hold_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("escrow_holds.id"), nullable=False),
        sa.Column("dispute_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("disputes.id"), nullable=True),
        sa.Column("resolution_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("resolutions.id"), nullable=True, index=True),
        sa.Column("payee_ref", sa.String(255), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("release_key", sa.String(255), nullable=False, index=True),
        sa.Column("provider_ref", sa.String(255), nullable=True),
        sa.Column("failure_code", sa.String(100), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
    )
    op.create_index("ix_payments_hold_status", "payments", ["hold_id", "status"])

    # Reconciliation
    op.create_table(
        "reconciliation_issues",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.String(50), nullable=False, index=True),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("kind", sa.String(100), nullable=False),
        sa.Column("ledger_state", sa.String(50), nullable=True),
        sa.Column("provider_state", sa.String(50), nullable=True),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default=sa.text("1")),
        sa.Column("detail", sa.Text, nullable=True),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.text("false")),
        *_timestamps(),
    )

    # Audit log
    op.create_table(
        "audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(50), nullable=False, index=True),
        sa.Column("actor", sa.String(255), nullable=False, server_default="system"),
        sa.Column("diff", postgresql.JSONB, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_log_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("reconciliation_issues")
    op.drop_index("ix_payments_hold_status", table_name="payments")
    op.drop_table("payments")
    op.drop_table("resolutions")
    op.drop_table("mediation_cases")
    op.drop_table("dispute_messages")
    op.drop_table("disputes")
    op.drop_table("escrow_holds")
    op.drop_table("milestone_transitions")
    op.drop_table("milestones")
