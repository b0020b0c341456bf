"""Initial schema - webhook credentials, durable event queue, ledger and project state.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Projects
    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("repository", sa.String(200)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )

    # Webhook credentials
    op.create_table(
        "webhook_credentials",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("source_type", sa.String(20), nullable=False, server_default="agent"),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("revoked_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_webhook_credentials_source_id", "webhook_credentials", ["source_id"])
    op.create_index(
        "uq_webhook_credentials_active",
        "webhook_credentials",
        ["source_id"],
        unique=True,
        postgresql_where=sa.text("revoked_at IS NULL"),
    )

    # Durable event queue
    op.create_table(
        "event_queue",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("external_event_id", sa.String(200)),
        sa.Column("dedup_key", sa.String(200), nullable=False),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("lease_owner", sa.String(100)),
        sa.Column("lease_token", sa.String(32)),
        sa.Column("lease_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("delivery_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("first_failed_at", sa.DateTime(timezone=True)),
        sa.Column("acked_at", sa.DateTime(timezone=True)),
        sa.Column("correlation_id", sa.String(64)),
    )
    op.create_index("ix_event_queue_leasable", "event_queue", ["status", "available_at"])
    op.create_index("ix_event_queue_dedup", "event_queue", ["source_id", "dedup_key"])
    op.create_index("ix_event_queue_project", "event_queue", ["project_id"])

    # Idempotency ledger
    op.create_table(
        "idempotency_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("external_event_id", sa.String(200), nullable=False),
        sa.Column("applied_event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("source_id", "external_event_id", name="uq_idempotency_key"),
    )

    # Dead letters
    op.create_table(
        "dead_letter_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "event_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("event_queue.event_id"), nullable=False, unique=True,
        ),
        sa.Column("last_error", sa.Text, nullable=False),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("permanent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending_review"),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_by", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_dead_letter_entries_status", "dead_letter_entries", ["status"])

    # Ingress audit
    op.create_table(
        "ingress_audit",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("decision", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(100), nullable=False),
        sa.Column("status_code", sa.Integer, nullable=False),
        sa.Column("payload_hash", sa.String(64)),
        sa.Column("byte_size", sa.Integer),
        sa.Column("client_ip", sa.String(64)),
        sa.Column("event_id", postgresql.UUID(as_uuid=True)),
        sa.Column("correlation_id", sa.String(64)),
    )
    op.create_index("ix_ingress_audit_received_at", "ingress_audit", ["received_at"])
    op.create_index("ix_ingress_audit_source_id", "ingress_audit", ["source_id"])
    op.create_index("ix_ingress_audit_event_id", "ingress_audit", ["event_id"])
    op.create_index("ix_ingress_audit_correlation_id", "ingress_audit", ["correlation_id"])

    # Agent tasks
    op.create_table(
        "agent_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("external_task_id", sa.String(200), nullable=False),
        sa.Column("title", sa.String(500)),
        sa.Column("agent_id", sa.String(100)),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("blockers", postgresql.JSONB, server_default="[]"),
        sa.Column("commit_count", sa.Integer, server_default="0"),
        sa.Column("lines_added", sa.Integer, server_default="0"),
        sa.Column("lines_deleted", sa.Integer, server_default="0"),
        sa.Column("tests_passed", sa.Integer, server_default="0"),
        sa.Column("tests_failed", sa.Integer, server_default="0"),
        sa.Column("last_event_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("project_id", "external_task_id", name="uq_agent_tasks_external"),
    )
    op.create_index("ix_agent_tasks_project_id", "agent_tasks", ["project_id"])

    # Commit metrics
    op.create_table(
        "commit_metrics",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("agent_tasks.id")),
        sa.Column("sha", sa.String(64), nullable=False),
        sa.Column("message", sa.String(1000)),
        sa.Column("author", sa.String(200)),
        sa.Column("lines_added", sa.Integer),
        sa.Column("lines_deleted", sa.Integer),
        sa.Column("files_changed", sa.Integer),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("project_id", "sha", name="uq_commit_metrics_sha"),
    )

    # Test runs
    op.create_table(
        "test_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("agent_tasks.id")),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("total", sa.Integer, server_default="0"),
        sa.Column("passed", sa.Integer, server_default="0"),
        sa.Column("failed", sa.Integer, server_default="0"),
        sa.Column("skipped", sa.Integer, server_default="0"),
        sa.Column("coverage_percent", sa.Float),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("ran_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_test_runs_project_ran_at", "test_runs", ["project_id", "ran_at"])

    # Pull requests
    op.create_table(
        "pull_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("repository", sa.String(200), nullable=False),
        sa.Column("number", sa.Integer, nullable=False),
        sa.Column("title", sa.String(500)),
        sa.Column("author", sa.String(200)),
        sa.Column("head_branch", sa.String(200)),
        sa.Column("state", sa.String(20), nullable=False, server_default="open"),
        sa.Column("opened_at", sa.DateTime(timezone=True)),
        sa.Column("merged_at", sa.DateTime(timezone=True)),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
        sa.Column("last_event_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("project_id", "repository", "number", name="uq_pull_requests_number"),
    )
    op.create_index("ix_pull_requests_project_id", "pull_requests", ["project_id"])

    # Event logs
    op.create_table(
        "event_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="applied"),
        sa.Column("handler", sa.String(50)),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("message", sa.Text),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_event_logs_project_id", "event_logs", ["project_id"])
    op.create_index("ix_event_logs_event_id", "event_logs", ["event_id"])
    op.create_index("ix_event_logs_created_at", "event_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("event_logs")
    op.drop_table("pull_requests")
    op.drop_table("test_runs")
    op.drop_table("commit_metrics")
    op.drop_table("agent_tasks")
    op.drop_table("ingress_audit")
    op.drop_table("dead_letter_entries")
    op.drop_table("idempotency_records")
    op.drop_table("event_queue")
    op.drop_table("webhook_credentials")
    op.drop_table("projects")
