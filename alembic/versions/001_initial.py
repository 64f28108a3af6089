"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "source_documents",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("title", sa.String(256)),
        sa.Column("sections", JSONB),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "user_entitlements",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("capability", sa.String(32), nullable=False, index=True),
        sa.Column("expires_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "portals",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("document_id", sa.Integer(), sa.ForeignKey("source_documents.id"), nullable=False, index=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("slug", sa.String(96), nullable=False, unique=True, index=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="DRAFT"),
        sa.Column("visibility", sa.String(16), nullable=False, server_default="public"),
        sa.Column("enabled_sections", JSONB),
        sa.Column("theme", sa.String(64)),
        sa.Column("feature_flags", JSONB),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("session_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("url", sa.Text()),
        sa.Column("error_json", JSONB),
        sa.Column("current_run_id", sa.Integer()),
        sa.Column("active_run_id", sa.Integer()),
        sa.Column("redeploy_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("deployed_at", sa.DateTime()),
        sa.Column("expired_at", sa.DateTime()),
    )
    op.create_table(
        "deployment_runs",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("portal_id", sa.Integer(), sa.ForeignKey("portals.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("run_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("phase", sa.String(32), nullable=False, server_default="INITIALIZING"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("operations", JSONB),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resource_usage", JSONB),
        sa.Column("error_json", JSONB),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("active_portal_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("finished_at", sa.DateTime()),
        sa.UniqueConstraint("active_portal_id", name="uq_deployment_runs_active_portal"),
        sa.UniqueConstraint("portal_id", "run_number", name="uq_deployment_runs_portal_number"),
    )
    op.create_index("ix_deployment_runs_portal_phase", "deployment_runs", ["portal_id", "phase"])
    op.create_table(
        "content_chunks",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("portal_id", sa.Integer(), index=True),
        sa.Column("run_id", sa.Integer(), index=True),
        sa.Column("section", sa.String(64), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("embedding", JSONB),
        sa.Column("importance", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("token_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content_type", sa.String(16), nullable=False, server_default="text"),
        sa.Column("model", sa.String(64)),
        sa.Column("sha256", sa.String(64), index=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_content_chunks_portal_run", "content_chunks", ["portal_id", "run_id", "ordinal"])
    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("portal_id", sa.Integer(), sa.ForeignKey("portals.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("token", sa.String(64), nullable=False, unique=True, index=True),
        sa.Column("visitor_id", sa.String(64)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("language", sa.String(8), nullable=False, server_default="en"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_query", sa.Text()),
        sa.Column("referenced_chunk_ids", JSONB),
        sa.Column("rating", sa.Integer()),
        sa.Column("feedback", sa.Text()),
        sa.Column("end_reason", sa.String(16)),
        sa.Column("started_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("ended_at", sa.DateTime()),
    )
    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("citations", JSONB),
        sa.Column("confidence", sa.Float()),
        sa.Column("delivery_status", sa.String(16), nullable=False, server_default="delivered"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("session_id", "seq", name="uq_chat_messages_session_seq"),
    )
    op.create_table(
        "rate_limit_counters",
        sa.Column("scope", sa.String(16), primary_key=True),
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("quota", sa.Integer(), nullable=False),
        sa.Column("remaining", sa.Integer(), nullable=False),
        sa.Column("reset_at", sa.DateTime(), nullable=False),
        sa.Column("in_flight", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "activity_events",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("portal_id", sa.Integer(), index=True),
        sa.Column("event_type", sa.String(48), nullable=False, index=True),
        sa.Column("payload", JSONB),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_activity_events_type_time", "activity_events", ["event_type", "created_at"])


def downgrade() -> None:
    op.drop_table("activity_events")
    op.drop_table("rate_limit_counters")
    op.drop_table("chat_messages")
    op.drop_table("chat_sessions")
    op.drop_table("content_chunks")
    op.drop_table("deployment_runs")
    op.drop_table("portals")
    op.drop_table("user_entitlements")
    op.drop_table("source_documents")
