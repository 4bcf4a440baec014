"""Messaging pipeline: tenants, channels, leads, conversations, messages, job queue, dead letters

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column(
        "id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _fk(name: str, target: str, nullable: bool = True, ondelete: str | None = None) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "tenants",
        _id(),
        sa.Column("slug", sa.Text, nullable=False, unique=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("ai_config", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "channel_connections",
        _id(),
        _fk("tenant_id", "tenants.id", nullable=False, ondelete="CASCADE"),
        sa.Column("branch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("channel", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="connected"),
        sa.Column("ai_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("whatsapp_phone_number_id", sa.Text, nullable=True),
        sa.Column("whatsapp_access_token", sa.Text, nullable=True),
        sa.Column("instagram_page_id", sa.Text, nullable=True),
        sa.Column("instagram_access_token", sa.Text, nullable=True),
        sa.Column("facebook_page_id", sa.Text, nullable=True),
        sa.Column("facebook_access_token", sa.Text, nullable=True),
        sa.Column("tiktok_client_key", sa.Text, nullable=True),
        sa.Column("tiktok_access_token", sa.Text, nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_message_delay_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("subsequent_message_delay_seconds", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_channel_connections_tenant_channel", "channel_connections", ["tenant_id", "channel"])

    op.create_table(
        "leads",
        _id(),
        _fk("tenant_id", "tenants.id", nullable=False, ondelete="CASCADE"),
        sa.Column("branch_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.Text, nullable=True),
        sa.Column("phone_normalized", sa.Text, nullable=True),
        sa.Column("instagram_psid", sa.Text, nullable=True),
        sa.Column("facebook_psid", sa.Text, nullable=True),
        sa.Column("tiktok_open_id", sa.Text, nullable=True),
        sa.Column("source", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="new"),
        sa.Column("classification", sa.Text, nullable=False, server_default="warm"),
        sa.Column("score", sa.Integer, nullable=True, server_default="50"),
        sa.Column("last_interaction_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_leads_score_range"),
    )
    for column in ("phone_normalized", "instagram_psid", "facebook_psid", "tiktok_open_id"):
        op.create_index(
            f"uq_leads_tenant_{column}",
            "leads",
            ["tenant_id", column],
            unique=True,
            postgresql_where=sa.text(f"{column} IS NOT NULL AND deleted_at IS NULL"),
        )

    op.create_table(
        "conversations",
        _id(),
        _fk("tenant_id", "tenants.id", nullable=False, ondelete="CASCADE"),
        sa.Column("branch_id", postgresql.UUID(as_uuid=True), nullable=True),
        _fk("lead_id", "leads.id", nullable=False, ondelete="CASCADE"),
        sa.Column("channel", sa.Text, nullable=False),
        _fk("channel_connection_id", "channel_connections.id", ondelete="SET NULL"),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("ai_handling", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("escalation_reason", sa.Text, nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        _updated_at(),
    )
    op.create_index(
        "ix_conversations_lead_channel_started", "conversations", ["tenant_id", "lead_id", "channel", "started_at"]
    )

    op.create_table(
        "messages",
        _id(),
        _fk("conversation_id", "conversations.id", nullable=False, ondelete="CASCADE"),
        _fk("lead_id", "leads.id", ondelete="SET NULL"),
        sa.Column("sender_type", sa.Text, nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("message_type", sa.Text, nullable=False, server_default="text"),
        sa.Column("channel", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="received"),
        sa.Column("external_id", sa.Text, nullable=True),
        sa.Column("external_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _created_at(),
        sa.UniqueConstraint("channel", "external_id", name="uq_messages_channel_external_id"),
    )
    op.create_index("ix_messages_conversation_created", "messages", ["conversation_id", "created_at"])

    op.create_table(
        "job_queue",
        _id(),
        _fk("tenant_id", "tenants.id", nullable=False, ondelete="CASCADE"),
        _fk("conversation_id", "conversations.id", ondelete="CASCADE"),
        sa.Column("job_type", sa.Text, nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("cached_result", postgresql.JSONB, nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_job_queue_status",
        ),
    )
    op.create_index("ix_job_queue_claim", "job_queue", ["status", "priority", "scheduled_for"])
    op.create_index(
        "ix_job_queue_pending_conversation",
        "job_queue",
        ["conversation_id", "job_type"],
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "webhook_dead_letters",
        _id(),
        sa.Column("channel", sa.Text, nullable=False),
        sa.Column("tenant_slug", sa.Text, nullable=False),
        _fk("tenant_id", "tenants.id", ondelete="SET NULL"),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("headers", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_message", sa.Text, nullable=False),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text, nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_webhook_dead_letters_status_next_retry", "webhook_dead_letters", ["status", "next_retry_at"])

    op.create_table(
        "channel_rate_limits",
        _id(),
        _fk("channel_connection_id", "channel_connections.id", nullable=False, ondelete="CASCADE"),
        sa.Column("channel", sa.Text, nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_count", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("channel_connection_id", "window_start", name="uq_channel_rate_limits_window"),
    )

    op.create_table(
        "lead_score_history",
        _id(),
        _fk("lead_id", "leads.id", nullable=False, ondelete="CASCADE"),
        _fk("conversation_id", "conversations.id", ondelete="SET NULL"),
        sa.Column("previous_score", sa.Integer, nullable=False),
        sa.Column("new_score", sa.Integer, nullable=False),
        sa.Column("score_change", sa.Integer, nullable=False),
        sa.Column("signal_name", sa.Text, nullable=True),
        sa.Column("change_source", sa.Text, nullable=False, server_default="ai_detection"),
        _created_at(),
    )
    op.create_index("ix_lead_score_history_lead", "lead_score_history", ["lead_id"])

    op.create_table(
        "ai_usage_logs",
        _id(),
        _fk("tenant_id", "tenants.id", nullable=False, ondelete="CASCADE"),
        _fk("conversation_id", "conversations.id", ondelete="SET NULL"),
        sa.Column("model_used", sa.Text, nullable=False),
        sa.Column("tokens_input", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_output", sa.Integer, nullable=False, server_default="0"),
        sa.Column("processing_time_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("intent_detected", sa.Text, nullable=True),
        sa.Column("escalated", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _created_at(),
    )
    op.create_index("ix_ai_usage_logs_tenant_created", "ai_usage_logs", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_ai_usage_logs_tenant_created", table_name="ai_usage_logs")
    op.drop_table("ai_usage_logs")
    op.drop_index("ix_lead_score_history_lead", table_name="lead_score_history")
    op.drop_table("lead_score_history")
    op.drop_table("channel_rate_limits")
    op.drop_index("ix_webhook_dead_letters_status_next_retry", table_name="webhook_dead_letters")
    op.drop_table("webhook_dead_letters")
    op.drop_index("ix_job_queue_pending_conversation", table_name="job_queue")
    op.drop_index("ix_job_queue_claim", table_name="job_queue")
    op.drop_table("job_queue")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_lead_channel_started", table_name="conversations")
    op.drop_table("conversations")
    for column in ("phone_normalized", "instagram_psid", "facebook_psid", "tiktok_open_id"):
        op.drop_index(f"uq_leads_tenant_{column}", table_name="leads")
    op.drop_table("leads")
    op.drop_index("ix_channel_connections_tenant_channel", table_name="channel_connections")
    op.drop_table("channel_connections")
    op.drop_table("tenants")
