"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-01-12

Creates the authoritative tables (accounts, api_keys, sessions, messages,
parts), the derived index tables (index_terms, message_embeddings,
embedding_jobs), the analytics rollups with per-session contributions,
and the API access log.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


def _counters() -> list[sa.Column]:
    return [
        sa.Column("message_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("session_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.BigInteger, nullable=False, server_default="0"),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        _uuid_pk(),
        sa.Column("external_identity", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column(
            "enabled_agents", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'")
        ),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index(
        "ix_accounts_external_identity", "accounts", ["external_identity"], unique=True
    )

    op.create_table(
        "api_keys",
        _uuid_pk(),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("key_prefix", sa.String(16), nullable=False),
        _created_at(),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_api_keys_account_id", "api_keys", ["account_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    op.create_table(
        "sessions",
        _uuid_pk(),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("source", sa.String(32), nullable=False, server_default="opencode"),
        sa.Column("title", sa.Text, nullable=True),
        sa.Column("project_path", sa.Text, nullable=True),
        sa.Column("project_name", sa.String(255), nullable=True),
        sa.Column("git_branch", sa.String(255), nullable=True),
        sa.Column("model", sa.String(128), nullable=True),
        sa.Column("provider", sa.String(64), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("message_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("usage_reported", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("needs_audit", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("eval_ready", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("eval_notes", sa.Text, nullable=True),
        sa.Column("eval_tags", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'")),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.UniqueConstraint("account_id", "external_id", name="uq_account_external_id"),
    )
    op.create_index("ix_sessions_account_id", "sessions", ["account_id"])
    op.create_index("ix_sessions_started_at", "sessions", ["started_at"])
    op.create_index("ix_sessions_eval_ready", "sessions", ["eval_ready"])
    op.create_index("ix_sessions_account_updated", "sessions", ["account_id", "updated_at"])

    op.create_table(
        "messages",
        _uuid_pk(),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("ordinal", sa.Integer, nullable=False),
        sa.Column("text_content", sa.Text, nullable=True),
        sa.Column("model", sa.String(128), nullable=True),
        sa.Column("prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("needs_audit", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.UniqueConstraint("session_id", "ordinal", name="uq_session_ordinal"),
        sa.UniqueConstraint("session_id", "external_id", name="uq_session_message_external"),
    )
    op.create_index("ix_messages_session_id", "messages", ["session_id"])

    op.create_table(
        "parts",
        _uuid_pk(),
        sa.Column(
            "message_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        sa.Column("redaction_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("needs_audit", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_parts_message_id", "parts", ["message_id"])

    op.create_table(
        "index_terms",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "message_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("term", sa.String(64), nullable=False),
        sa.Column("term_frequency", sa.Integer, nullable=False, server_default="1"),
        sa.Column("message_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("message_id", "term", name="uq_index_term_message"),
    )
    op.create_index("ix_index_terms_session_id", "index_terms", ["session_id"])
    op.create_index("ix_index_terms_message_id", "index_terms", ["message_id"])
    op.create_index("ix_index_terms_account_term", "index_terms", ["account_id", "term"])

    op.create_table(
        "message_embeddings",
        _uuid_pk(),
        sa.Column(
            "message_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("vector", postgresql.JSONB, nullable=False),
        sa.Column("dimensions", sa.Integer, nullable=False),
        sa.Column("model", sa.String(128), nullable=False),
        sa.Column("text_hash", sa.String(64), nullable=False),
        _created_at(),
    )
    op.create_index("ix_message_embeddings_session_id", "message_embeddings", ["session_id"])
    op.create_index("ix_message_embeddings_account_id", "message_embeddings", ["account_id"])

    op.create_table(
        "embedding_jobs",
        _uuid_pk(),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("session_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("message_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("text", sa.Text, nullable=False),
        sa.Column("text_hash", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        _created_at(),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_embedding_jobs_account_id", "embedding_jobs", ["account_id"])
    op.create_index("ix_embedding_jobs_session_id", "embedding_jobs", ["session_id"])
    op.create_index("ix_embedding_jobs_message_id", "embedding_jobs", ["message_id"])
    op.create_index("ix_embedding_jobs_status_created", "embedding_jobs", ["status", "created_at"])

    op.create_table(
        "analytics_rollups",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day", sa.Date, nullable=False),
        sa.Column("model", sa.String(128), nullable=False),
        sa.Column("project", sa.Text, nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        *_counters(),
        sa.UniqueConstraint(
            "account_id", "day", "model", "project", "source", "provider",
            name="uq_rollup_bucket",
        ),
    )
    op.create_index("ix_rollups_account_day", "analytics_rollups", ["account_id", "day"])

    op.create_table(
        "rollup_contributions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day", sa.Date, nullable=False),
        sa.Column("model", sa.String(128), nullable=False),
        sa.Column("project", sa.Text, nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        *_counters(),
        sa.UniqueConstraint(
            "session_id", "day", "model", "project", "source", "provider",
            name="uq_contribution_bucket",
        ),
    )
    op.create_index(
        "ix_rollup_contributions_session_id", "rollup_contributions", ["session_id"]
    )

    op.create_table(
        "api_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("method", sa.String(8), nullable=False),
        sa.Column("status_code", sa.Integer, nullable=False),
        sa.Column("response_time_ms", sa.Integer, nullable=False),
        _created_at(),
    )
    op.create_index("ix_api_logs_account_id", "api_logs", ["account_id"])


def downgrade() -> None:
    op.drop_table("api_logs")
    op.drop_table("rollup_contributions")
    op.drop_table("analytics_rollups")
    op.drop_table("embedding_jobs")
    op.drop_table("message_embeddings")
    op.drop_table("index_terms")
    op.drop_table("parts")
    op.drop_table("messages")
    op.drop_table("sessions")
    op.drop_table("api_keys")
    op.drop_table("accounts")
