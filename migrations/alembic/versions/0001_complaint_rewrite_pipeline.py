"""Complaint rewrite pipeline schema

Revision ID: 0001
Revises:
Create Date: 2026-03-22

Creates the boundary tables the pipeline reads (homes, memberships,
profiles, complaint_entries, preference_*), the trigger queue, the rewrite
registry (requests, snapshots, jobs, outputs), routing tables and provider
batch tracking. Seeds the provider registry.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUM_TYPES = {
    "complaint_rewrite_trigger_status": (
        "queued",
        "processing",
        "completed",
        "failed",
        "canceled",
    ),
    "complaint_rewrite_request_status": (
        "queued",
        "processing",
        "completed",
        "failed",
        "canceled",
    ),
    # Order matters: PostgreSQL compares enum values by declaration order.
    "complaint_rewrite_job_status": (
        "queued",
        "processing",
        "batch_submitted",
        "completed",
        "failed",
        "canceled",
    ),
    "rewrite_provider_batch_status": (
        "submitted",
        "running",
        "completed",
        "failed",
        "canceled",
    ),
}

SURFACES = "('weekly_harmony', 'direct_message', 'other')"
LANES = "('same_language', 'cross_language')"
INTENTS = "('request', 'boundary', 'concern', 'clarification')"
STRENGTHS = "('light_touch', 'full_reframe')"
ADAPTER_KINDS = (
    "('openai_responses', 'openai_compat_responses', 'openai_compat_chat_completions',"
    " 'gemini', 'stub')"
)


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_TYPES[name], name=name, create_type=False)


def _uuid_pk(name: str = "id") -> sa.Column:
    return sa.Column(
        name, sa.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(
        name, sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False
    )


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    for name, values in ENUM_TYPES.items():
        quoted = ", ".join(f"'{v}'" for v in values)
        op.execute(f"""
            DO $$
            BEGIN
                CREATE TYPE {name} AS ENUM ({quoted});
            EXCEPTION
                WHEN duplicate_object THEN NULL;
            END $$;
        """)

    # ==========================================================================
    # Boundary tables
    # ==========================================================================
    op.create_table(
        "homes",
        _uuid_pk(),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "memberships",
        _uuid_pk(),
        sa.Column("home_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("is_current", sa.Boolean(), server_default="true", nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["home_id"], ["homes.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_memberships_home_user", "memberships", ["home_id", "user_id"])

    op.create_table(
        "profiles",
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("locale", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "complaint_entries",
        _uuid_pk(),
        sa.Column("home_id", sa.UUID(), nullable=False),
        sa.Column("author_user_id", sa.UUID(), nullable=False),
        sa.Column("text", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["home_id"], ["homes.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "preference_reports",
        _uuid_pk(),
        sa.Column("subject_user_id", sa.UUID(), nullable=False),
        sa.Column("template_key", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("content", postgresql.JSONB(), nullable=False),
        _timestamp("published_at"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "preference_responses",
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("preference_id", sa.Text(), nullable=False),
        sa.Column("option_value", sa.Text(), nullable=False),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("user_id", "preference_id"),
    )

    # ==========================================================================
    # complaint_rewrite_triggers
    # ==========================================================================
    op.create_table(
        "complaint_rewrite_triggers",
        sa.Column("entry_id", sa.UUID(), nullable=False),
        sa.Column("home_id", sa.UUID(), nullable=False),
        sa.Column("author_user_id", sa.UUID(), nullable=False),
        sa.Column("recipient_user_id", sa.UUID(), nullable=False),
        sa.Column(
            "status",
            _enum("complaint_rewrite_trigger_status"),
            server_default="queued",
            nullable=False,
        ),
        sa.Column("request_id", sa.UUID(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        _timestamp("last_error_at", nullable=True),
        _timestamp("last_attempt_at", nullable=True),
        _timestamp("retry_after", nullable=True),
        _timestamp("processing_started_at", nullable=True),
        _timestamp("processed_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.ForeignKeyConstraint(["entry_id"], ["complaint_entries.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["home_id"], ["homes.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "request_id IS NULL OR status = 'processing'",
            name="ck_triggers_request_id_only_processing",
        ),
        sa.CheckConstraint(
            "(status = 'processing' AND processing_started_at IS NOT NULL)"
            " OR (status <> 'processing' AND processing_started_at IS NULL)",
            name="ck_triggers_processing_started_iff_processing",
        ),
        sa.CheckConstraint(
            "(status IN ('completed', 'failed', 'canceled') AND processed_at IS NOT NULL)"
            " OR (status NOT IN ('completed', 'failed', 'canceled') AND processed_at IS NULL)",
            name="ck_triggers_processed_iff_terminal",
        ),
        sa.CheckConstraint(
            "retry_after IS NULL OR status = 'queued'",
            name="ck_triggers_retry_after_only_queued",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_triggers_attempts_nonneg"),
    )
    op.create_index(
        "ix_triggers_status_due",
        "complaint_rewrite_triggers",
        ["status", "retry_after", "created_at"],
    )
    op.create_index(
        "ix_triggers_author_home",
        "complaint_rewrite_triggers",
        ["author_user_id", "home_id"],
    )

    # ==========================================================================
    # complaint_rewrite_requests + snapshots
    # ==========================================================================
    op.create_table(
        "complaint_rewrite_requests",
        sa.Column("rewrite_request_id", sa.UUID(), nullable=False),
        sa.Column("home_id", sa.UUID(), nullable=False),
        sa.Column("sender_user_id", sa.UUID(), nullable=False),
        sa.Column("recipient_user_id", sa.UUID(), nullable=False),
        sa.Column("recipient_snapshot_id", sa.UUID(), nullable=True),
        sa.Column("recipient_preference_snapshot_id", sa.UUID(), nullable=True),
        sa.Column("surface", sa.Text(), nullable=False),
        sa.Column("original_text", sa.Text(), nullable=False),
        sa.Column("source_locale", sa.Text(), nullable=False),
        sa.Column("target_locale", sa.Text(), nullable=False),
        sa.Column("lane", sa.Text(), nullable=False),
        sa.Column("topics", postgresql.JSONB(), nullable=False),
        sa.Column("intent", sa.Text(), nullable=False),
        sa.Column("rewrite_strength", sa.Text(), nullable=False),
        sa.Column(
            "classifier_result", postgresql.JSONB(), server_default="{}", nullable=False
        ),
        sa.Column("context_pack", postgresql.JSONB(), server_default="{}", nullable=False),
        sa.Column("policy", postgresql.JSONB(), server_default="{}", nullable=False),
        sa.Column("classifier_version", sa.Text(), nullable=False),
        sa.Column("context_pack_version", sa.Text(), nullable=False),
        sa.Column("policy_version", sa.Text(), nullable=False),
        sa.Column(
            "status",
            _enum("complaint_rewrite_request_status"),
            server_default="queued",
            nullable=False,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("rewrite_completed_at", nullable=True),
        sa.PrimaryKeyConstraint("rewrite_request_id"),
        sa.ForeignKeyConstraint(["home_id"], ["homes.id"], ondelete="CASCADE"),
        sa.CheckConstraint(f"surface IN {SURFACES}", name="ck_rewrite_requests_surface"),
        sa.CheckConstraint(f"lane IN {LANES}", name="ck_rewrite_requests_lane"),
        sa.CheckConstraint(f"intent IN {INTENTS}", name="ck_rewrite_requests_intent"),
        sa.CheckConstraint(
            f"rewrite_strength IN {STRENGTHS}", name="ck_rewrite_requests_strength"
        ),
        sa.CheckConstraint(
            "length(original_text) BETWEEN 1 AND 500",
            name="ck_rewrite_requests_text_length",
        ),
    )

    op.create_table(
        "recipient_snapshots",
        _uuid_pk("recipient_snapshot_id"),
        sa.Column("rewrite_request_id", sa.UUID(), nullable=False),
        sa.Column("home_id", sa.UUID(), nullable=False),
        sa.Column("recipient_user_ids", postgresql.JSONB(), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("recipient_snapshot_id"),
        sa.ForeignKeyConstraint(["home_id"], ["homes.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("rewrite_request_id"),
    )

    op.create_table(
        "recipient_preference_snapshots",
        _uuid_pk("recipient_preference_snapshot_id"),
        sa.Column("rewrite_request_id", sa.UUID(), nullable=False),
        sa.Column("recipient_user_id", sa.UUID(), nullable=False),
        sa.Column("preference_payload", postgresql.JSONB(), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("recipient_preference_snapshot_id"),
        sa.UniqueConstraint(
            "rewrite_request_id",
            "recipient_user_id",
            name="uq_recipient_preference_snapshots_request_recipient",
        ),
    )

    # ==========================================================================
    # Routing
    # ==========================================================================
    op.create_table(
        "complaint_ai_providers",
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("adapter_kind", sa.Text(), nullable=False),
        sa.Column("base_url", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), server_default="true", nullable=False),
        sa.PrimaryKeyConstraint("provider"),
        sa.CheckConstraint(
            f"adapter_kind IN {ADAPTER_KINDS}", name="ck_ai_providers_adapter_kind"
        ),
    )

    op.create_table(
        "complaint_rewrite_routes",
        _uuid_pk("route_id"),
        sa.Column("surface", sa.Text(), nullable=False),
        sa.Column("lane", sa.Text(), nullable=False),
        sa.Column("rewrite_strength", sa.Text(), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("prompt_version", sa.Text(), nullable=False),
        sa.Column("policy_version", sa.Text(), nullable=False),
        sa.Column("execution_mode", sa.Text(), server_default="batch", nullable=False),
        sa.Column("cache_eligible", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default="2", nullable=False),
        sa.Column("priority", sa.Integer(), server_default="100", nullable=False),
        sa.Column("active", sa.Boolean(), server_default="true", nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("route_id"),
        sa.ForeignKeyConstraint(["provider"], ["complaint_ai_providers.provider"]),
        sa.CheckConstraint(f"surface IN {SURFACES}", name="ck_rewrite_routes_surface"),
        sa.CheckConstraint(f"lane IN {LANES}", name="ck_rewrite_routes_lane"),
        sa.CheckConstraint(
            f"rewrite_strength IN {STRENGTHS}", name="ck_rewrite_routes_strength"
        ),
        sa.CheckConstraint(
            "execution_mode IN ('batch', 'realtime')", name="ck_rewrite_routes_execution_mode"
        ),
        sa.CheckConstraint("max_retries BETWEEN 0 AND 10", name="ck_rewrite_routes_max_retries"),
    )
    op.create_index(
        "ix_rewrite_routes_lookup",
        "complaint_rewrite_routes",
        ["surface", "lane", "rewrite_strength", "priority"],
    )

    # ==========================================================================
    # rewrite_provider_batches
    # ==========================================================================
    op.create_table(
        "rewrite_provider_batches",
        sa.Column("provider_batch_id", sa.Text(), nullable=False),
        sa.Column("provider", sa.Text(), server_default="openai", nullable=False),
        sa.Column("endpoint", sa.Text(), server_default="/v1/responses", nullable=False),
        sa.Column(
            "status",
            _enum("rewrite_provider_batch_status"),
            server_default="submitted",
            nullable=False,
        ),
        sa.Column("input_file_id", sa.Text(), nullable=True),
        sa.Column("output_file_id", sa.Text(), nullable=True),
        sa.Column("error_file_id", sa.Text(), nullable=True),
        sa.Column("job_count", sa.Integer(), server_default="0", nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("last_checked_at", nullable=True),
        sa.PrimaryKeyConstraint("provider_batch_id"),
        sa.CheckConstraint("job_count >= 0", name="ck_provider_batches_job_count"),
    )
    op.create_index("ix_provider_batches_status", "rewrite_provider_batches", ["status"])

    # ==========================================================================
    # complaint_rewrite_jobs + rewrite_outputs
    # ==========================================================================
    op.create_table(
        "complaint_rewrite_jobs",
        _uuid_pk("job_id"),
        sa.Column("rewrite_request_id", sa.UUID(), nullable=False),
        sa.Column("recipient_user_id", sa.UUID(), nullable=False),
        sa.Column("recipient_snapshot_id", sa.UUID(), nullable=False),
        sa.Column("recipient_preference_snapshot_id", sa.UUID(), nullable=False),
        sa.Column("task", sa.Text(), server_default="complaint_rewrite", nullable=False),
        sa.Column("language_pair", postgresql.JSONB(), nullable=False),
        sa.Column("routing_decision", postgresql.JSONB(), nullable=False),
        sa.Column(
            "status",
            _enum("complaint_rewrite_job_status"),
            server_default="queued",
            nullable=False,
        ),
        _timestamp("not_before_at", nullable=True),
        _timestamp("claimed_at", nullable=True),
        sa.Column("claimed_by", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="2", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("last_error_at", nullable=True),
        sa.Column("provider_batch_id", sa.Text(), nullable=True),
        _timestamp("submitted_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("job_id"),
        sa.ForeignKeyConstraint(
            ["rewrite_request_id"],
            ["complaint_rewrite_requests.rewrite_request_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["recipient_snapshot_id"],
            ["recipient_snapshots.recipient_snapshot_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["recipient_preference_snapshot_id"],
            ["recipient_preference_snapshots.recipient_preference_snapshot_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["provider_batch_id"],
            ["rewrite_provider_batches.provider_batch_id"],
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint(
            "rewrite_request_id",
            "recipient_user_id",
            name="uq_complaint_rewrite_jobs_request_recipient",
        ),
        sa.CheckConstraint("task = 'complaint_rewrite'", name="ck_rewrite_jobs_task"),
        sa.CheckConstraint("attempt_count >= 0", name="ck_rewrite_jobs_attempts_nonneg"),
        sa.CheckConstraint("max_attempts >= 0", name="ck_rewrite_jobs_max_attempts_nonneg"),
    )
    op.create_index(
        "ix_rewrite_jobs_status_due",
        "complaint_rewrite_jobs",
        ["status", "not_before_at", "created_at"],
    )
    op.create_index(
        "ix_rewrite_jobs_provider_batch", "complaint_rewrite_jobs", ["provider_batch_id"]
    )

    op.create_table(
        "rewrite_outputs",
        sa.Column("rewrite_request_id", sa.UUID(), nullable=False),
        sa.Column("recipient_user_id", sa.UUID(), nullable=False),
        sa.Column("rewritten_text", sa.Text(), nullable=False),
        sa.Column("output_language", sa.Text(), nullable=False),
        sa.Column("target_locale", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("prompt_version", sa.Text(), nullable=False),
        sa.Column("policy_version", sa.Text(), nullable=False),
        sa.Column("lexicon_version", sa.Text(), nullable=False),
        sa.Column("eval_result", postgresql.JSONB(), server_default="{}", nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("rewrite_request_id", "recipient_user_id"),
        sa.ForeignKeyConstraint(
            ["rewrite_request_id"],
            ["complaint_rewrite_requests.rewrite_request_id"],
            ondelete="CASCADE",
        ),
    )

    # ==========================================================================
    # Seed provider registry
    # ==========================================================================
    op.execute("""
        INSERT INTO complaint_ai_providers (provider, adapter_kind, base_url)
        VALUES
            ('openai', 'openai_responses', 'https://api.openai.com'),
            ('gemini', 'gemini', NULL),
            ('qwen', 'openai_compat_chat_completions',
             'https://dashscope-intl.aliyuncs.com/compatible-mode'),
            ('stub', 'stub', NULL)
        ON CONFLICT DO NOTHING
    """)


def downgrade() -> None:
    for table in (
        "rewrite_outputs",
        "complaint_rewrite_jobs",
        "rewrite_provider_batches",
        "complaint_rewrite_routes",
        "complaint_ai_providers",
        "recipient_preference_snapshots",
        "recipient_snapshots",
        "complaint_rewrite_requests",
        "complaint_rewrite_triggers",
        "preference_responses",
        "preference_reports",
        "complaint_entries",
        "profiles",
        "memberships",
        "homes",
    ):
        op.drop_table(table)

    for name in reversed(list(ENUM_TYPES)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
