"""SQLAlchemy ORM models for the complaint rewrite pipeline.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Lifecycle statuses are Python enums mapped to PostgreSQL enum types;
closed vocabularies (surface, lane, intent, ...) are text columns guarded by
CHECK constraints.

Boundary tables (homes, memberships, profiles, complaint_entries,
preference_*) carry only the columns the pipeline reads. They are owned by
the CRUD layer.
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from harmony.db.types import JSONType, UTCDateTime, utc_now


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class TriggerStatus(str, PyEnum):
    """Trigger queue entry lifecycle.

    States:
        queued: Waiting for the trigger runner (retry_after may delay pickup)
        processing: Reserved by one runner, identified by request_id
        completed: Handed to the rewrite registry (or already enqueued)
        failed: Terminal failure (attempts exhausted or unrecoverable)
        canceled: Not eligible for rewriting
    """

    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    canceled = "canceled"


class RewriteRequestStatus(str, PyEnum):
    """Request-level status, folded from its jobs."""

    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    canceled = "canceled"


class RewriteJobStatus(str, PyEnum):
    """Job lifecycle.

    queued -> processing (submit claim) -> batch_submitted
    -> processing (collect claim) -> completed | failed | canceled

    Declaration order is persisted (PostgreSQL enum order) and must not change.
    """

    queued = "queued"
    processing = "processing"
    batch_submitted = "batch_submitted"
    completed = "completed"
    failed = "failed"
    canceled = "canceled"


class ProviderBatchStatus(str, PyEnum):
    """Lifecycle of an externally submitted batch."""

    submitted = "submitted"
    running = "running"
    completed = "completed"
    failed = "failed"
    canceled = "canceled"


TERMINAL_TRIGGER_STATUSES = (TriggerStatus.completed, TriggerStatus.failed, TriggerStatus.canceled)
TERMINAL_JOB_STATUSES = (
    RewriteJobStatus.completed,
    RewriteJobStatus.failed,
    RewriteJobStatus.canceled,
)
OPEN_JOB_STATUSES = (
    RewriteJobStatus.queued,
    RewriteJobStatus.processing,
    RewriteJobStatus.batch_submitted,
)
TERMINAL_BATCH_STATUSES = (
    ProviderBatchStatus.completed,
    ProviderBatchStatus.failed,
    ProviderBatchStatus.canceled,
)


class Surface(str, PyEnum):
    weekly_harmony = "weekly_harmony"
    direct_message = "direct_message"
    other = "other"


class Lane(str, PyEnum):
    same_language = "same_language"
    cross_language = "cross_language"


class Intent(str, PyEnum):
    request = "request"
    boundary = "boundary"
    concern = "concern"
    clarification = "clarification"


class RewriteStrength(str, PyEnum):
    light_touch = "light_touch"
    full_reframe = "full_reframe"


class Topic(str, PyEnum):
    noise = "noise"
    cleanliness = "cleanliness"
    privacy = "privacy"
    guests = "guests"
    schedule = "schedule"
    communication = "communication"
    other = "other"


class AdapterKind(str, PyEnum):
    openai_responses = "openai_responses"
    openai_compat_responses = "openai_compat_responses"
    openai_compat_chat_completions = "openai_compat_chat_completions"
    gemini = "gemini"
    stub = "stub"


MAX_ORIGINAL_TEXT_CHARS = 500
MAX_ERROR_CHARS = 512


def _in_check(column: str, enum_cls: type[PyEnum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# =============================================================================
# Boundary models (CRUD layer)
# =============================================================================


class Home(Base):
    """Household; the group a complaint entry originates in."""

    __tablename__ = "homes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )


class Membership(Base):
    """Home membership. Only rows with is_current=true count as active."""

    __tablename__ = "memberships"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    home_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("homes.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_memberships_home_user", "home_id", "user_id"),)


class Profile(Base):
    """User profile fields the pipeline reads (locale only)."""

    __tablename__ = "profiles"

    user_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    locale: Mapped[str | None] = mapped_column(Text, nullable=True)


class ComplaintEntry(Base):
    """Source message an author wants rewritten for one recipient."""

    __tablename__ = "complaint_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    home_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("homes.id", ondelete="CASCADE"), nullable=False
    )
    author_user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )


class PreferenceReport(Base):
    """Published preference report; content['resolved'] maps preference_id -> {value_key}."""

    __tablename__ = "preference_reports"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    subject_user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    template_key: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[dict] = mapped_column(JSONType, nullable=False)
    published_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )


class PreferenceResponse(Base):
    """Raw per-preference answer."""

    __tablename__ = "preference_responses"

    user_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    preference_id: Mapped[str] = mapped_column(Text, primary_key=True)
    option_value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )


# =============================================================================
# Trigger queue
# =============================================================================


class ComplaintRewriteTrigger(Base):
    """One pending "please rewrite this message" intent per source entry.

    request_id is the reservation token issued by pop_pending_triggers.
    """

    __tablename__ = "complaint_rewrite_triggers"

    entry_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("complaint_entries.id", ondelete="CASCADE"), primary_key=True
    )
    home_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("homes.id", ondelete="CASCADE"), nullable=False
    )
    author_user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    recipient_user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[TriggerStatus] = mapped_column(
        Enum(TriggerStatus, name="complaint_rewrite_trigger_status"),
        default=TriggerStatus.queued,
        nullable=False,
    )
    request_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    last_error_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    retry_after: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "request_id IS NULL OR status = 'processing'",
            name="ck_triggers_request_id_only_processing",
        ),
        CheckConstraint(
            "(status = 'processing' AND processing_started_at IS NOT NULL)"
            " OR (status <> 'processing' AND processing_started_at IS NULL)",
            name="ck_triggers_processing_started_iff_processing",
        ),
        CheckConstraint(
            "(status IN ('completed', 'failed', 'canceled') AND processed_at IS NOT NULL)"
            " OR (status NOT IN ('completed', 'failed', 'canceled') AND processed_at IS NULL)",
            name="ck_triggers_processed_iff_terminal",
        ),
        CheckConstraint(
            "retry_after IS NULL OR status = 'queued'",
            name="ck_triggers_retry_after_only_queued",
        ),
        CheckConstraint("attempts >= 0", name="ck_triggers_attempts_nonneg"),
        Index("ix_triggers_status_due", "status", "retry_after", "created_at"),
        Index("ix_triggers_author_home", "author_user_id", "home_id"),
    )


# =============================================================================
# Rewrite registry
# =============================================================================


class ComplaintRewriteRequest(Base):
    """Semantic envelope of one rewrite: text, locales, topics, routing policy."""

    __tablename__ = "complaint_rewrite_requests"

    rewrite_request_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    home_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("homes.id", ondelete="CASCADE"), nullable=False
    )
    sender_user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    recipient_user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    recipient_snapshot_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    recipient_preference_snapshot_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    surface: Mapped[str] = mapped_column(Text, nullable=False)
    original_text: Mapped[str] = mapped_column(Text, nullable=False)
    source_locale: Mapped[str] = mapped_column(Text, nullable=False)
    target_locale: Mapped[str] = mapped_column(Text, nullable=False)
    lane: Mapped[str] = mapped_column(Text, nullable=False)
    topics: Mapped[list] = mapped_column(JSONType, nullable=False)
    intent: Mapped[str] = mapped_column(Text, nullable=False)
    rewrite_strength: Mapped[str] = mapped_column(Text, nullable=False)
    classifier_result: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    context_pack: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    policy: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    classifier_version: Mapped[str] = mapped_column(Text, nullable=False)
    context_pack_version: Mapped[str] = mapped_column(Text, nullable=False)
    policy_version: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[RewriteRequestStatus] = mapped_column(
        Enum(RewriteRequestStatus, name="complaint_rewrite_request_status"),
        default=RewriteRequestStatus.queued,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    rewrite_completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(_in_check("surface", Surface), name="ck_rewrite_requests_surface"),
        CheckConstraint(_in_check("lane", Lane), name="ck_rewrite_requests_lane"),
        CheckConstraint(_in_check("intent", Intent), name="ck_rewrite_requests_intent"),
        CheckConstraint(
            _in_check("rewrite_strength", RewriteStrength),
            name="ck_rewrite_requests_strength",
        ),
        CheckConstraint(
            f"length(original_text) BETWEEN 1 AND {MAX_ORIGINAL_TEXT_CHARS}",
            name="ck_rewrite_requests_text_length",
        ),
    )


class RecipientSnapshot(Base):
    """Write-once copy of the recipient set for one request."""

    __tablename__ = "recipient_snapshots"

    recipient_snapshot_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    rewrite_request_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True)
    home_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("homes.id", ondelete="CASCADE"), nullable=False
    )
    recipient_user_ids: Mapped[list] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )


class RecipientPreferenceSnapshot(Base):
    """Write-once copy of one recipient's preference payload for one request."""

    __tablename__ = "recipient_preference_snapshots"

    recipient_preference_snapshot_id: Mapped[UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid4
    )
    rewrite_request_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    recipient_user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    preference_payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "rewrite_request_id",
            "recipient_user_id",
            name="uq_recipient_preference_snapshots_request_recipient",
        ),
    )


class ComplaintRewriteJob(Base):
    """Unit of work a worker claims: one per (request, recipient)."""

    __tablename__ = "complaint_rewrite_jobs"

    job_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    rewrite_request_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("complaint_rewrite_requests.rewrite_request_id", ondelete="CASCADE"),
        nullable=False,
    )
    recipient_user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    recipient_snapshot_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("recipient_snapshots.recipient_snapshot_id", ondelete="CASCADE"),
        nullable=False,
    )
    recipient_preference_snapshot_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey(
            "recipient_preference_snapshots.recipient_preference_snapshot_id",
            ondelete="CASCADE",
        ),
        nullable=False,
    )
    task: Mapped[str] = mapped_column(Text, default="complaint_rewrite", nullable=False)
    language_pair: Mapped[dict] = mapped_column(JSONType, nullable=False)
    routing_decision: Mapped[dict] = mapped_column(JSONType, nullable=False)
    status: Mapped[RewriteJobStatus] = mapped_column(
        Enum(RewriteJobStatus, name="complaint_rewrite_job_status"),
        default=RewriteJobStatus.queued,
        nullable=False,
    )
    not_before_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, default=2, server_default="2", nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    provider_batch_id: Mapped[str | None] = mapped_column(
        Text,
        ForeignKey("rewrite_provider_batches.provider_batch_id", ondelete="SET NULL"),
        nullable=True,
    )
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "rewrite_request_id",
            "recipient_user_id",
            name="uq_complaint_rewrite_jobs_request_recipient",
        ),
        CheckConstraint("task = 'complaint_rewrite'", name="ck_rewrite_jobs_task"),
        CheckConstraint("attempt_count >= 0", name="ck_rewrite_jobs_attempts_nonneg"),
        CheckConstraint("max_attempts >= 0", name="ck_rewrite_jobs_max_attempts_nonneg"),
        Index("ix_rewrite_jobs_status_due", "status", "not_before_at", "created_at"),
        Index("ix_rewrite_jobs_provider_batch", "provider_batch_id"),
    )


class RewriteOutput(Base):
    """Terminal artifact for one (request, recipient). Later writes overwrite."""

    __tablename__ = "rewrite_outputs"

    rewrite_request_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("complaint_rewrite_requests.rewrite_request_id", ondelete="CASCADE"),
        primary_key=True,
    )
    recipient_user_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    rewritten_text: Mapped[str] = mapped_column(Text, nullable=False)
    output_language: Mapped[str] = mapped_column(Text, nullable=False)
    target_locale: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_version: Mapped[str] = mapped_column(Text, nullable=False)
    policy_version: Mapped[str] = mapped_column(Text, nullable=False)
    lexicon_version: Mapped[str] = mapped_column(Text, nullable=False)
    eval_result: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )


# =============================================================================
# Routing
# =============================================================================


class ComplaintAIProvider(Base):
    """Provider registry consulted by routing."""

    __tablename__ = "complaint_ai_providers"

    provider: Mapped[str] = mapped_column(Text, primary_key=True)
    adapter_kind: Mapped[str] = mapped_column(Text, nullable=False)
    base_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint(
            _in_check("adapter_kind", AdapterKind), name="ck_ai_providers_adapter_kind"
        ),
    )


class ComplaintRewriteRoute(Base):
    """Route row: (surface, lane, strength) -> provider/model/prompt/policy."""

    __tablename__ = "complaint_rewrite_routes"

    route_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    surface: Mapped[str] = mapped_column(Text, nullable=False)
    lane: Mapped[str] = mapped_column(Text, nullable=False)
    rewrite_strength: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(
        Text, ForeignKey("complaint_ai_providers.provider"), nullable=False
    )
    model: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_version: Mapped[str] = mapped_column(Text, nullable=False)
    policy_version: Mapped[str] = mapped_column(Text, nullable=False)
    execution_mode: Mapped[str] = mapped_column(Text, default="batch", nullable=False)
    cache_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=2, server_default="2", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(_in_check("surface", Surface), name="ck_rewrite_routes_surface"),
        CheckConstraint(_in_check("lane", Lane), name="ck_rewrite_routes_lane"),
        CheckConstraint(
            _in_check("rewrite_strength", RewriteStrength), name="ck_rewrite_routes_strength"
        ),
        CheckConstraint(
            "execution_mode IN ('batch', 'realtime')", name="ck_rewrite_routes_execution_mode"
        ),
        CheckConstraint("max_retries BETWEEN 0 AND 10", name="ck_rewrite_routes_max_retries"),
        Index("ix_rewrite_routes_lookup", "surface", "lane", "rewrite_strength", "priority"),
    )


# =============================================================================
# Provider batches
# =============================================================================


class RewriteProviderBatch(Base):
    """One externally submitted batch call."""

    __tablename__ = "rewrite_provider_batches"

    provider_batch_id: Mapped[str] = mapped_column(Text, primary_key=True)
    provider: Mapped[str] = mapped_column(Text, default="openai", nullable=False)
    endpoint: Mapped[str] = mapped_column(Text, default="/v1/responses", nullable=False)
    status: Mapped[ProviderBatchStatus] = mapped_column(
        Enum(ProviderBatchStatus, name="rewrite_provider_batch_status"),
        default=ProviderBatchStatus.submitted,
        nullable=False,
    )
    input_file_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_file_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_file_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    last_checked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("job_count >= 0", name="ck_provider_batches_job_count"),
        Index("ix_provider_batches_status", "status"),
    )
