"""Complaint rewrite request and response schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from harmony.db.models import RewriteJobStatus, RewriteRequestStatus, TriggerStatus

__all__ = [
    "EnqueueTriggerRequest",
    "TriggerOut",
    "RewriteJobOut",
    "RewriteOutputOut",
    "RewriteRequestOut",
]

# =============================================================================
# Request Schemas
# =============================================================================


class EnqueueTriggerRequest(BaseModel):
    """Request body for queueing a rewrite of one complaint entry."""

    entry_id: UUID = Field(..., description="Complaint entry to rewrite")
    recipient_user_id: UUID = Field(..., description="Home member who receives the rewrite")


# =============================================================================
# Response Schemas
# =============================================================================


class TriggerOut(BaseModel):
    entry_id: UUID
    home_id: UUID
    author_user_id: UUID
    recipient_user_id: UUID
    status: TriggerStatus
    attempts: int
    retry_after: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RewriteJobOut(BaseModel):
    job_id: UUID
    recipient_user_id: UUID
    status: RewriteJobStatus
    attempt_count: int
    max_attempts: int
    not_before_at: datetime | None = None
    provider_batch_id: str | None = None
    last_error: str | None = None
    submitted_at: datetime | None = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RewriteOutputOut(BaseModel):
    recipient_user_id: UUID
    rewritten_text: str
    output_language: str
    target_locale: str
    provider: str
    model: str
    prompt_version: str
    eval_result: dict
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RewriteRequestOut(BaseModel):
    """Status view of one rewrite request.

    Outputs are only listed once their job completed; a request in
    ``completed`` carries one output per recipient.
    """

    rewrite_request_id: UUID
    home_id: UUID
    sender_user_id: UUID
    recipient_user_id: UUID
    status: RewriteRequestStatus
    lane: str
    intent: str
    rewrite_strength: str
    source_locale: str
    target_locale: str
    created_at: datetime
    rewrite_completed_at: datetime | None = None
    jobs: list[RewriteJobOut] = []
    outputs: list[RewriteOutputOut] = []

    model_config = ConfigDict(from_attributes=True)
