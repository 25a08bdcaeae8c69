"""Rewrite request/job registry.

One ComplaintRewriteRequest fans out to one ComplaintRewriteJob per
recipient. Jobs move through

    queued -> processing (submit claim) -> batch_submitted
    -> processing (collect claim) -> completed | failed | canceled

and the request status is folded from its jobs once none is open.

Rules:
- All helpers accept Session and never call commit()/rollback().
- Claims select ids through FOR UPDATE SKIP LOCKED and repeat the status guard
  on the UPDATE; a claim returning fewer rows than asked is normal.
- Worker identity is an explicit parameter on every claim.
- Backoff for requeues is clamped to [30s, 6h].
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import exists, func, select, update
from sqlalchemy.orm import Session

from harmony.db.dml import upsert_insert
from harmony.db.models import (
    MAX_ERROR_CHARS,
    MAX_ORIGINAL_TEXT_CHARS,
    OPEN_JOB_STATUSES,
    ComplaintRewriteJob,
    ComplaintRewriteRequest,
    Intent,
    Lane,
    RewriteJobStatus,
    RewriteOutput,
    RewriteRequestStatus,
    RewriteStrength,
    Surface,
    Topic,
)
from harmony.db.types import utc_now
from harmony.errors import (
    ApiErrorCode,
    InvalidRequestError,
    JobMismatchError,
    LanguageMismatchError,
)
from harmony.logging import get_logger
from harmony.services.snapshots import build_recipient_snapshots

logger = get_logger(__name__)

jobs = ComplaintRewriteJob.__table__
requests = ComplaintRewriteRequest.__table__
outputs = RewriteOutput.__table__

MIN_BACKOFF_SECONDS = 30
MAX_BACKOFF_SECONDS = 6 * 3600
DEFAULT_BACKOFF_SECONDS = 600
DEFAULT_MAX_ATTEMPTS = 2
MAX_TOPICS = 3

SUBMITTER_WORKER_ID = "rewrite_batch_submitter"
COLLECTOR_WORKER_ID = "rewrite_batch_collector"


# =============================================================================
# Value types
# =============================================================================


@dataclass(frozen=True)
class RewriteEnqueue:
    """Everything needed to create one request and its single job."""

    rewrite_request_id: UUID
    home_id: UUID
    sender_user_id: UUID
    recipient_user_id: UUID
    surface: str
    original_text: str
    source_locale: str
    target_locale: str
    lane: str
    topics: list[str]
    intent: str
    rewrite_strength: str
    classifier_version: str
    context_pack_version: str
    policy_version: str
    routing_decision: dict[str, Any]
    language_pair: dict[str, str]
    preference_payload: dict[str, Any]
    classifier_result: dict[str, Any] = field(default_factory=dict)
    context_pack: dict[str, Any] = field(default_factory=dict)
    policy: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


@dataclass(frozen=True)
class EnqueueResult:
    rewrite_request_id: UUID
    job_id: UUID
    recipient_snapshot_id: UUID
    recipient_preference_snapshot_id: UUID
    inserted_request: bool
    inserted_job: bool


@dataclass(frozen=True)
class ClaimedJob:
    job_id: UUID
    rewrite_request_id: UUID
    recipient_user_id: UUID
    routing_decision: dict[str, Any]
    provider_batch_id: str | None = None


@dataclass(frozen=True)
class JobOutput:
    """Provider result for one job, as written to rewrite_outputs."""

    rewritten_text: str
    output_language: str
    target_locale: str
    model: str
    provider: str
    prompt_version: str
    policy_version: str
    lexicon_version: str
    eval_result: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequeuedJob:
    job_id: UUID
    prev_status: RewriteJobStatus
    new_status: RewriteJobStatus
    not_before_at: datetime


# =============================================================================
# Helpers
# =============================================================================


def clamp_backoff(seconds: int | None) -> int:
    """Clamp a requeue backoff to [30s, 6h]; None means the 600s default."""
    if seconds is None:
        seconds = DEFAULT_BACKOFF_SECONDS
    return max(MIN_BACKOFF_SECONDS, min(int(seconds), MAX_BACKOFF_SECONDS))


def locale_primary(locale: str | None) -> str | None:
    """Lowercased primary subtag ("en-NZ" -> "en"), None when empty."""
    primary = (locale or "").split("-", 1)[0].strip().lower()
    return primary or None


def _error_text(error: str | None, default: str) -> str:
    return (error or default)[:MAX_ERROR_CHARS]


def _allowed(enum_cls) -> set[str]:
    return {member.value for member in enum_cls}


def validate_enqueue(payload: RewriteEnqueue) -> None:
    """Reject malformed enqueue payloads before anything is written.

    Raises:
        InvalidRequestError: E_INVALID_REQUEST, E_TEXT_TOO_LONG or E_INVALID_TOPICS.
    """
    if payload.surface not in _allowed(Surface):
        raise InvalidRequestError(message=f"invalid surface: {payload.surface}")
    if payload.lane not in _allowed(Lane):
        raise InvalidRequestError(message=f"invalid lane: {payload.lane}")
    if payload.rewrite_strength not in _allowed(RewriteStrength):
        raise InvalidRequestError(message=f"invalid rewrite_strength: {payload.rewrite_strength}")
    if payload.intent not in _allowed(Intent):
        raise InvalidRequestError(message=f"invalid intent: {payload.intent}")

    if not payload.original_text or not payload.original_text.strip():
        raise InvalidRequestError(message="original_text required")
    if len(payload.original_text) > MAX_ORIGINAL_TEXT_CHARS:
        raise InvalidRequestError(
            ApiErrorCode.E_TEXT_TOO_LONG,
            f"original_text max {MAX_ORIGINAL_TEXT_CHARS} chars",
        )

    topics = payload.topics
    if (
        not isinstance(topics, list)
        or not 1 <= len(topics) <= MAX_TOPICS
        or len(set(topics)) != len(topics)
        or any(topic not in _allowed(Topic) for topic in topics)
    ):
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_TOPICS, "topics must be 1-3 distinct known topics"
        )

    if not isinstance(payload.preference_payload, dict):
        raise InvalidRequestError(message="preference_payload must be an object")
    if not isinstance(payload.routing_decision, dict):
        raise InvalidRequestError(message="routing_decision must be an object")
    language_pair = payload.language_pair
    if not isinstance(language_pair, dict) or not {"from", "to"} <= language_pair.keys():
        raise InvalidRequestError(message="language_pair requires from and to")


# =============================================================================
# Enqueue
# =============================================================================


def enqueue_rewrite(db: Session, payload: RewriteEnqueue) -> EnqueueResult:
    """Create the request, its snapshots and its job. Safe to call repeatedly.

    A second call with the same rewrite_request_id and recipient inserts
    nothing and returns the existing job_id.
    """
    validate_enqueue(payload)
    now = utc_now()

    inserted_request = db.execute(
        upsert_insert(db, requests)
        .values(
            rewrite_request_id=payload.rewrite_request_id,
            home_id=payload.home_id,
            sender_user_id=payload.sender_user_id,
            recipient_user_id=payload.recipient_user_id,
            surface=payload.surface,
            original_text=payload.original_text,
            source_locale=payload.source_locale,
            target_locale=payload.target_locale,
            lane=payload.lane,
            topics=list(payload.topics),
            intent=payload.intent,
            rewrite_strength=payload.rewrite_strength,
            classifier_result=payload.classifier_result,
            context_pack=payload.context_pack,
            policy=payload.policy,
            classifier_version=payload.classifier_version,
            context_pack_version=payload.context_pack_version,
            policy_version=payload.policy_version,
            status=RewriteRequestStatus.queued,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[requests.c.rewrite_request_id])
        .returning(requests.c.rewrite_request_id)
    ).first() is not None

    snapshots = build_recipient_snapshots(
        db,
        payload.rewrite_request_id,
        payload.home_id,
        payload.recipient_user_id,
        payload.preference_payload,
    )

    db.execute(
        update(requests)
        .where(requests.c.rewrite_request_id == payload.rewrite_request_id)
        .values(
            recipient_snapshot_id=func.coalesce(
                requests.c.recipient_snapshot_id, snapshots.recipient_snapshot_id
            ),
            recipient_preference_snapshot_id=func.coalesce(
                requests.c.recipient_preference_snapshot_id,
                snapshots.recipient_preference_snapshot_id,
            ),
            updated_at=now,
        )
    )

    new_job_id = uuid4()
    max_attempts = DEFAULT_MAX_ATTEMPTS if payload.max_attempts is None else payload.max_attempts
    inserted_job = db.execute(
        upsert_insert(db, jobs)
        .values(
            job_id=new_job_id,
            rewrite_request_id=payload.rewrite_request_id,
            recipient_user_id=payload.recipient_user_id,
            recipient_snapshot_id=snapshots.recipient_snapshot_id,
            recipient_preference_snapshot_id=snapshots.recipient_preference_snapshot_id,
            task="complaint_rewrite",
            language_pair=payload.language_pair,
            routing_decision=payload.routing_decision,
            status=RewriteJobStatus.queued,
            attempt_count=0,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=[jobs.c.rewrite_request_id, jobs.c.recipient_user_id]
        )
        .returning(jobs.c.job_id)
    ).first() is not None

    if inserted_job:
        job_id = new_job_id
    else:
        job_id = db.execute(
            select(jobs.c.job_id).where(
                jobs.c.rewrite_request_id == payload.rewrite_request_id,
                jobs.c.recipient_user_id == payload.recipient_user_id,
            )
        ).scalar_one()

    logger.info(
        "rewrite_enqueued",
        rewrite_request_id=str(payload.rewrite_request_id),
        job_id=str(job_id),
        inserted_request=inserted_request,
        inserted_job=inserted_job,
    )

    return EnqueueResult(
        rewrite_request_id=payload.rewrite_request_id,
        job_id=job_id,
        recipient_snapshot_id=snapshots.recipient_snapshot_id,
        recipient_preference_snapshot_id=snapshots.recipient_preference_snapshot_id,
        inserted_request=inserted_request,
        inserted_job=inserted_job,
    )


def rewrite_request_exists(db: Session, rewrite_request_id: UUID) -> bool:
    return db.execute(
        select(exists().where(requests.c.rewrite_request_id == rewrite_request_id))
    ).scalar_one()


# =============================================================================
# Submit side
# =============================================================================


def _claimed(row) -> ClaimedJob:
    return ClaimedJob(
        job_id=row.job_id,
        rewrite_request_id=row.rewrite_request_id,
        recipient_user_id=row.recipient_user_id,
        routing_decision=row.routing_decision or {},
        provider_batch_id=row.provider_batch_id,
    )


def claim_jobs_for_submit(
    db: Session, worker_id: str = SUBMITTER_WORKER_ID, limit: int = 50
) -> list[ClaimedJob]:
    """Claim due queued jobs that have never been attached to a provider batch."""
    if limit <= 0:
        return []
    now = utc_now()

    eligible = (
        select(jobs.c.job_id)
        .where(
            jobs.c.status == RewriteJobStatus.queued,
            (jobs.c.not_before_at.is_(None)) | (jobs.c.not_before_at <= now),
            jobs.c.provider_batch_id.is_(None),
            jobs.c.submitted_at.is_(None),
        )
        .order_by(jobs.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )

    rows = db.execute(
        update(jobs)
        .where(
            jobs.c.job_id.in_(eligible.scalar_subquery()),
            jobs.c.status == RewriteJobStatus.queued,
        )
        .values(
            status=RewriteJobStatus.processing,
            claimed_at=now,
            claimed_by=worker_id,
            attempt_count=jobs.c.attempt_count + 1,
            updated_at=now,
        )
        .returning(
            jobs.c.job_id,
            jobs.c.rewrite_request_id,
            jobs.c.recipient_user_id,
            jobs.c.routing_decision,
            jobs.c.provider_batch_id,
        )
    ).all()

    claimed = [_claimed(row) for row in rows]
    if claimed:
        logger.info("rewrite_jobs_claimed_for_submit", worker_id=worker_id, count=len(claimed))
    return claimed


def mark_jobs_batch_submitted(db: Session, job_ids: list[UUID], provider_batch_id: str) -> int:
    """processing -> batch_submitted for jobs still processing. Returns rows updated."""
    if not job_ids:
        return 0
    now = utc_now()
    result = db.execute(
        update(jobs)
        .where(jobs.c.job_id.in_(job_ids), jobs.c.status == RewriteJobStatus.processing)
        .values(
            status=RewriteJobStatus.batch_submitted,
            provider_batch_id=provider_batch_id,
            submitted_at=now,
            updated_at=now,
        )
    )
    return result.rowcount


def requeue_jobs_after_submit_failure(
    db: Session,
    job_ids: list[UUID],
    error: str,
    backoff_seconds: int | None = DEFAULT_BACKOFF_SECONDS,
) -> int:
    """processing -> queued with backoff, used when the batch call itself failed."""
    if not job_ids:
        return 0
    now = utc_now()
    backoff = clamp_backoff(backoff_seconds)
    result = db.execute(
        update(jobs)
        .where(jobs.c.job_id.in_(job_ids), jobs.c.status == RewriteJobStatus.processing)
        .values(
            status=RewriteJobStatus.queued,
            not_before_at=now + timedelta(seconds=backoff),
            last_error=_error_text(error, "submit_failed"),
            last_error_at=now,
            claimed_at=None,
            claimed_by=None,
            updated_at=now,
        )
    )
    if result.rowcount:
        logger.warning(
            "rewrite_jobs_requeued_after_submit_failure",
            count=result.rowcount,
            backoff_seconds=backoff,
            error=error,
        )
    return result.rowcount


# =============================================================================
# Collect side
# =============================================================================


def claim_jobs_for_collect(
    db: Session,
    worker_id: str = COLLECTOR_WORKER_ID,
    limit: int = 50,
    job_ids: list[UUID] | None = None,
) -> list[ClaimedJob]:
    """Claim batch_submitted jobs, either the given ids or the oldest submitted.

    Parent requests still queued are flipped to processing.
    """
    now = utc_now()

    if job_ids is not None:
        if not job_ids:
            return []
        target = jobs.c.job_id.in_(job_ids)
    else:
        if limit <= 0:
            return []
        eligible = (
            select(jobs.c.job_id)
            .where(jobs.c.status == RewriteJobStatus.batch_submitted)
            .order_by(jobs.c.submitted_at.asc().nulls_last(), jobs.c.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        target = jobs.c.job_id.in_(eligible.scalar_subquery())

    rows = db.execute(
        update(jobs)
        .where(target, jobs.c.status == RewriteJobStatus.batch_submitted)
        .values(
            status=RewriteJobStatus.processing,
            claimed_at=now,
            claimed_by=worker_id,
            updated_at=now,
        )
        .returning(
            jobs.c.job_id,
            jobs.c.rewrite_request_id,
            jobs.c.recipient_user_id,
            jobs.c.routing_decision,
            jobs.c.provider_batch_id,
        )
    ).all()

    claimed = [_claimed(row) for row in rows]
    request_ids = {job.rewrite_request_id for job in claimed}
    if request_ids:
        db.execute(
            update(requests)
            .where(
                requests.c.rewrite_request_id.in_(request_ids),
                requests.c.status == RewriteRequestStatus.queued,
            )
            .values(status=RewriteRequestStatus.processing, updated_at=now)
        )
        logger.info("rewrite_jobs_claimed_for_collect", worker_id=worker_id, count=len(claimed))
    return claimed


def complete_job(
    db: Session,
    job_id: UUID,
    rewrite_request_id: UUID,
    recipient_user_id: UUID,
    output: JobOutput,
) -> RewriteRequestStatus | None:
    """Write the output, complete the job, and fold the request.

    Returns:
        The request status after folding.

    Raises:
        JobMismatchError: Job is not processing or does not match request/recipient.
        LanguageMismatchError: output_language is not the target locale's language.
    """
    owned = db.execute(
        select(jobs.c.job_id)
        .where(
            jobs.c.job_id == job_id,
            jobs.c.rewrite_request_id == rewrite_request_id,
            jobs.c.recipient_user_id == recipient_user_id,
            jobs.c.status == RewriteJobStatus.processing,
        )
        .with_for_update()
    ).first()
    if owned is None:
        raise JobMismatchError(job_id)

    output_primary = locale_primary(output.output_language)
    if output_primary is None or output_primary != locale_primary(output.target_locale):
        raise LanguageMismatchError(output.output_language, output.target_locale)

    now = utc_now()
    values = {
        "rewritten_text": output.rewritten_text,
        "output_language": output.output_language,
        "target_locale": output.target_locale,
        "model": output.model,
        "provider": output.provider,
        "prompt_version": output.prompt_version,
        "policy_version": output.policy_version,
        "lexicon_version": output.lexicon_version,
        "eval_result": output.eval_result,
        "updated_at": now,
    }
    stmt = upsert_insert(db, outputs).values(
        rewrite_request_id=rewrite_request_id,
        recipient_user_id=recipient_user_id,
        created_at=now,
        **values,
    )
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=[outputs.c.rewrite_request_id, outputs.c.recipient_user_id],
            set_={key: stmt.excluded[key] for key in values},
        )
    )

    db.execute(
        update(jobs)
        .where(jobs.c.job_id == job_id, jobs.c.status == RewriteJobStatus.processing)
        .values(
            status=RewriteJobStatus.completed,
            last_error=None,
            last_error_at=None,
            updated_at=now,
        )
    )

    logger.info(
        "rewrite_job_completed",
        job_id=str(job_id),
        rewrite_request_id=str(rewrite_request_id),
        provider=output.provider,
        model=output.model,
    )
    return finalize_request(db, rewrite_request_id)


def fail_job(db: Session, job_id: UUID, error: str) -> bool:
    """Hard-fail an open job (no further retries) and fold its request.

    Returns:
        True if the job was open and is now failed.
    """
    now = utc_now()
    row = db.execute(
        update(jobs)
        .where(jobs.c.job_id == job_id, jobs.c.status.in_(OPEN_JOB_STATUSES))
        .values(
            status=RewriteJobStatus.failed,
            last_error=_error_text(error, "unknown"),
            last_error_at=now,
            updated_at=now,
        )
        .returning(jobs.c.rewrite_request_id)
    ).first()
    if row is None:
        return False

    logger.warning("rewrite_job_failed", job_id=str(job_id), error=error)
    finalize_request(db, row.rewrite_request_id)
    return True


def fail_or_requeue_job(
    db: Session,
    job_id: UUID,
    error: str,
    backoff_seconds: int | None = DEFAULT_BACKOFF_SECONDS,
) -> RewriteJobStatus | None:
    """Soft failure honoring the job's attempt budget.

    With attempts left the job goes back to queued behind a clamped backoff,
    with batch linkage and claim metadata cleared. Otherwise it fails and the
    request is folded.

    Returns:
        The job's new status, or None if the job is missing or already terminal.
    """
    row = db.execute(
        select(jobs.c.attempt_count, jobs.c.max_attempts, jobs.c.rewrite_request_id)
        .where(jobs.c.job_id == job_id, jobs.c.status.in_(OPEN_JOB_STATUSES))
        .with_for_update()
    ).first()
    if row is None:
        return None

    now = utc_now()
    if row.attempt_count >= row.max_attempts:
        fail_job(db, job_id, error)
        return RewriteJobStatus.failed

    backoff = clamp_backoff(backoff_seconds)
    db.execute(
        update(jobs)
        .where(jobs.c.job_id == job_id, jobs.c.status.in_(OPEN_JOB_STATUSES))
        .values(
            status=RewriteJobStatus.queued,
            not_before_at=now + timedelta(seconds=backoff),
            last_error=_error_text(error, "unknown"),
            last_error_at=now,
            provider_batch_id=None,
            submitted_at=None,
            claimed_at=None,
            claimed_by=None,
            updated_at=now,
        )
    )
    logger.info(
        "rewrite_job_requeued",
        job_id=str(job_id),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        backoff_seconds=backoff,
        error=error,
    )
    return RewriteJobStatus.queued


def finalize_request(db: Session, rewrite_request_id: UUID) -> RewriteRequestStatus | None:
    """Fold job outcomes into the request status.

    Once no job is open the request becomes failed if any job failed or was
    canceled, completed otherwise; rewrite_completed_at is stamped once.
    Requests with no jobs are left as they are.

    Returns:
        The request status after the fold, or None if the request is missing.
    """
    counts = db.execute(
        select(
            func.count().label("total"),
            func.count().filter(jobs.c.status.in_(OPEN_JOB_STATUSES)).label("open"),
            func.count()
            .filter(jobs.c.status.in_((RewriteJobStatus.failed, RewriteJobStatus.canceled)))
            .label("bad"),
        ).where(jobs.c.rewrite_request_id == rewrite_request_id)
    ).one()

    if counts.total == 0 or counts.open > 0:
        return db.execute(
            select(requests.c.status).where(requests.c.rewrite_request_id == rewrite_request_id)
        ).scalar_one_or_none()

    now = utc_now()
    folded = RewriteRequestStatus.failed if counts.bad else RewriteRequestStatus.completed
    status = db.execute(
        update(requests)
        .where(requests.c.rewrite_request_id == rewrite_request_id)
        .values(
            status=folded,
            rewrite_completed_at=func.coalesce(requests.c.rewrite_completed_at, now),
            updated_at=now,
        )
        .returning(requests.c.status)
    ).scalar_one_or_none()

    if status is not None:
        logger.info(
            "rewrite_request_finalized",
            rewrite_request_id=str(rewrite_request_id),
            status=status.value,
            job_count=counts.total,
        )
    return status


def requeue_jobs_by_provider_batch(
    db: Session,
    provider_batch_id: str,
    reason: str = "provider_batch_missing_output_file",
    backoff_seconds: int = 1800,
    limit: int = 500,
) -> list[RequeuedJob]:
    """Return every batch_submitted job of one provider batch to queued.

    Raises:
        ValueError: If provider_batch_id is blank.
    """
    if provider_batch_id is None or not provider_batch_id.strip():
        raise ValueError("provider_batch_id required")

    now = utc_now()
    not_before = now + timedelta(seconds=max(backoff_seconds or 0, 0))

    target = (
        select(jobs.c.job_id)
        .where(
            jobs.c.provider_batch_id == provider_batch_id,
            jobs.c.status == RewriteJobStatus.batch_submitted,
        )
        .order_by(jobs.c.job_id)
        .limit(max(limit, 0))
        .with_for_update()
    )

    rows = db.execute(
        update(jobs)
        .where(
            jobs.c.job_id.in_(target.scalar_subquery()),
            jobs.c.status == RewriteJobStatus.batch_submitted,
        )
        .values(
            status=RewriteJobStatus.queued,
            not_before_at=not_before,
            last_error=f"{reason or 'requeued'}: batch={provider_batch_id}"[:MAX_ERROR_CHARS],
            last_error_at=now,
            provider_batch_id=None,
            submitted_at=None,
            claimed_at=None,
            claimed_by=None,
            updated_at=now,
        )
        .returning(jobs.c.job_id, jobs.c.status, jobs.c.not_before_at)
    ).all()

    requeued = [
        RequeuedJob(
            job_id=row.job_id,
            prev_status=RewriteJobStatus.batch_submitted,
            new_status=row.status,
            not_before_at=row.not_before_at,
        )
        for row in rows
    ]
    if requeued:
        logger.warning(
            "rewrite_jobs_requeued_by_provider_batch",
            provider_batch_id=provider_batch_id,
            reason=reason,
            count=len(requeued),
        )
    return requeued


# =============================================================================
# Reads
# =============================================================================


def fetch_job(db: Session, job_id: UUID) -> ComplaintRewriteJob | None:
    return db.execute(
        select(ComplaintRewriteJob)
        .where(ComplaintRewriteJob.job_id == job_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def fetch_request(db: Session, rewrite_request_id: UUID) -> ComplaintRewriteRequest | None:
    return db.execute(
        select(ComplaintRewriteRequest)
        .where(ComplaintRewriteRequest.rewrite_request_id == rewrite_request_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def list_request_jobs(db: Session, rewrite_request_id: UUID) -> list[ComplaintRewriteJob]:
    return list(
        db.execute(
            select(ComplaintRewriteJob)
            .where(ComplaintRewriteJob.rewrite_request_id == rewrite_request_id)
            .order_by(ComplaintRewriteJob.created_at)
            .execution_options(populate_existing=True)
        ).scalars()
    )


def list_request_outputs(db: Session, rewrite_request_id: UUID) -> list[RewriteOutput]:
    return list(
        db.execute(
            select(RewriteOutput)
            .where(RewriteOutput.rewrite_request_id == rewrite_request_id)
            .execution_options(populate_existing=True)
        ).scalars()
    )

