"""Batch collector tick.

Polls pending provider batches, records their status, and for completed
batches walks the output file line by line: each line is matched to its job
by custom_id, evaluated, and either completed or routed through fail/requeue.
Requests touched by a batch are finalized once the batch has been processed.
"""

import json
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from harmony.db.models import ProviderBatchStatus, RewriteJobStatus
from harmony.errors import ApiError
from harmony.logging import get_logger
from harmony.providers.base import BatchProvider, ProviderError, map_provider_status
from harmony.providers.prompt import extract_rewritten_text
from harmony.services.evaluation import LEXICON_VERSION, evaluate_rewrite, power_mode_from_context
from harmony.services.provider_batches import list_pending_batches, update_batch
from harmony.services.rewrite_jobs import (
    COLLECTOR_WORKER_ID,
    JobOutput,
    claim_jobs_for_collect,
    complete_job,
    fail_job,
    fail_or_requeue_job,
    fetch_job,
    fetch_request,
    finalize_request,
    requeue_jobs_by_provider_batch,
)

logger = get_logger(__name__)

MAX_BATCHES = 10
MAX_JSONL_LINE_CHARS = 2_000_000

BACKOFF_PROVIDER_SECONDS = 6 * 3600
BACKOFF_PARSE_SECONDS = 600
BACKOFF_COMPLETE_SECONDS = 600
BACKOFF_BATCH_DOWNLOAD_SECONDS = 1800
BACKOFF_MISSING_OUTPUT_SECONDS = 1800
REQUEUE_MISSING_OUTPUT_LIMIT = 1000

DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "gpt-4.1"
DEFAULT_PROMPT_VERSION = "v1"

SHORT_ERROR_CHARS = 300


@dataclass
class BatchCollectResult:
    provider_batch_id: str
    status: str
    reason: str | None = None
    error: str | None = None
    lines: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    requeued_jobs: int = 0
    finalized_requests: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"provider_batch_id": self.provider_batch_id, "status": self.status}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.error is not None:
            data["error"] = self.error
        if self.status == ProviderBatchStatus.completed.value and self.reason is None:
            data.update(
                lines=self.lines,
                completed=self.completed,
                failed=self.failed,
                skipped=self.skipped,
                finalized_requests=self.finalized_requests,
            )
        if self.requeued_jobs:
            data["requeued_jobs"] = self.requeued_jobs
        return data


@dataclass
class CollectResult:
    ok: bool = True
    checked: int = 0
    results: list[BatchCollectResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked": self.checked,
            "results": [r.to_dict() for r in self.results],
        }


def safe_short(value: Any) -> str:
    """Compact string form of an error payload, at most 300 chars."""
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value if value is not None else "")
        except (TypeError, ValueError):
            text = str(value)
    return text[:SHORT_ERROR_CHARS]


def _parse_job_id(custom_id: Any) -> UUID | None:
    try:
        return UUID(str(custom_id if custom_id is not None else "").strip())
    except ValueError:
        return None


def _process_line(
    db: Session,
    line: str,
    provider_batch_id: str,
    worker_id: str,
    touched: set[UUID],
    outcome: BatchCollectResult,
) -> None:
    if len(line) > MAX_JSONL_LINE_CHARS:
        outcome.failed += 1
        return

    try:
        item = json.loads(line)
    except ValueError:
        outcome.failed += 1
        return
    if not isinstance(item, dict):
        outcome.failed += 1
        return

    job_id = _parse_job_id(item.get("custom_id"))
    if job_id is None:
        outcome.failed += 1
        return

    job = fetch_job(db, job_id)
    if job is None:
        outcome.failed += 1
        return
    if job.provider_batch_id != provider_batch_id or job.status != RewriteJobStatus.batch_submitted:
        outcome.skipped += 1
        return

    if not claim_jobs_for_collect(db, worker_id=worker_id, job_ids=[job_id]):
        # another collector got there first
        outcome.skipped += 1
        return

    touched.add(job.rewrite_request_id)

    if item.get("error"):
        fail_or_requeue_job(
            db,
            job_id,
            f"provider_item_error:{safe_short(item['error'])}",
            BACKOFF_PROVIDER_SECONDS,
        )
        outcome.failed += 1
        return

    response = item.get("response")
    body = response.get("body") if isinstance(response, dict) else None
    rewritten = extract_rewritten_text(body)
    if not rewritten:
        fail_or_requeue_job(db, job_id, "empty_rewrite", BACKOFF_PARSE_SECONDS)
        outcome.failed += 1
        return

    request = fetch_request(db, job.rewrite_request_id)
    if request is None:
        fail_job(db, job_id, "rewrite_request_not_found")
        outcome.failed += 1
        return

    target_locale = request.target_locale
    evaluation = evaluate_rewrite(
        rewritten,
        output_language=target_locale,
        target_locale=target_locale,
        intent=request.intent,
        rewrite_request_id=job.rewrite_request_id,
        recipient_user_id=job.recipient_user_id,
        power_mode=power_mode_from_context(request.context_pack),
    )
    if not evaluation.lexicon_pass or evaluation.tone_safety == "fail":
        fail_job(db, job_id, "eval_failed:" + safe_short(",".join(evaluation.violations)))
        outcome.failed += 1
        return

    decision = job.routing_decision or {}
    output = JobOutput(
        rewritten_text=rewritten,
        output_language=target_locale,
        target_locale=target_locale,
        model=str(decision.get("model") or DEFAULT_MODEL),
        provider=str(decision.get("provider") or DEFAULT_PROVIDER),
        prompt_version=str(decision.get("prompt_version") or DEFAULT_PROMPT_VERSION),
        policy_version=request.policy_version,
        lexicon_version=LEXICON_VERSION,
        eval_result=evaluation.to_dict(),
    )

    try:
        with db.begin_nested():
            complete_job(db, job_id, job.rewrite_request_id, job.recipient_user_id, output)
    except (ApiError, SQLAlchemyError) as e:
        message = e.message if isinstance(e, ApiError) else str(e)
        logger.warning("rewrite_job_complete_failed", job_id=str(job_id), error=message)
        fail_or_requeue_job(
            db, job_id, f"complete_failed:{safe_short(message)}", BACKOFF_COMPLETE_SECONDS
        )
        outcome.failed += 1
        return

    outcome.completed += 1


def _collect_batch(
    db: Session, provider: BatchProvider, provider_batch_id: str, worker_id: str
) -> BatchCollectResult:
    try:
        info = provider.get_batch(provider_batch_id)
    except ProviderError as e:
        logger.warning(
            "provider_batch_poll_failed", provider_batch_id=provider_batch_id, error=e.message
        )
        return BatchCollectResult(
            provider_batch_id=provider_batch_id,
            status="poll_failed",
            error=safe_short(e.message),
        )

    status = map_provider_status(info.status)
    update_batch(db, provider_batch_id, status, info.output_file_id, info.error_file_id)

    if status != ProviderBatchStatus.completed:
        return BatchCollectResult(provider_batch_id=provider_batch_id, status=status.value)

    if not info.output_file_id:
        update_batch(db, provider_batch_id, ProviderBatchStatus.failed, None, info.error_file_id)
        requeued = requeue_jobs_by_provider_batch(
            db,
            provider_batch_id,
            reason="provider_batch_completed_missing_output_file",
            backoff_seconds=BACKOFF_MISSING_OUTPUT_SECONDS,
            limit=REQUEUE_MISSING_OUTPUT_LIMIT,
        )
        return BatchCollectResult(
            provider_batch_id=provider_batch_id,
            status=ProviderBatchStatus.failed.value,
            reason="missing_output_file_id",
            requeued_jobs=len(requeued),
        )

    try:
        output_text = provider.download_file(info.output_file_id)
    except ProviderError as e:
        requeued = requeue_jobs_by_provider_batch(
            db,
            provider_batch_id,
            reason="output_download_failed",
            backoff_seconds=BACKOFF_BATCH_DOWNLOAD_SECONDS,
            limit=REQUEUE_MISSING_OUTPUT_LIMIT,
        )
        return BatchCollectResult(
            provider_batch_id=provider_batch_id,
            status=ProviderBatchStatus.completed.value,
            reason="output_download_failed",
            error=safe_short(e.message),
            requeued_jobs=len(requeued),
        )

    lines = [line.strip() for line in output_text.split("\n") if line.strip()]
    outcome = BatchCollectResult(
        provider_batch_id=provider_batch_id,
        status=ProviderBatchStatus.completed.value,
        lines=len(lines),
    )
    touched: set[UUID] = set()
    for line in lines:
        _process_line(db, line, provider_batch_id, worker_id, touched, outcome)

    # Jobs with no line in the output file (their errors live in the error file)
    leftovers = requeue_jobs_by_provider_batch(
        db,
        provider_batch_id,
        reason="provider_batch_output_missing_line",
        backoff_seconds=BACKOFF_MISSING_OUTPUT_SECONDS,
        limit=REQUEUE_MISSING_OUTPUT_LIMIT,
    )
    if leftovers:
        outcome.requeued_jobs = len(leftovers)
        logger.warning(
            "provider_batch_output_missing_lines",
            provider_batch_id=provider_batch_id,
            count=len(leftovers),
        )

    for rewrite_request_id in touched:
        if finalize_request(db, rewrite_request_id) is not None:
            outcome.finalized_requests += 1

    logger.info(
        "provider_batch_collected",
        provider_batch_id=provider_batch_id,
        lines=outcome.lines,
        completed=outcome.completed,
        failed=outcome.failed,
        skipped=outcome.skipped,
    )
    return outcome


def collect_tick(
    db: Session,
    provider: BatchProvider,
    worker_id: str = COLLECTOR_WORKER_ID,
    max_batches: int = MAX_BATCHES,
) -> CollectResult:
    """Poll pending provider batches and ingest completed output files."""
    pending = list_pending_batches(db, limit=max_batches)
    result = CollectResult(checked=len(pending))
    for batch in pending:
        result.results.append(_collect_batch(db, provider, batch.provider_batch_id, worker_id))
    return result
