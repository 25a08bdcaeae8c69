"""Batch submitter tick.

Flow:
1. Claim due queued jobs (queued -> processing).
2. Load each job's request and build one JSONL line per job (custom_id = job_id).
3. Upload the JSONL file and create a provider batch.
4. Register the batch and mark the jobs batch_submitted, in one savepoint.

Claimed jobs never stay processing when the tick returns: rejected jobs are
failed or requeued, deferred jobs and jobs caught in a provider or database
failure are requeued with backoff.
"""

import json
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from harmony.logging import get_logger
from harmony.providers.base import BatchProvider, ProviderError
from harmony.providers.prompt import RESPONSES_ENDPOINT, PromptInput, build_batch_line
from harmony.services.provider_batches import register_batch
from harmony.services.rewrite_jobs import (
    SUBMITTER_WORKER_ID,
    claim_jobs_for_submit,
    fail_job,
    fail_or_requeue_job,
    fetch_request,
    mark_jobs_batch_submitted,
    requeue_jobs_after_submit_failure,
)

logger = get_logger(__name__)

MAX_JOBS = 100
COMPLETION_WINDOW = "24h"
MAX_JSONL_BYTES = 5_000_000
MAX_JSONL_LINE_BYTES = 100_000

BACKOFF_BATCH_FULL_SECONDS = 5 * 60
BACKOFF_PROVIDER_FAIL_SECONDS = 15 * 60
BACKOFF_INTERNAL_SECONDS = 10 * 60
BACKOFF_UNSUPPORTED_SECONDS = 6 * 3600

DEFAULT_MODEL = "gpt-5-nano"
DEFAULT_PROMPT_VERSION = "v1"
BATCH_METADATA = {"system": "complaint_rewrite", "mode": "batch"}


@dataclass
class SubmitResult:
    ok: bool = True
    submitted: int = 0
    provider_batch_id: str | None = None
    input_file_id: str | None = None
    note: str | None = None
    error: str | None = None
    skipped: dict[str, int] = field(
        default_factory=lambda: {
            "missing_request": 0,
            "unsupported_provider": 0,
            "too_large_line": 0,
            "batch_full_deferred": 0,
        }
    )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok, "submitted": self.submitted}
        for key in ("provider_batch_id", "input_file_id", "note", "error"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data["skipped"] = dict(self.skipped)
        return data


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def supports_batch(routing_decision: dict[str, Any]) -> bool:
    """Only OpenAI Responses routes can go through the batch API."""
    provider = str(routing_decision.get("provider") or "openai")
    adapter_kind = str(routing_decision.get("adapter_kind") or "openai_responses")
    return provider == "openai" and adapter_kind == "openai_responses"


def submit_tick(
    db: Session,
    provider: BatchProvider,
    worker_id: str = SUBMITTER_WORKER_ID,
    limit: int = MAX_JOBS,
) -> SubmitResult:
    """Claim queued jobs and submit them as one provider batch."""
    result = SubmitResult()
    claimed = claim_jobs_for_submit(db, worker_id=worker_id, limit=limit)
    if not claimed:
        return result

    accepted_ids: list[UUID] = []
    accepted_lines: list[str] = []
    deferred_ids: list[UUID] = []
    total_bytes = 0

    for job in claimed:
        if total_bytes >= MAX_JSONL_BYTES:
            deferred_ids.append(job.job_id)
            result.skipped["batch_full_deferred"] += 1
            continue

        request = fetch_request(db, job.rewrite_request_id)
        if request is None:
            fail_job(db, job.job_id, "rewrite_request_not_found")
            result.skipped["missing_request"] += 1
            continue

        decision = job.routing_decision or {}
        if not supports_batch(decision):
            fail_or_requeue_job(
                db, job.job_id, "batch_provider_not_supported", BACKOFF_UNSUPPORTED_SECONDS
            )
            result.skipped["unsupported_provider"] += 1
            continue

        line_obj = build_batch_line(
            str(job.job_id),
            PromptInput(
                model=str(decision.get("model") or DEFAULT_MODEL),
                prompt_version=str(decision.get("prompt_version") or DEFAULT_PROMPT_VERSION),
                target_locale=request.target_locale,
                intent=request.intent,
                original_text=request.original_text,
                context_pack=request.context_pack,
                policy=request.policy,
                routing_decision=decision,
            ),
        )
        line = json.dumps(line_obj, ensure_ascii=False)
        line_bytes = len(line.encode("utf-8"))

        if line_bytes > MAX_JSONL_LINE_BYTES:
            fail_or_requeue_job(
                db, job.job_id, f"batch_line_too_large_{line_bytes}", BACKOFF_UNSUPPORTED_SECONDS
            )
            result.skipped["too_large_line"] += 1
            continue

        newline_bytes = 1 if accepted_lines else 0
        if total_bytes + newline_bytes + line_bytes > MAX_JSONL_BYTES:
            deferred_ids.append(job.job_id)
            result.skipped["batch_full_deferred"] += 1
            continue

        accepted_ids.append(job.job_id)
        accepted_lines.append(line)
        total_bytes += newline_bytes + line_bytes

    if deferred_ids:
        requeue_jobs_after_submit_failure(
            db, deferred_ids, "batch_full_deferred", BACKOFF_BATCH_FULL_SECONDS
        )

    if not accepted_ids:
        result.note = "no_valid_jobs"
        logger.info("rewrite_submit_no_valid_jobs", claimed=len(claimed), **result.skipped)
        return result

    try:
        input_file_id = provider.upload_jsonl("\n".join(accepted_lines))
        provider_batch_id = provider.create_batch(
            input_file_id, RESPONSES_ENDPOINT, COMPLETION_WINDOW, dict(BATCH_METADATA)
        )
    except ProviderError as e:
        requeue_jobs_after_submit_failure(
            db,
            accepted_ids,
            f"openai_batch_submit_failed:{_truncate(e.message, 240)}",
            BACKOFF_PROVIDER_FAIL_SECONDS,
        )
        logger.error(
            "rewrite_submit_provider_failed",
            error=e.message,
            status_code=e.status_code,
            job_count=len(accepted_ids),
        )
        result.ok = False
        result.error = f"provider_submit_failed:{_truncate(e.message, 240)}"
        return result

    try:
        with db.begin_nested():
            register_batch(
                db,
                provider_batch_id,
                input_file_id,
                len(accepted_ids),
                endpoint=RESPONSES_ENDPOINT,
                provider=provider.name,
            )
            mark_jobs_batch_submitted(db, accepted_ids, provider_batch_id)
    except SQLAlchemyError as e:
        requeue_jobs_after_submit_failure(
            db,
            accepted_ids,
            f"db_register_batch_failed:{_truncate(str(e), 240)}",
            BACKOFF_INTERNAL_SECONDS,
        )
        logger.error(
            "rewrite_submit_register_failed",
            provider_batch_id=provider_batch_id,
            error=str(e),
        )
        result.ok = False
        result.provider_batch_id = provider_batch_id
        result.input_file_id = input_file_id
        result.error = "register_batch_failed"
        return result

    result.submitted = len(accepted_ids)
    result.provider_batch_id = provider_batch_id
    result.input_file_id = input_file_id
    partial = len(accepted_ids) < len(claimed)
    result.note = "partial_batch_due_to_limits" if partial else "full_batch"

    logger.info(
        "rewrite_batch_submitted",
        provider_batch_id=provider_batch_id,
        submitted=result.submitted,
        claimed=len(claimed),
        jsonl_bytes=total_bytes,
    )
    return result
