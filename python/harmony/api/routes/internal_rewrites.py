"""Internal-only pipeline tick routes.

These let an operator (or an external scheduler) run one tick of each
pipeline stage on demand. They are not proxied by the public BFF; the router
is mounted behind require_internal_header.
"""

from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from harmony.api.deps import get_complaint_classifier, get_db, get_rewrite_provider
from harmony.config import get_settings
from harmony.providers import BatchProvider
from harmony.responses import success_response
from harmony.services.classifier import ComplaintClassifier
from harmony.services.collector import collect_tick
from harmony.services.orchestrator import run_trigger_tick
from harmony.services.rewrite_jobs import COLLECTOR_WORKER_ID, SUBMITTER_WORKER_ID
from harmony.services.submitter import submit_tick
from harmony.services.triggers import fail_exhausted_triggers, requeue_stale_triggers

router = APIRouter(prefix="/internal/complaint-rewrites")


@router.post("/trigger-tick")
def trigger_tick_endpoint(
    db: Annotated[Session, Depends(get_db)],
    classifier: Annotated[ComplaintClassifier, Depends(get_complaint_classifier)],
) -> dict:
    settings = get_settings()
    result = run_trigger_tick(
        db,
        classifier,
        limit=settings.trigger_pop_limit,
        max_attempts=settings.trigger_max_attempts,
        commit_each=True,
    )
    db.commit()
    return success_response(result.to_dict())


@router.post("/submit-tick")
def submit_tick_endpoint(
    db: Annotated[Session, Depends(get_db)],
    provider: Annotated[BatchProvider, Depends(get_rewrite_provider)],
) -> dict:
    result = submit_tick(
        db,
        provider,
        worker_id=SUBMITTER_WORKER_ID,
        limit=get_settings().submit_batch_max_jobs,
    )
    db.commit()
    return success_response(result.to_dict())


@router.post("/collect-tick")
def collect_tick_endpoint(
    db: Annotated[Session, Depends(get_db)],
    provider: Annotated[BatchProvider, Depends(get_rewrite_provider)],
) -> dict:
    result = collect_tick(
        db,
        provider,
        worker_id=COLLECTOR_WORKER_ID,
        max_batches=get_settings().collect_max_batches,
    )
    db.commit()
    return success_response(result.to_dict())


@router.post("/watchdog")
def watchdog_endpoint(db: Annotated[Session, Depends(get_db)]) -> dict:
    settings = get_settings()
    requeued = requeue_stale_triggers(
        db,
        stale_after=timedelta(seconds=settings.trigger_stale_after_s),
        limit=settings.trigger_sweep_limit,
        retry_delay=timedelta(seconds=settings.trigger_stale_retry_delay_s),
    )
    db.commit()
    return success_response({"requeued": requeued})


@router.post("/terminalizer")
def terminalizer_endpoint(db: Annotated[Session, Depends(get_db)]) -> dict:
    settings = get_settings()
    failed = fail_exhausted_triggers(
        db,
        max_attempts=settings.trigger_max_attempts,
        limit=settings.trigger_sweep_limit,
    )
    db.commit()
    return success_response({"failed": failed})
