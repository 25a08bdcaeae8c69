"""Celery task for the batch submitter."""

from harmony.celery import celery_app
from harmony.config import get_settings
from harmony.db.session import get_session_factory
from harmony.logging import clear_task_context, configure_task_logging, get_logger
from harmony.providers import get_batch_provider
from harmony.services.rewrite_jobs import SUBMITTER_WORKER_ID
from harmony.services.submitter import submit_tick

logger = get_logger(__name__)


@celery_app.task(bind=True, max_retries=0, name="rewrite_submit_tick")
def rewrite_submit_tick(self, request_id: str | None = None) -> dict:
    """Claim queued jobs and submit them as one provider batch."""
    configure_task_logging(
        request_id=request_id,
        task_name="rewrite_submit_tick",
        task_id=self.request.id,
        worker_id=SUBMITTER_WORKER_ID,
    )
    settings = get_settings()
    session_factory = get_session_factory()
    db = session_factory()

    try:
        result = submit_tick(
            db,
            get_batch_provider(settings),
            worker_id=SUBMITTER_WORKER_ID,
            limit=settings.submit_batch_max_jobs,
        )
        db.commit()
        if not result.ok:
            logger.warning("rewrite_submit_tick_degraded", error=result.error)
        return result.to_dict()
    except Exception as e:
        db.rollback()
        logger.error("rewrite_submit_tick_failed", error=str(e))
        raise
    finally:
        db.close()
        clear_task_context()
