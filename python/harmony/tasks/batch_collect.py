"""Celery task for the batch collector."""

from harmony.celery import celery_app
from harmony.config import get_settings
from harmony.db.session import get_session_factory
from harmony.logging import clear_task_context, configure_task_logging, get_logger
from harmony.providers import get_batch_provider
from harmony.services.collector import collect_tick
from harmony.services.rewrite_jobs import COLLECTOR_WORKER_ID

logger = get_logger(__name__)


@celery_app.task(bind=True, max_retries=0, name="rewrite_collect_tick")
def rewrite_collect_tick(self, request_id: str | None = None) -> dict:
    """Poll pending provider batches and ingest finished output."""
    configure_task_logging(
        request_id=request_id,
        task_name="rewrite_collect_tick",
        task_id=self.request.id,
        worker_id=COLLECTOR_WORKER_ID,
    )
    settings = get_settings()
    session_factory = get_session_factory()
    db = session_factory()

    try:
        result = collect_tick(
            db,
            get_batch_provider(settings),
            worker_id=COLLECTOR_WORKER_ID,
            max_batches=settings.collect_max_batches,
        )
        db.commit()
        return result.to_dict()
    except Exception as e:
        db.rollback()
        logger.error("rewrite_collect_tick_failed", error=str(e))
        raise
    finally:
        db.close()
        clear_task_context()
