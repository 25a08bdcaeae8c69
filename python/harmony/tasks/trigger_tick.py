"""Celery task for the trigger runner.

Pops due triggers and turns each into a rewrite request. Each trigger's
outcome is committed on its own so one slow classifier call never holds the
others' results hostage.
"""

from harmony.celery import celery_app
from harmony.config import get_settings
from harmony.db.session import get_session_factory
from harmony.logging import clear_task_context, configure_task_logging, get_logger
from harmony.services.classifier import get_classifier
from harmony.services.orchestrator import run_trigger_tick

logger = get_logger(__name__)

RUNNER_WORKER_ID = "complaint_trigger_runner"


@celery_app.task(bind=True, max_retries=0, name="rewrite_trigger_tick")
def rewrite_trigger_tick(self, request_id: str | None = None) -> dict:
    """Run one trigger runner tick.

    Returns:
        Dict with popped/completed/canceled/retried counts.
    """
    configure_task_logging(
        request_id=request_id,
        task_name="rewrite_trigger_tick",
        task_id=self.request.id,
        worker_id=RUNNER_WORKER_ID,
    )
    settings = get_settings()
    session_factory = get_session_factory()
    db = session_factory()

    try:
        result = run_trigger_tick(
            db,
            get_classifier(settings),
            limit=settings.trigger_pop_limit,
            max_attempts=settings.trigger_max_attempts,
            commit_each=True,
        )
        db.commit()
        return result.to_dict()
    except Exception as e:
        db.rollback()
        logger.error("rewrite_trigger_tick_failed", error=str(e))
        raise
    finally:
        db.close()
        clear_task_context()
