"""Trigger queue sweeper tasks.

- rewrite_trigger_watchdog: processing entries whose runner vanished go back
  to queued after TRIGGER_STALE_AFTER_S.
- rewrite_trigger_terminalizer: queued entries that used up
  TRIGGER_MAX_ATTEMPTS become failed.

Both log the count and return it; zero is the normal case.
"""

from datetime import timedelta

from harmony.celery import celery_app
from harmony.config import get_settings
from harmony.db.session import get_session_factory
from harmony.logging import clear_task_context, configure_task_logging, get_logger
from harmony.services.triggers import fail_exhausted_triggers, requeue_stale_triggers

logger = get_logger(__name__)


@celery_app.task(bind=True, max_retries=0, name="rewrite_trigger_watchdog")
def rewrite_trigger_watchdog(self, request_id: str | None = None) -> dict:
    configure_task_logging(
        request_id=request_id, task_name="rewrite_trigger_watchdog", task_id=self.request.id
    )
    settings = get_settings()
    db = get_session_factory()()

    try:
        requeued = requeue_stale_triggers(
            db,
            stale_after=timedelta(seconds=settings.trigger_stale_after_s),
            limit=settings.trigger_sweep_limit,
            retry_delay=timedelta(seconds=settings.trigger_stale_retry_delay_s),
        )
        db.commit()
        if requeued:
            logger.info("trigger_watchdog_requeued", count=requeued)
        return {"requeued": requeued}
    except Exception as e:
        db.rollback()
        logger.error("trigger_watchdog_failed", error=str(e))
        raise
    finally:
        db.close()
        clear_task_context()


@celery_app.task(bind=True, max_retries=0, name="rewrite_trigger_terminalizer")
def rewrite_trigger_terminalizer(self, request_id: str | None = None) -> dict:
    configure_task_logging(
        request_id=request_id, task_name="rewrite_trigger_terminalizer", task_id=self.request.id
    )
    settings = get_settings()
    db = get_session_factory()()

    try:
        failed = fail_exhausted_triggers(
            db,
            max_attempts=settings.trigger_max_attempts,
            limit=settings.trigger_sweep_limit,
        )
        db.commit()
        if failed:
            logger.info("trigger_terminalizer_failed_exhausted", count=failed)
        return {"failed": failed}
    except Exception as e:
        db.rollback()
        logger.error("trigger_terminalizer_failed", error=str(e))
        raise
    finally:
        db.close()
        clear_task_context()
