"""Celery worker entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker -Q rewrite,default --loglevel=info
    celery -A apps.worker.main:celery_app beat --loglevel=info

Tasks are registered by the explicit imports below; there is no
autodiscovery. Every task calls configure_task_logging() first, so log
entries carry request_id, task_name, task_id and worker_id.

Queue Configuration:
- rewrite: trigger runner, batch submit/collect, trigger sweeps
- default: anything else
"""

from celery.signals import worker_process_init

from harmony.celery import REWRITE_QUEUE, celery_app
from harmony.logging import configure_logging, get_logger

# Each import registers its tasks with celery_app
from harmony.tasks import (  # noqa: F401
    rewrite_collect_tick,
    rewrite_submit_tick,
    rewrite_trigger_terminalizer,
    rewrite_trigger_tick,
    rewrite_trigger_watchdog,
)


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog JSON logging in each worker process."""
    configure_logging()
    logger = get_logger(__name__)
    logger.info("celery_worker_started", queue=REWRITE_QUEUE)


__all__ = ["celery_app"]
