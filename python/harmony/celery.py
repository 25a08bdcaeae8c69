"""Celery application configuration.

Central configuration for Celery used by both API (for enqueuing)
and worker (for executing tasks).

Usage:
    from harmony.celery import celery_app

    # Enqueue task:
    celery_app.send_task("rewrite_submit_tick", kwargs={"request_id": request_id})

    # Or import task directly:
    from harmony.tasks import rewrite_submit_tick
    rewrite_submit_tick.apply_async(kwargs={"request_id": request_id}, queue="rewrite")
"""

from celery import Celery
from celery.schedules import crontab

from harmony.config import get_settings

settings = get_settings()

REWRITE_QUEUE = "rewrite"

# Create Celery app
celery_app = Celery("harmony")

# Configure from settings
celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

# Queue routing for pipeline ticks
celery_app.conf.task_routes = {
    "rewrite_*": {"queue": REWRITE_QUEUE},
}

# Default queue
celery_app.conf.task_default_queue = "default"

# Beat schedule. Every tick is safe to overlap with itself: claims skip rows
# another worker holds.
celery_app.conf.beat_schedule = {
    "rewrite-trigger-tick": {
        "task": "rewrite_trigger_tick",
        "schedule": crontab(minute="*/5"),
    },
    "rewrite-submit-tick": {
        "task": "rewrite_submit_tick",
        "schedule": crontab(minute="*/15"),
    },
    "rewrite-collect-tick": {
        "task": "rewrite_collect_tick",
        "schedule": crontab(minute="*/30"),
    },
    "rewrite-trigger-watchdog": {
        "task": "rewrite_trigger_watchdog",
        "schedule": crontab(minute="*/10"),
    },
    "rewrite-trigger-terminalizer": {
        "task": "rewrite_trigger_terminalizer",
        "schedule": crontab(minute="*/25"),
    },
}

# For testing: allow eager mode (synchronous execution)
celery_app.conf.task_always_eager = False


def get_celery_app() -> Celery:
    """Get the Celery application instance.

    Returns:
        Configured Celery application.
    """
    return celery_app
