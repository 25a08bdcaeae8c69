"""Celery tasks for the rewrite pipeline.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.

Usage in worker:
    from harmony.tasks import rewrite_submit_tick

Usage in API (enqueue):
    from harmony.tasks import rewrite_trigger_tick
    rewrite_trigger_tick.apply_async(kwargs={"request_id": request_id}, queue="rewrite")
"""

from harmony.tasks.batch_collect import rewrite_collect_tick
from harmony.tasks.batch_submit import rewrite_submit_tick
from harmony.tasks.trigger_sweeps import rewrite_trigger_terminalizer, rewrite_trigger_watchdog
from harmony.tasks.trigger_tick import rewrite_trigger_tick

__all__ = [
    "rewrite_trigger_tick",
    "rewrite_submit_tick",
    "rewrite_collect_tick",
    "rewrite_trigger_watchdog",
    "rewrite_trigger_terminalizer",
]
