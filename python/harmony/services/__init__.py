"""Business logic services.

This module contains service-layer functions for the complaint rewrite
pipeline. Services accept a Session and never commit; route handlers and
Celery tasks own the transaction.
"""

from harmony.services.collector import collect_tick
from harmony.services.orchestrator import process_trigger, run_trigger_tick
from harmony.services.submitter import submit_tick
from harmony.services.triggers import (
    enqueue_trigger,
    fail_exhausted_triggers,
    pop_pending_triggers,
    requeue_stale_triggers,
)

__all__ = [
    "enqueue_trigger",
    "pop_pending_triggers",
    "requeue_stale_triggers",
    "fail_exhausted_triggers",
    "run_trigger_tick",
    "process_trigger",
    "submit_tick",
    "collect_tick",
]
