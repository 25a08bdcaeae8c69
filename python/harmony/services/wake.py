"""Trigger wake signal.

Published after an enqueue commits so an idle trigger runner can react early.
Runners still poll on schedule; losing a wake never loses work.

Redis channel: complaint_rewrite_triggers
Payload: {"entry_id", "recipient_user_id", "status"}
"""

import json

from harmony.logging import get_logger

logger = get_logger(__name__)

WAKE_CHANNEL = "complaint_rewrite_triggers"


def publish_trigger_wake(redis_client, trigger) -> bool:
    """Publish a wake message for a queued trigger.

    Returns:
        True if the message was handed to Redis, False otherwise.
    """
    if redis_client is None:
        logger.warning("trigger_wake_skipped_no_redis", entry_id=str(trigger.entry_id))
        return False

    payload = json.dumps(
        {
            "entry_id": str(trigger.entry_id),
            "recipient_user_id": str(trigger.recipient_user_id),
            "status": trigger.status.value,
        }
    )
    try:
        redis_client.publish(WAKE_CHANNEL, payload)
    except Exception as e:
        logger.warning("trigger_wake_publish_failed", entry_id=str(trigger.entry_id), error=str(e))
        return False
    return True
