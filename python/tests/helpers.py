"""Test helpers for API requests and pipeline plumbing.

Provides:
- Header generation for acting-user requests
- A recording Redis stand-in for the trigger wake signal
- Output line builders for completing stub provider batches
"""

import json
from typing import Any
from uuid import UUID

from harmony.api.deps import ACTOR_HEADER, INTERNAL_HEADER


def actor_headers(user_id: UUID | str | None = None, internal: str | None = None) -> dict:
    """Headers the trusted BFF would attach for one user."""
    headers = {}
    if user_id is not None:
        headers[ACTOR_HEADER] = str(user_id)
    if internal is not None:
        headers[INTERNAL_HEADER] = internal
    return headers


class FakeRedis:
    """Records publish() calls; set ``fail`` to make publishing raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, dict]] = []

    def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, json.loads(message)))
        return 1


def output_line(job_id: UUID | str, rewritten_text: str) -> dict[str, Any]:
    """One successful batch output line carrying a structured rewrite."""
    return {
        "custom_id": str(job_id),
        "response": {
            "status_code": 200,
            "body": {"output_text": json.dumps({"rewritten_text": rewritten_text})},
        },
        "error": None,
    }


def error_line(job_id: UUID | str, message: str = "rate limited") -> dict[str, Any]:
    return {
        "custom_id": str(job_id),
        "response": None,
        "error": {"code": "rate_limit_exceeded", "message": message},
    }


SAFE_REWRITE = "Could you please keep the music a little lower after 10pm? Thanks!"
