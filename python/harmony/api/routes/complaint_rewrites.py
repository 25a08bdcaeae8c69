"""Complaint rewrite routes.

- POST /complaint-rewrites/triggers queues (or re-queues) a rewrite of one
  entry for one recipient. The wake signal goes out only after commit.
- GET /complaint-rewrites/requests/{rewrite_request_id} returns the request
  status with its jobs and outputs. Only the sender and the recipient can
  see a request; everyone else gets a 404.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from harmony.api.deps import get_actor_user_id, get_db, get_redis_client
from harmony.errors import ApiError, ApiErrorCode, NotFoundError
from harmony.responses import success_response
from harmony.schemas.rewrites import (
    EnqueueTriggerRequest,
    RewriteJobOut,
    RewriteOutputOut,
    RewriteRequestOut,
    TriggerOut,
)
from harmony.services.rewrite_jobs import fetch_request, list_request_jobs, list_request_outputs
from harmony.services.triggers import enqueue_trigger
from harmony.services.wake import publish_trigger_wake

router = APIRouter()


@router.post("/complaint-rewrites/triggers", status_code=202)
def enqueue_trigger_endpoint(
    body: EnqueueTriggerRequest,
    db: Annotated[Session, Depends(get_db)],
    actor_user_id: Annotated[UUID | None, Depends(get_actor_user_id)],
    redis_client=Depends(get_redis_client),
) -> dict:
    trigger = enqueue_trigger(db, actor_user_id, body.entry_id, body.recipient_user_id)
    db.commit()

    woken = publish_trigger_wake(redis_client, trigger)
    out = TriggerOut.model_validate(trigger)
    return success_response({**out.model_dump(mode="json"), "wake_published": woken})


@router.get("/complaint-rewrites/requests/{rewrite_request_id}")
def get_rewrite_request_endpoint(
    rewrite_request_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    actor_user_id: Annotated[UUID | None, Depends(get_actor_user_id)],
) -> dict:
    if actor_user_id is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "not_authenticated")

    request = fetch_request(db, rewrite_request_id)
    if request is None or actor_user_id not in (
        request.sender_user_id,
        request.recipient_user_id,
    ):
        raise NotFoundError(ApiErrorCode.E_REWRITE_REQUEST_NOT_FOUND, "rewrite_request_not_found")

    out = RewriteRequestOut.model_validate(request)
    out.jobs = [RewriteJobOut.model_validate(j) for j in list_request_jobs(db, rewrite_request_id)]
    out.outputs = [
        RewriteOutputOut.model_validate(o) for o in list_request_outputs(db, rewrite_request_id)
    ]
    return success_response(out.model_dump(mode="json"))
