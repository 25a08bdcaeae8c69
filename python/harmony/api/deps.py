"""FastAPI dependencies for route handlers.

The API sits behind a trusted BFF: the acting user arrives in
``X-Harmony-User-Id`` and, in staging/prod, every non-health request must
carry the shared ``X-Harmony-Internal`` secret.
"""

import hmac
from uuid import UUID

from fastapi import Header, Request

from harmony.config import get_settings
from harmony.db.session import get_db, get_session_factory
from harmony.errors import ApiError, ApiErrorCode
from harmony.providers import BatchProvider, get_batch_provider
from harmony.services.classifier import ComplaintClassifier, get_classifier

__all__ = [
    "get_db",
    "get_session_factory",
    "get_actor_user_id",
    "require_internal_header",
    "get_redis_client",
    "get_rewrite_provider",
    "get_complaint_classifier",
]

ACTOR_HEADER = "X-Harmony-User-Id"
INTERNAL_HEADER = "X-Harmony-Internal"


def require_internal_header(
    x_harmony_internal: str | None = Header(None, alias=INTERNAL_HEADER),
) -> None:
    """Reject requests without the internal secret when the environment requires it."""
    settings = get_settings()
    if not settings.requires_internal_header:
        return
    expected = settings.harmony_internal_secret or ""
    if not x_harmony_internal or not hmac.compare_digest(x_harmony_internal, expected):
        raise ApiError(ApiErrorCode.E_INTERNAL_ONLY, "Internal header required")


def get_actor_user_id(
    request: Request,
    x_harmony_user_id: str | None = Header(None, alias=ACTOR_HEADER),
) -> UUID | None:
    """Parse the acting user id, or None when the header is absent.

    Raises:
        ApiError: E_UNAUTHENTICATED if the header is present but not a UUID.
    """
    if not x_harmony_user_id:
        return None
    try:
        actor = UUID(x_harmony_user_id)
    except ValueError as e:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid actor header") from e
    request.state.actor_user_id = actor
    return actor


def get_redis_client(request: Request):
    """Shared Redis client from app state; None when Redis is unavailable."""
    return getattr(request.app.state, "redis_client", None)


def get_rewrite_provider() -> BatchProvider:
    return get_batch_provider(get_settings())


def get_complaint_classifier() -> ComplaintClassifier:
    return get_classifier(get_settings())
