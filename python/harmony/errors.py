"""API and pipeline error definitions.

All errors surfaced by the rewrite pipeline are defined here with their
corresponding HTTP status codes. Services raise them; routes let the
exception handlers in harmony.responses render the error envelope.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"
    E_INTERNAL_ONLY = "E_INTERNAL_ONLY"
    E_NOT_ENTRY_AUTHOR = "E_NOT_ENTRY_AUTHOR"
    E_NOT_HOME_MEMBER = "E_NOT_HOME_MEMBER"
    E_RECIPIENT_NOT_HOME_MEMBER = "E_RECIPIENT_NOT_HOME_MEMBER"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_ENTRY_NOT_FOUND = "E_ENTRY_NOT_FOUND"
    E_REWRITE_REQUEST_NOT_FOUND = "E_REWRITE_REQUEST_NOT_FOUND"
    E_ROUTE_NOT_FOUND = "E_ROUTE_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_RECIPIENT_CANNOT_BE_SELF = "E_RECIPIENT_CANNOT_BE_SELF"
    E_TEXT_TOO_LONG = "E_TEXT_TOO_LONG"
    E_INVALID_TOPICS = "E_INVALID_TOPICS"

    # State / ownership conflicts (409)
    E_ISO_WEEK_LIMIT_EXCEEDED = "E_ISO_WEEK_LIMIT_EXCEEDED"
    E_TRIGGER_CONFLICT = "E_TRIGGER_CONFLICT"
    E_TRIGGER_MARK_NOOP = "E_TRIGGER_MARK_NOOP"
    E_JOB_MISMATCH = "E_JOB_MISMATCH"
    E_LANG_MISMATCH = "E_LANG_MISMATCH"

    # Server errors
    E_INTERNAL = "E_INTERNAL"  # 500
    E_PROVIDER_ERROR = "E_PROVIDER_ERROR"  # 502
    E_CLASSIFIER_ERROR = "E_CLASSIFIER_ERROR"  # 502


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_INTERNAL_ONLY: 403,
    ApiErrorCode.E_NOT_ENTRY_AUTHOR: 403,
    ApiErrorCode.E_NOT_HOME_MEMBER: 403,
    ApiErrorCode.E_RECIPIENT_NOT_HOME_MEMBER: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_ENTRY_NOT_FOUND: 404,
    ApiErrorCode.E_REWRITE_REQUEST_NOT_FOUND: 404,
    ApiErrorCode.E_ROUTE_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_RECIPIENT_CANNOT_BE_SELF: 400,
    ApiErrorCode.E_TEXT_TOO_LONG: 400,
    ApiErrorCode.E_INVALID_TOPICS: 400,
    ApiErrorCode.E_ISO_WEEK_LIMIT_EXCEEDED: 409,
    ApiErrorCode.E_TRIGGER_CONFLICT: 409,
    ApiErrorCode.E_TRIGGER_MARK_NOOP: 409,
    ApiErrorCode.E_JOB_MISMATCH: 409,
    ApiErrorCode.E_LANG_MISMATCH: 409,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_PROVIDER_ERROR: 502,
    ApiErrorCode.E_CLASSIFIER_ERROR: 502,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class ConflictError(ApiError):
    """State precondition failure (the row is not in the state the caller expected)."""

    def __init__(self, code: ApiErrorCode, message: str):
        super().__init__(code, message)


class TriggerMarkNoopError(ConflictError):
    """A trigger outcome marker matched no row.

    Raised when the reservation token is stale or the entry is no longer
    processing. ``reason`` is one of mark_completed_noop, mark_retry_noop,
    mark_failed_terminal_noop, mark_canceled_noop.
    """

    def __init__(self, reason: str, entry_id: object, request_id: object):
        self.reason = reason
        self.entry_id = entry_id
        self.request_id = request_id
        super().__init__(
            ApiErrorCode.E_TRIGGER_MARK_NOOP,
            f"{reason}: entry_id={entry_id} request_id={request_id}",
        )


class JobMismatchError(ConflictError):
    """Completion attempted for a job that is not processing or not owned by the caller."""

    def __init__(self, job_id: object):
        self.job_id = job_id
        super().__init__(ApiErrorCode.E_JOB_MISMATCH, f"JOB_MISMATCH: job_id={job_id}")


class LanguageMismatchError(ConflictError):
    """Output language does not match the target locale's primary language."""

    def __init__(self, output_language: str, target_locale: str):
        self.output_language = output_language
        self.target_locale = target_locale
        super().__init__(
            ApiErrorCode.E_LANG_MISMATCH,
            f"LANG_MISMATCH: output_language={output_language} target_locale={target_locale}",
        )
