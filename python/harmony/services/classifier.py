"""Complaint classifier client.

The classifier is an external service that detects the message language and
labels its topics, intent and rewrite strength. The runner only talks to the
ComplaintClassifier interface; HttpComplaintClassifier calls the deployed
service and StaticComplaintClassifier returns a fixed result for tests and
local runs.

Wire contract (POST, JSON):
    request:  {"original_text", "surface", "sender_user_id"}
              header x-internal-secret
    success:  {"ok": true, "classifier_result": {...}}
    failure:  {"ok": false, "retryable": bool, "code": str, "error": str}
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

import httpx

from harmony.config import Settings, get_settings
from harmony.errors import ApiError, ApiErrorCode
from harmony.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CLASSIFIER_VERSION = "v1"


@dataclass(frozen=True)
class ClassifierResult:
    classifier_version: str
    detected_language: str
    topics: list[str]
    intent: str
    rewrite_strength: str
    safety_flags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClassifierResult":
        topics = data.get("topics")
        flags = data.get("safety_flags")
        return cls(
            classifier_version=str(data.get("classifier_version") or DEFAULT_CLASSIFIER_VERSION),
            detected_language=str(data.get("detected_language") or ""),
            topics=[str(t) for t in topics] if isinstance(topics, list) else [],
            intent=str(data.get("intent") or ""),
            rewrite_strength=str(data.get("rewrite_strength") or ""),
            safety_flags=[str(f) for f in flags] if isinstance(flags, list) else [],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ClassifierError(ApiError):
    """Classifier call failed.

    ``retryable`` tells the runner whether to requeue the trigger or cancel it.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: int = 502,
        code: str = "classifier_service_failed",
    ):
        super().__init__(ApiErrorCode.E_CLASSIFIER_ERROR, message)
        self.retryable = retryable
        self.upstream_status = status_code
        self.upstream_code = code


class ComplaintClassifier(ABC):
    """Abstract base class for classifier implementations."""

    @abstractmethod
    def classify(self, original_text: str, surface: str, sender_user_id: UUID) -> ClassifierResult:
        """Classify one complaint message.

        Raises:
            ClassifierError: If classification fails.
        """
        ...


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


class HttpComplaintClassifier(ComplaintClassifier):
    """Classifier backed by the deployed classifier service."""

    def __init__(self, url: str, shared_secret: str | None, timeout_s: float = 8.0):
        self._url = url
        self._headers = {"x-internal-secret": shared_secret or ""}
        self._timeout = timeout_s

    def classify(self, original_text: str, surface: str, sender_user_id: UUID) -> ClassifierResult:
        try:
            with httpx.Client() as client:
                response = client.post(
                    self._url,
                    headers=self._headers,
                    json={
                        "original_text": original_text,
                        "surface": surface,
                        "sender_user_id": str(sender_user_id),
                    },
                    timeout=self._timeout,
                )
        except httpx.TimeoutException as e:
            raise ClassifierError(
                "classifier_service_timeout",
                retryable=True,
                status_code=504,
                code="classifier_timeout",
            ) from e
        except httpx.HTTPError as e:
            raise ClassifierError(
                f"classifier_service_failed:network:{e}", retryable=True, status_code=502
            ) from e

        raw = response.text
        try:
            body = response.json() if raw else None
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = None

        if (
            response.is_success
            and body is not None
            and body.get("ok") is True
            and isinstance(body.get("classifier_result"), dict)
        ):
            return ClassifierResult.from_dict(body["classifier_result"])

        status = response.status_code
        body_retryable = body.get("retryable") if body is not None else None
        retryable = (
            (isinstance(body_retryable, bool) and body_retryable)
            or status == 429
            or status >= 500
            or status == 408
        )
        code = "classifier_service_failed"
        if body is not None and isinstance(body.get("code"), str):
            code = body["code"]
        if body is not None and isinstance(body.get("error"), str):
            detail = body["error"]
        elif raw:
            detail = _truncate(raw, 240)
        else:
            detail = f"classifier_service_status_{status}"

        logger.warning(
            "classifier_call_failed", status_code=status, code=code, retryable=retryable
        )
        raise ClassifierError(
            f"{code}:{detail}", retryable=retryable, status_code=status or 502, code=code
        )


class StaticComplaintClassifier(ComplaintClassifier):
    """Returns a fixed result and records the calls it received (test helper)."""

    def __init__(
        self,
        result: ClassifierResult | None = None,
        error: ClassifierError | None = None,
    ):
        self.result = result or ClassifierResult(
            classifier_version=DEFAULT_CLASSIFIER_VERSION,
            detected_language="en",
            topics=["noise"],
            intent="request",
            rewrite_strength="light_touch",
        )
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def classify(self, original_text: str, surface: str, sender_user_id: UUID) -> ClassifierResult:
        self.calls.append(
            {"original_text": original_text, "surface": surface, "sender_user_id": sender_user_id}
        )
        if self.error is not None:
            raise self.error
        return self.result


def get_classifier(settings: Settings | None = None) -> ComplaintClassifier:
    """Get the configured classifier.

    Returns:
        HttpComplaintClassifier when CLASSIFIER_URL is set,
        StaticComplaintClassifier otherwise.
    """
    settings = settings or get_settings()
    if settings.classifier_url:
        return HttpComplaintClassifier(
            url=settings.classifier_url,
            shared_secret=settings.classifier_shared_secret,
            timeout_s=settings.effective_classifier_timeout_s,
        )
    return StaticComplaintClassifier()
