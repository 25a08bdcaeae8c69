"""Trigger runner: turns queued triggers into rewrite requests.

For each popped trigger the runner loads the entry, resolves the recipient's
locale and preferences, classifies the text, resolves a route and enqueues
the request with its single job. The request id is the entry id, so running
a trigger twice never creates a second request.

Every popped trigger leaves processing before the tick returns:
- completed (note ``enqueued`` or ``already_enqueued``)
- canceled for validation, ownership or routing failures
- queued again with a 10 minute delay for transient failures
"""

import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from harmony.db.models import MAX_ORIGINAL_TEXT_CHARS, ComplaintEntry, Lane, Profile, Surface
from harmony.errors import (
    ApiError,
    ApiErrorCode,
    ForbiddenError,
    NotFoundError,
    TriggerMarkNoopError,
)
from harmony.logging import get_logger
from harmony.services.classifier import ClassifierError, ComplaintClassifier
from harmony.services.preferences import (
    build_context_pack,
    build_snapshot_preferences,
    resolve_preference_payload,
)
from harmony.services.rewrite_jobs import DEFAULT_MAX_ATTEMPTS as DEFAULT_JOB_MAX_ATTEMPTS
from harmony.services.rewrite_jobs import (
    RewriteEnqueue,
    enqueue_rewrite,
    rewrite_request_exists,
)
from harmony.services.routing import resolve_route
from harmony.services.triggers import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POP_LIMIT,
    ProcessingTrigger,
    mark_trigger_canceled,
    mark_trigger_completed,
    mark_trigger_retry,
    pop_pending_triggers,
)

logger = get_logger(__name__)

TRIGGER_SURFACE = Surface.weekly_harmony.value
DEFAULT_LOCALE = "en"
RUNNER_RETRY_DELAY = timedelta(seconds=600)
MAX_JOB_ATTEMPTS = 10

CONTEXT_PACK_VERSION = "v1.1"
POLICY_VERSION = "v1"
POWER_MODE = "peer"

NOTE_ENQUEUED = "enqueued"
NOTE_ALREADY_ENQUEUED = "already_enqueued"
REASON_NO_TEXT = "no_text_to_rewrite"
REASON_TEXT_TOO_LONG = f"text_too_long_{MAX_ORIGINAL_TEXT_CHARS}"

_LOCALE_RE = re.compile(r"^[a-zA-Z]{2,3}(-[a-zA-Z0-9]{2,8})*$")


@dataclass(frozen=True)
class TriggerOutcome:
    entry_id: UUID
    status: str
    note: str | None = None
    error: str | None = None
    rewrite_request_id: UUID | None = None
    job_id: UUID | None = None


@dataclass
class TriggerTickResult:
    popped: int = 0
    outcomes: list[TriggerOutcome] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "popped": self.popped,
            "completed": self.count("completed"),
            "canceled": self.count("canceled"),
            "retried": self.count("retry"),
            "noop": self.count("noop"),
        }


def normalize_locale(value: str | None) -> str | None:
    """Lowercased BCP-47-ish tag, or None when the value is not one."""
    v = (value or "").strip()
    if not v or not _LOCALE_RE.match(v):
        return None
    return v.lower()


def clamp_job_attempts(max_retries: Any) -> int:
    try:
        n = int(max_retries)
    except (TypeError, ValueError):
        return DEFAULT_JOB_MAX_ATTEMPTS
    return max(0, min(n, MAX_JOB_ATTEMPTS))


def build_policy(rewrite_strength: str) -> dict[str, str]:
    return {
        "tone": "gentle" if rewrite_strength == "full_reframe" else "neutral",
        "directness": "soft",
        "emotional_temperature": "cool_down",
        "rewrite_strength": rewrite_strength,
    }


def _recipient_locale(db: Session, recipient_user_id: UUID) -> str:
    locale = db.execute(
        select(Profile.locale).where(Profile.user_id == recipient_user_id)
    ).scalar_one_or_none()
    return normalize_locale(locale) or DEFAULT_LOCALE


def _enqueue_from_trigger(
    db: Session, trigger: ProcessingTrigger, classifier: ComplaintClassifier
) -> TriggerOutcome:
    """Run the pipeline for one trigger. Returns the outcome to mark."""
    rewrite_request_id = trigger.entry_id

    if rewrite_request_exists(db, rewrite_request_id):
        return TriggerOutcome(
            trigger.entry_id,
            "completed",
            NOTE_ALREADY_ENQUEUED,
            rewrite_request_id=rewrite_request_id,
        )

    entry = db.get(ComplaintEntry, trigger.entry_id)
    if entry is None:
        raise NotFoundError(ApiErrorCode.E_ENTRY_NOT_FOUND, "entry_not_found")
    if entry.home_id != trigger.home_id:
        raise ForbiddenError(message="home_id_mismatch")
    if entry.author_user_id != trigger.author_user_id:
        raise ForbiddenError(ApiErrorCode.E_NOT_ENTRY_AUTHOR, "sender_user_id_mismatch")

    original_text = (entry.text or "").strip()
    if not original_text:
        return TriggerOutcome(trigger.entry_id, "canceled", REASON_NO_TEXT)
    if len(original_text) > MAX_ORIGINAL_TEXT_CHARS:
        return TriggerOutcome(trigger.entry_id, "canceled", REASON_TEXT_TOO_LONG)

    target_locale = _recipient_locale(db, trigger.recipient_user_id)

    value_map = resolve_preference_payload(db, trigger.recipient_user_id)
    snapshot_payload = {"preferences": build_snapshot_preferences(value_map)}

    result = classifier.classify(original_text, TRIGGER_SURFACE, trigger.author_user_id)

    source_locale = normalize_locale(result.detected_language) or DEFAULT_LOCALE
    lane = (
        Lane.same_language.value if source_locale == target_locale else Lane.cross_language.value
    )

    context_pack = build_context_pack(
        trigger.recipient_user_id,
        value_map,
        result.topics,
        target_locale,
        preference_payload=snapshot_payload,
        power_mode=POWER_MODE,
    )
    route = resolve_route(db, TRIGGER_SURFACE, lane, result.rewrite_strength)

    enqueued = enqueue_rewrite(
        db,
        RewriteEnqueue(
            rewrite_request_id=rewrite_request_id,
            home_id=trigger.home_id,
            sender_user_id=trigger.author_user_id,
            recipient_user_id=trigger.recipient_user_id,
            surface=TRIGGER_SURFACE,
            original_text=original_text,
            source_locale=source_locale,
            target_locale=target_locale,
            lane=lane,
            topics=list(result.topics),
            intent=result.intent,
            rewrite_strength=result.rewrite_strength,
            classifier_version=result.classifier_version,
            context_pack_version=CONTEXT_PACK_VERSION,
            policy_version=POLICY_VERSION,
            routing_decision=route.to_dict(),
            language_pair={"from": source_locale, "to": target_locale},
            preference_payload=snapshot_payload,
            classifier_result=result.to_dict(),
            context_pack=context_pack,
            policy=build_policy(result.rewrite_strength),
            max_attempts=clamp_job_attempts(route.max_retries),
        ),
    )
    return TriggerOutcome(
        trigger.entry_id,
        "completed",
        NOTE_ENQUEUED,
        rewrite_request_id=rewrite_request_id,
        job_id=enqueued.job_id,
    )


def _failure_outcome(trigger: ProcessingTrigger, exc: Exception) -> TriggerOutcome:
    if isinstance(exc, ClassifierError):
        if exc.retryable:
            return TriggerOutcome(
                trigger.entry_id, "retry", "runner_requeue_classifier", error=exc.message
            )
        return TriggerOutcome(trigger.entry_id, "canceled", exc.message)
    if isinstance(exc, ApiError):
        return TriggerOutcome(trigger.entry_id, "canceled", f"{exc.code.value}:{exc.message}")
    return TriggerOutcome(
        trigger.entry_id, "retry", "runner_requeue_error", error=str(exc) or repr(exc)
    )


def process_trigger(
    db: Session, trigger: ProcessingTrigger, classifier: ComplaintClassifier
) -> TriggerOutcome:
    """Run one reserved trigger and move it out of processing.

    Pipeline writes happen in a savepoint, so a failure leaves no partial
    request behind before the trigger is marked.
    """
    try:
        with db.begin_nested():
            outcome = _enqueue_from_trigger(db, trigger, classifier)
    except Exception as exc:
        outcome = _failure_outcome(trigger, exc)
        logger.warning(
            "trigger_pipeline_failed",
            entry_id=str(trigger.entry_id),
            outcome=outcome.status,
            error=outcome.error or outcome.note,
        )

    try:
        if outcome.status == "completed":
            mark_trigger_completed(db, trigger.entry_id, trigger.request_id, note=outcome.note)
        elif outcome.status == "canceled":
            mark_trigger_canceled(db, trigger.entry_id, trigger.request_id, outcome.note or "")
        else:
            mark_trigger_retry(
                db,
                trigger.entry_id,
                trigger.request_id,
                error=outcome.error or "unknown",
                retry_after=RUNNER_RETRY_DELAY,
                note=outcome.note,
            )
    except TriggerMarkNoopError as e:
        # reservation was taken over (watchdog requeue); the next owner decides
        return TriggerOutcome(trigger.entry_id, "noop", e.reason)

    logger.info(
        "trigger_processed",
        entry_id=str(trigger.entry_id),
        status=outcome.status,
        note=outcome.note,
    )
    return outcome


def run_trigger_tick(
    db: Session,
    classifier: ComplaintClassifier,
    limit: int = DEFAULT_POP_LIMIT,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    commit_each: bool = False,
) -> TriggerTickResult:
    """Pop due triggers and process each one.

    With ``commit_each`` the reservation is committed before any trigger runs
    and every trigger outcome is committed on its own, so a crash mid-tick
    leaves the remaining triggers to the watchdog instead of rolling back
    finished work. Without it the caller owns the whole transaction.
    """
    popped = pop_pending_triggers(db, limit=limit, max_attempts=max_attempts)
    if commit_each:
        db.commit()
    result = TriggerTickResult(popped=len(popped))
    for trigger in popped:
        result.outcomes.append(process_trigger(db, trigger, classifier))
        if commit_each:
            db.commit()
    if popped:
        logger.info("trigger_tick_finished", **result.to_dict())
    return result
