"""Trigger queue service.

Records one pending "please rewrite this message" intent per complaint entry
and hands entries to the trigger runner through a reservation protocol.

Rules:
- All helpers accept Session and never call commit()/rollback().
- Claims are a single UPDATE whose target set comes from a
  FOR UPDATE SKIP LOCKED scan; the status guard is repeated on the UPDATE so
  backends without row locks fall back to optimistic locking.
- Markers must present the reservation token issued at claim time and raise
  TriggerMarkNoopError when no row matched.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from uuid import UUID, uuid4

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.orm import Session

from harmony.db.dml import upsert_insert
from harmony.db.models import (
    MAX_ERROR_CHARS,
    TERMINAL_TRIGGER_STATUSES,
    ComplaintEntry,
    ComplaintRewriteTrigger,
    Membership,
    TriggerStatus,
)
from harmony.db.types import utc_now
from harmony.errors import (
    ApiError,
    ApiErrorCode,
    ConflictError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    TriggerMarkNoopError,
)
from harmony.logging import get_logger

logger = get_logger(__name__)

triggers = ComplaintRewriteTrigger.__table__

DEFAULT_POP_LIMIT = 20
DEFAULT_MAX_ATTEMPTS = 10
MIN_RETRY_DELAY = timedelta(seconds=10)
DEFAULT_STALE_AFTER = timedelta(minutes=10)
DEFAULT_STALE_RETRY_DELAY = timedelta(seconds=30)
DEFAULT_SWEEP_LIMIT = 200

NOTE_REQUEUED_STALE = "requeued_stale_processing"
NOTE_FAILED_EXHAUSTED = "failed_exhausted_attempts"
ERROR_MAX_ATTEMPTS_EXHAUSTED = "max_attempts_exhausted"


# ---------------------------------------------------------------------------
# Typed state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueuedTrigger:
    """Entry waiting for pickup. retry_after delays eligibility when set."""

    entry_id: UUID
    home_id: UUID
    author_user_id: UUID
    recipient_user_id: UUID
    attempts: int
    retry_after: datetime | None
    error: str | None
    note: str | None
    created_at: datetime

    status = TriggerStatus.queued


@dataclass(frozen=True)
class ProcessingTrigger:
    """Entry reserved by one runner; request_id is the reservation token."""

    entry_id: UUID
    home_id: UUID
    author_user_id: UUID
    recipient_user_id: UUID
    attempts: int
    request_id: UUID
    processing_started_at: datetime
    created_at: datetime

    status = TriggerStatus.processing


@dataclass(frozen=True)
class TerminalTrigger:
    """Entry in completed, failed or canceled."""

    entry_id: UUID
    home_id: UUID
    author_user_id: UUID
    recipient_user_id: UUID
    attempts: int
    status: TriggerStatus
    processed_at: datetime
    error: str | None
    note: str | None
    created_at: datetime


TriggerState = QueuedTrigger | ProcessingTrigger | TerminalTrigger


def trigger_state_from_row(row: RowMapping) -> TriggerState:
    """Build the typed state for one complaint_rewrite_triggers row.

    Raises:
        ValueError: If the row violates the per-status field invariants.
    """
    status = TriggerStatus(row["status"])
    common = {
        "entry_id": row["entry_id"],
        "home_id": row["home_id"],
        "author_user_id": row["author_user_id"],
        "recipient_user_id": row["recipient_user_id"],
        "attempts": row["attempts"],
        "created_at": row["created_at"],
    }

    if status == TriggerStatus.processing:
        if row["request_id"] is None or row["processing_started_at"] is None:
            raise ValueError(f"processing trigger {row['entry_id']} missing reservation fields")
        if row["processed_at"] is not None or row["retry_after"] is not None:
            raise ValueError(f"processing trigger {row['entry_id']} carries queued/terminal fields")
        return ProcessingTrigger(
            request_id=row["request_id"],
            processing_started_at=row["processing_started_at"],
            **common,
        )

    if row["request_id"] is not None or row["processing_started_at"] is not None:
        raise ValueError(f"{status.value} trigger {row['entry_id']} carries reservation fields")

    if status == TriggerStatus.queued:
        if row["processed_at"] is not None:
            raise ValueError(f"queued trigger {row['entry_id']} has processed_at")
        return QueuedTrigger(
            retry_after=row["retry_after"],
            error=row["error"],
            note=row["note"],
            **common,
        )

    if row["processed_at"] is None or row["retry_after"] is not None:
        raise ValueError(f"terminal trigger {row['entry_id']} has inconsistent timestamps")
    return TerminalTrigger(
        status=status,
        processed_at=row["processed_at"],
        error=row["error"],
        note=row["note"],
        **common,
    )


def get_trigger(db: Session, entry_id: UUID) -> TriggerState | None:
    """Load the typed state of one trigger, or None."""
    row = db.execute(select(triggers).where(triggers.c.entry_id == entry_id)).mappings().first()
    if row is None:
        return None
    return trigger_state_from_row(row)


# ---------------------------------------------------------------------------
# Enqueue (author-facing)
# ---------------------------------------------------------------------------


def iso_week_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Return [start, end) of the UTC ISO week containing ``moment``."""
    moment = moment.astimezone(UTC)
    iso_year, iso_week, _ = moment.isocalendar()
    start_day = date.fromisocalendar(iso_year, iso_week, 1)
    start = datetime.combine(start_day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=7)


def _is_current_member(db: Session, home_id: UUID, user_id: UUID) -> bool:
    return (
        db.execute(
            select(Membership.id)
            .where(
                Membership.home_id == home_id,
                Membership.user_id == user_id,
                Membership.is_current.is_(True),
            )
            .limit(1)
        ).first()
        is not None
    )


def enqueue_trigger(
    db: Session,
    actor_user_id: UUID | None,
    entry_id: UUID,
    recipient_user_id: UUID,
) -> QueuedTrigger:
    """Create or reset the trigger for an entry so the runner picks it up.

    The caller must be the entry's author; the recipient must be another
    current member of the entry's home. An author may target one entry per
    UTC ISO week (canceled triggers do not count).

    Re-enqueueing resets the row to queued, clearing reservation, retry and
    error fields while keeping attempts and last_attempt_at. In-flight rows
    cannot be reset, and the recipient can only change after a cancel.

    Raises:
        ApiError: E_UNAUTHENTICATED without an actor.
        NotFoundError: E_ENTRY_NOT_FOUND.
        ForbiddenError: E_NOT_ENTRY_AUTHOR, E_NOT_HOME_MEMBER, E_RECIPIENT_NOT_HOME_MEMBER.
        InvalidRequestError: E_RECIPIENT_CANNOT_BE_SELF.
        ConflictError: E_ISO_WEEK_LIMIT_EXCEEDED, E_TRIGGER_CONFLICT.
    """
    if actor_user_id is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "not_authenticated")

    entry = db.get(ComplaintEntry, entry_id)
    if entry is None:
        raise NotFoundError(ApiErrorCode.E_ENTRY_NOT_FOUND, "entry_not_found")
    if entry.author_user_id != actor_user_id:
        raise ForbiddenError(ApiErrorCode.E_NOT_ENTRY_AUTHOR, "not_entry_author")
    if recipient_user_id == actor_user_id:
        raise InvalidRequestError(
            ApiErrorCode.E_RECIPIENT_CANNOT_BE_SELF, "recipient_cannot_be_self"
        )
    if not _is_current_member(db, entry.home_id, actor_user_id):
        raise ForbiddenError(ApiErrorCode.E_NOT_HOME_MEMBER, "not_home_member")
    if not _is_current_member(db, entry.home_id, recipient_user_id):
        raise ForbiddenError(
            ApiErrorCode.E_RECIPIENT_NOT_HOME_MEMBER, "recipient_not_home_member"
        )

    week_start, week_end = iso_week_bounds(entry.created_at)
    other_in_week = db.execute(
        select(triggers.c.entry_id)
        .join(ComplaintEntry.__table__, ComplaintEntry.id == triggers.c.entry_id)
        .where(
            triggers.c.author_user_id == actor_user_id,
            triggers.c.home_id == entry.home_id,
            triggers.c.entry_id != entry_id,
            triggers.c.status != TriggerStatus.canceled,
            ComplaintEntry.created_at >= week_start,
            ComplaintEntry.created_at < week_end,
        )
        .limit(1)
    ).first()
    if other_in_week is not None:
        raise ConflictError(ApiErrorCode.E_ISO_WEEK_LIMIT_EXCEEDED, "iso_week_limit_exceeded")

    now = utc_now()
    inserted = db.execute(
        upsert_insert(db, triggers)
        .values(
            entry_id=entry_id,
            home_id=entry.home_id,
            author_user_id=actor_user_id,
            recipient_user_id=recipient_user_id,
            status=TriggerStatus.queued,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[triggers.c.entry_id])
        .returning(*triggers.c)
    ).mappings().first()

    if inserted is not None:
        logger.info(
            "trigger_enqueued",
            entry_id=str(entry_id),
            recipient_user_id=str(recipient_user_id),
            reset=False,
        )
        return trigger_state_from_row(inserted)

    reset = db.execute(
        update(triggers)
        .where(
            triggers.c.entry_id == entry_id,
            triggers.c.status != TriggerStatus.processing,
            or_(
                triggers.c.status == TriggerStatus.canceled,
                triggers.c.recipient_user_id == recipient_user_id,
            ),
        )
        .values(
            home_id=entry.home_id,
            author_user_id=actor_user_id,
            recipient_user_id=recipient_user_id,
            status=TriggerStatus.queued,
            request_id=None,
            retry_after=None,
            processing_started_at=None,
            processed_at=None,
            error=None,
            last_error_at=None,
            note=None,
            updated_at=now,
        )
        .returning(*triggers.c)
    ).mappings().first()

    if reset is None:
        raise ConflictError(
            ApiErrorCode.E_TRIGGER_CONFLICT, "trigger_in_flight_or_recipient_locked"
        )

    logger.info(
        "trigger_enqueued",
        entry_id=str(entry_id),
        recipient_user_id=str(recipient_user_id),
        reset=True,
        attempts=reset["attempts"],
    )
    return trigger_state_from_row(reset)


# ---------------------------------------------------------------------------
# Claim (runner-facing)
# ---------------------------------------------------------------------------


def pop_pending_triggers(
    db: Session,
    limit: int = DEFAULT_POP_LIMIT,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> list[ProcessingTrigger]:
    """Reserve up to ``limit`` due queued entries for this caller.

    Rows locked by a concurrent caller are skipped. Every claimed row gets the
    same fresh reservation token, attempts + 1, and processing_started_at.
    Entries that already used ``max_attempts`` are left for the terminalizer.
    """
    if limit <= 0:
        return []

    now = utc_now()
    token = uuid4()
    due_at = func.coalesce(triggers.c.retry_after, triggers.c.created_at)

    eligible = (
        select(triggers.c.entry_id)
        .where(
            triggers.c.status == TriggerStatus.queued,
            or_(triggers.c.retry_after.is_(None), triggers.c.retry_after <= now),
            triggers.c.attempts < max_attempts,
        )
        .order_by(due_at, triggers.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )

    rows = db.execute(
        update(triggers)
        .where(
            triggers.c.entry_id.in_(eligible.scalar_subquery()),
            triggers.c.status == TriggerStatus.queued,
        )
        .values(
            status=TriggerStatus.processing,
            request_id=token,
            attempts=triggers.c.attempts + 1,
            last_attempt_at=now,
            processing_started_at=now,
            retry_after=None,
            processed_at=None,
            updated_at=now,
        )
        .returning(*triggers.c)
    ).mappings().all()

    claimed = [trigger_state_from_row(row) for row in rows]

    if claimed:
        logger.info("triggers_popped", count=len(claimed), request_id=str(token))
    return claimed


# ---------------------------------------------------------------------------
# Outcome markers
# ---------------------------------------------------------------------------


def _mark(
    db: Session,
    entry_id: UUID,
    request_id: UUID,
    noop_reason: str,
    values: dict,
) -> TriggerState:
    row = db.execute(
        update(triggers)
        .where(
            triggers.c.entry_id == entry_id,
            triggers.c.request_id == request_id,
            triggers.c.status == TriggerStatus.processing,
        )
        .values(**values)
        .returning(*triggers.c)
    ).mappings().first()

    if row is None:
        logger.warning(
            "trigger_mark_noop",
            reason=noop_reason,
            entry_id=str(entry_id),
            reservation=str(request_id),
        )
        raise TriggerMarkNoopError(noop_reason, entry_id, request_id)
    return trigger_state_from_row(row)


def _leave_processing(now: datetime) -> dict:
    return {"request_id": None, "processing_started_at": None, "updated_at": now}


def _truncate(value: str | None, limit: int = MAX_ERROR_CHARS) -> str | None:
    if value is None:
        return None
    return value[:limit]


def mark_trigger_completed(
    db: Session, entry_id: UUID, request_id: UUID, note: str | None = None
) -> TerminalTrigger:
    """processing -> completed."""
    now = utc_now()
    return _mark(
        db,
        entry_id,
        request_id,
        "mark_completed_noop",
        {
            "status": TriggerStatus.completed,
            "processed_at": now,
            "retry_after": None,
            "note": note,
            **_leave_processing(now),
        },
    )


def mark_trigger_retry(
    db: Session,
    entry_id: UUID,
    request_id: UUID,
    error: str,
    retry_after: timedelta = MIN_RETRY_DELAY,
    note: str | None = None,
) -> QueuedTrigger:
    """processing -> queued with retry_after at least 10 seconds out."""
    now = utc_now()
    delay = max(retry_after, MIN_RETRY_DELAY)
    return _mark(
        db,
        entry_id,
        request_id,
        "mark_retry_noop",
        {
            "status": TriggerStatus.queued,
            "error": _truncate(error),
            "last_error_at": now,
            "note": note,
            "retry_after": now + delay,
            "processed_at": None,
            **_leave_processing(now),
        },
    )


def mark_trigger_failed_terminal(
    db: Session, entry_id: UUID, request_id: UUID, error: str, note: str | None = None
) -> TerminalTrigger:
    """processing -> failed (no further retries)."""
    now = utc_now()
    return _mark(
        db,
        entry_id,
        request_id,
        "mark_failed_terminal_noop",
        {
            "status": TriggerStatus.failed,
            "error": _truncate(error),
            "last_error_at": now,
            "note": note,
            "processed_at": now,
            "retry_after": None,
            **_leave_processing(now),
        },
    )


def mark_trigger_canceled(
    db: Session, entry_id: UUID, request_id: UUID, reason: str
) -> TerminalTrigger:
    """processing -> canceled; the reason is kept in note."""
    now = utc_now()
    return _mark(
        db,
        entry_id,
        request_id,
        "mark_canceled_noop",
        {
            "status": TriggerStatus.canceled,
            "note": _truncate(reason, 256),
            "processed_at": now,
            "retry_after": None,
            **_leave_processing(now),
        },
    )


# ---------------------------------------------------------------------------
# Watchdog / terminalizer
# ---------------------------------------------------------------------------


def _append_note(note_column, suffix: str):
    return case(
        (or_(note_column.is_(None), note_column == ""), suffix),
        else_=note_column + f" | {suffix}",
    )


def requeue_stale_triggers(
    db: Session,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
    limit: int = DEFAULT_SWEEP_LIMIT,
    retry_delay: timedelta = DEFAULT_STALE_RETRY_DELAY,
) -> int:
    """Return abandoned processing entries to queued.

    An entry is stale when processing_started_at is older than ``stale_after``.
    Returns the number of entries requeued.
    """
    now = utc_now()
    threshold = now - stale_after

    stale = (
        select(triggers.c.entry_id)
        .where(
            triggers.c.status == TriggerStatus.processing,
            triggers.c.processing_started_at.is_not(None),
            triggers.c.processing_started_at <= threshold,
        )
        .order_by(triggers.c.processing_started_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )

    rows = db.execute(
        update(triggers)
        .where(
            triggers.c.entry_id.in_(stale.scalar_subquery()),
            triggers.c.status == TriggerStatus.processing,
        )
        .values(
            status=TriggerStatus.queued,
            processed_at=None,
            retry_after=now + retry_delay,
            note=_append_note(triggers.c.note, NOTE_REQUEUED_STALE),
            **_leave_processing(now),
        )
        .returning(triggers.c.entry_id)
    ).all()

    if rows:
        logger.warning(
            "triggers_requeued_stale",
            count=len(rows),
            stale_after_seconds=int(stale_after.total_seconds()),
        )
    return len(rows)


def fail_exhausted_triggers(
    db: Session,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    limit: int = DEFAULT_SWEEP_LIMIT,
) -> int:
    """Flip queued entries whose attempts reached the ceiling to failed.

    Returns the number of entries failed.
    """
    now = utc_now()
    ceiling = max(max_attempts, 0)

    exhausted = (
        select(triggers.c.entry_id)
        .where(
            triggers.c.status == TriggerStatus.queued,
            triggers.c.attempts >= ceiling,
        )
        .order_by(
            func.coalesce(triggers.c.last_attempt_at, triggers.c.created_at),
            triggers.c.created_at,
        )
        .limit(limit)
        .with_for_update(skip_locked=True)
    )

    rows = db.execute(
        update(triggers)
        .where(
            and_(
                triggers.c.entry_id.in_(exhausted.scalar_subquery()),
                triggers.c.status == TriggerStatus.queued,
            )
        )
        .values(
            status=TriggerStatus.failed,
            processed_at=now,
            retry_after=None,
            error=func.substr(
                func.coalesce(triggers.c.error, ERROR_MAX_ATTEMPTS_EXHAUSTED), 1, MAX_ERROR_CHARS
            ),
            last_error_at=func.coalesce(triggers.c.last_error_at, now),
            note=_append_note(triggers.c.note, NOTE_FAILED_EXHAUSTED),
            **_leave_processing(now),
        )
        .returning(triggers.c.entry_id)
    ).all()

    if rows:
        logger.warning("triggers_failed_exhausted", count=len(rows), max_attempts=ceiling)
    return len(rows)


def is_terminal(state: TriggerState) -> bool:
    return state.status in TERMINAL_TRIGGER_STATUSES
