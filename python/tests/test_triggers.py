"""Tests for the trigger queue service.

Covers:
- Author-facing enqueue validation, in order
- The one-trigger-per-ISO-week rule
- Re-enqueue resets and the in-flight / recipient lock
- Reservation (pop) semantics and the outcome markers
- Watchdog and terminalizer sweeps
"""

import threading
from datetime import UTC, datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from harmony.db.models import ComplaintRewriteTrigger, TriggerStatus
from harmony.db.types import utc_now
from harmony.errors import ApiError, ApiErrorCode, TriggerMarkNoopError
from harmony.services.triggers import (
    ERROR_MAX_ATTEMPTS_EXHAUSTED,
    NOTE_FAILED_EXHAUSTED,
    NOTE_REQUEUED_STALE,
    ProcessingTrigger,
    QueuedTrigger,
    TerminalTrigger,
    enqueue_trigger,
    fail_exhausted_triggers,
    get_trigger,
    is_terminal,
    iso_week_bounds,
    mark_trigger_canceled,
    mark_trigger_completed,
    mark_trigger_failed_terminal,
    mark_trigger_retry,
    pop_pending_triggers,
    requeue_stale_triggers,
)
from tests.factories import add_member, create_entry, create_home, create_household
from tests.utils.db import DirectSessionManager

triggers = ComplaintRewriteTrigger.__table__


def _set_trigger(db: Session, entry_id, **values) -> None:
    db.execute(update(triggers).where(triggers.c.entry_id == entry_id).values(**values))


def _queued_trigger(db: Session):
    household = create_household(db)
    entry_id = create_entry(db, household.home_id, household.author_id)
    enqueue_trigger(db, household.author_id, entry_id, household.recipient_id)
    return household, entry_id


def _popped_trigger(db: Session) -> ProcessingTrigger:
    _, entry_id = _queued_trigger(db)
    popped = pop_pending_triggers(db)
    assert [t.entry_id for t in popped] == [entry_id]
    return popped[0]


# =============================================================================
# Enqueue validation
# =============================================================================


class TestEnqueueValidation:
    """Errors are reported in a fixed order."""

    def test_enqueue_creates_queued_trigger(self, db_session: Session):
        household = create_household(db_session)
        entry_id = create_entry(db_session, household.home_id, household.author_id)

        trigger = enqueue_trigger(db_session, household.author_id, entry_id, household.recipient_id)

        assert isinstance(trigger, QueuedTrigger)
        assert trigger.entry_id == entry_id
        assert trigger.home_id == household.home_id
        assert trigger.author_user_id == household.author_id
        assert trigger.recipient_user_id == household.recipient_id
        assert trigger.attempts == 0
        assert trigger.retry_after is None
        assert get_trigger(db_session, entry_id) == trigger

    def test_missing_actor_is_unauthenticated(self, db_session: Session):
        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, None, uuid4(), uuid4())
        assert exc.value.code == ApiErrorCode.E_UNAUTHENTICATED
        assert exc.value.status_code == 401

    def test_unknown_entry(self, db_session: Session):
        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, uuid4(), uuid4(), uuid4())
        assert exc.value.code == ApiErrorCode.E_ENTRY_NOT_FOUND

    def test_actor_must_be_author(self, db_session: Session):
        household = create_household(db_session)
        entry_id = create_entry(db_session, household.home_id, household.author_id)

        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, household.recipient_id, entry_id, household.author_id)
        assert exc.value.code == ApiErrorCode.E_NOT_ENTRY_AUTHOR
        assert exc.value.status_code == 403

    def test_recipient_cannot_be_self(self, db_session: Session):
        household = create_household(db_session)
        entry_id = create_entry(db_session, household.home_id, household.author_id)

        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, household.author_id, entry_id, household.author_id)
        assert exc.value.code == ApiErrorCode.E_RECIPIENT_CANNOT_BE_SELF
        assert exc.value.status_code == 400

    def test_author_must_be_current_member(self, db_session: Session):
        household = create_household(db_session)
        outsider = uuid4()
        entry_id = create_entry(db_session, household.home_id, outsider)

        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, outsider, entry_id, household.recipient_id)
        assert exc.value.code == ApiErrorCode.E_NOT_HOME_MEMBER

    def test_former_member_recipient_rejected(self, db_session: Session):
        household = create_household(db_session)
        former = uuid4()
        add_member(db_session, household.home_id, former, is_current=False)
        entry_id = create_entry(db_session, household.home_id, household.author_id)

        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, household.author_id, entry_id, former)
        assert exc.value.code == ApiErrorCode.E_RECIPIENT_NOT_HOME_MEMBER

    def test_author_check_precedes_self_check(self, db_session: Session):
        """A non-author targeting themselves still gets E_NOT_ENTRY_AUTHOR."""
        household = create_household(db_session)
        entry_id = create_entry(db_session, household.home_id, household.author_id)

        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, household.recipient_id, entry_id, household.recipient_id)
        assert exc.value.code == ApiErrorCode.E_NOT_ENTRY_AUTHOR


# =============================================================================
# ISO week limit
# =============================================================================


class TestIsoWeekLimit:
    def test_iso_week_bounds_monday_to_monday(self):
        wednesday = datetime(2026, 10, 14, 15, 30, tzinfo=UTC)
        start, end = iso_week_bounds(wednesday)
        assert start == datetime(2026, 10, 12, tzinfo=UTC)
        assert end == datetime(2026, 10, 19, tzinfo=UTC)

    def test_iso_week_bounds_use_utc_for_offset_times(self):
        # Monday 01:00 at +03:00 is still Sunday in UTC
        monday_local = datetime(2026, 10, 19, 1, 0, tzinfo=timezone(timedelta(hours=3)))
        start, end = iso_week_bounds(monday_local)
        assert start == datetime(2026, 10, 12, tzinfo=UTC)
        assert end == datetime(2026, 10, 19, tzinfo=UTC)
        assert start.tzinfo is UTC

    def test_second_entry_same_week_rejected(self, db_session: Session):
        household, _ = _queued_trigger(db_session)
        second = create_entry(db_session, household.home_id, household.author_id)

        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, household.author_id, second, household.recipient_id)
        assert exc.value.code == ApiErrorCode.E_ISO_WEEK_LIMIT_EXCEEDED
        assert exc.value.status_code == 409

    def test_entry_in_other_week_allowed(self, db_session: Session):
        household, _ = _queued_trigger(db_session)
        older = create_entry(
            db_session,
            household.home_id,
            household.author_id,
            created_at=utc_now() - timedelta(days=14),
        )

        trigger = enqueue_trigger(db_session, household.author_id, older, household.recipient_id)
        assert trigger.entry_id == older

    def test_canceled_trigger_does_not_count(self, db_session: Session):
        household, first = _queued_trigger(db_session)
        popped = pop_pending_triggers(db_session)
        mark_trigger_canceled(db_session, first, popped[0].request_id, "no_text_to_rewrite")

        second = create_entry(db_session, household.home_id, household.author_id)
        trigger = enqueue_trigger(db_session, household.author_id, second, household.recipient_id)
        assert trigger.entry_id == second

    def test_limit_is_per_home(self, db_session: Session):
        household, _ = _queued_trigger(db_session)
        other_home_recipient = uuid4()
        other_home = create_home(db_session, household.author_id, other_home_recipient)
        entry = create_entry(db_session, other_home, household.author_id)

        trigger = enqueue_trigger(db_session, household.author_id, entry, other_home_recipient)
        assert trigger.home_id == other_home


# =============================================================================
# Re-enqueue
# =============================================================================


class TestReenqueue:
    def test_reenqueue_after_completion_resets_but_keeps_attempts(self, db_session: Session):
        household, entry_id = _queued_trigger(db_session)
        popped = pop_pending_triggers(db_session)
        mark_trigger_completed(db_session, entry_id, popped[0].request_id, note="enqueued")

        trigger = enqueue_trigger(db_session, household.author_id, entry_id, household.recipient_id)

        assert isinstance(trigger, QueuedTrigger)
        assert trigger.attempts == 1
        assert trigger.note is None
        assert trigger.error is None

    def test_reenqueue_while_processing_conflicts(self, db_session: Session):
        household, entry_id = _queued_trigger(db_session)
        pop_pending_triggers(db_session)

        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, household.author_id, entry_id, household.recipient_id)
        assert exc.value.code == ApiErrorCode.E_TRIGGER_CONFLICT

    def test_recipient_locked_until_canceled(self, db_session: Session):
        household, entry_id = _queued_trigger(db_session)
        other = uuid4()
        add_member(db_session, household.home_id, other)

        with pytest.raises(ApiError) as exc:
            enqueue_trigger(db_session, household.author_id, entry_id, other)
        assert exc.value.code == ApiErrorCode.E_TRIGGER_CONFLICT

        popped = pop_pending_triggers(db_session)
        mark_trigger_canceled(db_session, entry_id, popped[0].request_id, "changed_mind")

        trigger = enqueue_trigger(db_session, household.author_id, entry_id, other)
        assert trigger.recipient_user_id == other

    def test_reenqueue_queued_same_recipient_is_idempotent(self, db_session: Session):
        household, entry_id = _queued_trigger(db_session)
        trigger = enqueue_trigger(db_session, household.author_id, entry_id, household.recipient_id)
        assert trigger.status == TriggerStatus.queued
        assert trigger.attempts == 0


# =============================================================================
# Pop
# =============================================================================


class TestPopPendingTriggers:
    def test_pop_reserves_with_shared_token(self, db_session: Session):
        _, first = _queued_trigger(db_session)
        _, second = _queued_trigger(db_session)

        popped = pop_pending_triggers(db_session, limit=10)

        assert {t.entry_id for t in popped} == {first, second}
        assert len({t.request_id for t in popped}) == 1
        for trigger in popped:
            assert isinstance(trigger, ProcessingTrigger)
            assert trigger.attempts == 1
            assert trigger.processing_started_at is not None

    def test_pop_respects_limit(self, db_session: Session):
        for _ in range(3):
            _queued_trigger(db_session)
        assert len(pop_pending_triggers(db_session, limit=2)) == 2
        assert len(pop_pending_triggers(db_session, limit=2)) == 1
        assert pop_pending_triggers(db_session, limit=2) == []

    def test_pop_takes_earliest_due_first(self, db_session: Session):
        now = utc_now()
        _, retried = _queued_trigger(db_session)
        _, fresh = _queued_trigger(db_session)
        _set_trigger(
            db_session,
            retried,
            created_at=now - timedelta(hours=2),
            retry_after=now - timedelta(minutes=1),
        )
        _set_trigger(db_session, fresh, created_at=now - timedelta(hours=1))

        assert [t.entry_id for t in pop_pending_triggers(db_session, limit=1)] == [fresh]
        assert [t.entry_id for t in pop_pending_triggers(db_session, limit=1)] == [retried]

    def test_zero_limit_pops_nothing(self, db_session: Session):
        _queued_trigger(db_session)
        assert pop_pending_triggers(db_session, limit=0) == []

    def test_future_retry_after_is_skipped(self, db_session: Session):
        _, entry_id = _queued_trigger(db_session)
        _set_trigger(db_session, entry_id, retry_after=utc_now() + timedelta(minutes=5))
        assert pop_pending_triggers(db_session) == []

        _set_trigger(db_session, entry_id, retry_after=utc_now() - timedelta(seconds=1))
        assert [t.entry_id for t in pop_pending_triggers(db_session)] == [entry_id]

    def test_exhausted_entries_left_for_terminalizer(self, db_session: Session):
        _, entry_id = _queued_trigger(db_session)
        _set_trigger(db_session, entry_id, attempts=3)
        assert pop_pending_triggers(db_session, max_attempts=3) == []
        assert isinstance(get_trigger(db_session, entry_id), QueuedTrigger)


class TestPopExclusivity:
    """Concurrent runners never reserve the same entry."""

    ENTRY_COUNT = 9
    WORKERS = 3

    def _seed_triggers(self, direct_db: DirectSessionManager) -> list[UUID]:
        entry_ids = []
        with direct_db.session() as session:
            for _ in range(self.ENTRY_COUNT):
                household = create_household(session)
                direct_db.register_cleanup("homes", "id", household.home_id)
                direct_db.register_cleanup("memberships", "home_id", household.home_id)
                direct_db.register_cleanup("complaint_entries", "home_id", household.home_id)
                direct_db.register_cleanup(
                    "complaint_rewrite_triggers", "home_id", household.home_id
                )
                entry_id = create_entry(session, household.home_id, household.author_id)
                enqueue_trigger(session, household.author_id, entry_id, household.recipient_id)
                entry_ids.append(entry_id)
            session.commit()
        return entry_ids

    def test_concurrent_pops_are_disjoint(self, direct_db: DirectSessionManager):
        entry_ids = self._seed_triggers(direct_db)
        barrier = threading.Barrier(self.WORKERS)
        popped: dict[int, list[ProcessingTrigger]] = {}
        errors: list[BaseException] = []

        def runner(index: int) -> None:
            try:
                barrier.wait(timeout=10)
                with direct_db.session() as session:
                    claimed = pop_pending_triggers(session, limit=5)
                    session.commit()
                popped[index] = claimed
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=runner, args=(i,)) for i in range(self.WORKERS)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        claimed_ids = [t.entry_id for claimed in popped.values() for t in claimed]
        assert len(claimed_ids) == len(set(claimed_ids))
        assert set(entry_ids) <= set(claimed_ids)

        tokens = {}
        for index, claimed in popped.items():
            if not claimed:
                continue
            own = {t.request_id for t in claimed}
            assert len(own) == 1
            tokens[index] = own.pop()
        assert len(set(tokens.values())) == len(tokens)

        owner = {t.entry_id: tokens[i] for i, claimed in popped.items() for t in claimed}
        with direct_db.session() as session:
            rows = session.execute(
                select(triggers.c.entry_id, triggers.c.status, triggers.c.request_id)
                .where(triggers.c.entry_id.in_(entry_ids))
            ).all()
        for row in rows:
            assert row.status == TriggerStatus.processing
            assert row.request_id == owner[row.entry_id]


# =============================================================================
# Markers
# =============================================================================


class TestMarkers:
    def test_mark_completed(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        state = mark_trigger_completed(
            db_session, trigger.entry_id, trigger.request_id, note="enqueued"
        )
        assert isinstance(state, TerminalTrigger)
        assert state.status == TriggerStatus.completed
        assert state.note == "enqueued"
        assert is_terminal(state)

    def test_stale_token_is_noop(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        with pytest.raises(TriggerMarkNoopError) as exc:
            mark_trigger_completed(db_session, trigger.entry_id, uuid4())
        assert exc.value.reason == "mark_completed_noop"
        assert exc.value.code == ApiErrorCode.E_TRIGGER_MARK_NOOP
        assert isinstance(get_trigger(db_session, trigger.entry_id), ProcessingTrigger)

    def test_second_mark_is_noop(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        mark_trigger_completed(db_session, trigger.entry_id, trigger.request_id)
        with pytest.raises(TriggerMarkNoopError) as exc:
            mark_trigger_canceled(db_session, trigger.entry_id, trigger.request_id, "late")
        assert exc.value.reason == "mark_canceled_noop"

    def test_retry_enforces_minimum_delay(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        before = utc_now()
        state = mark_trigger_retry(
            db_session,
            trigger.entry_id,
            trigger.request_id,
            error="boom",
            retry_after=timedelta(seconds=1),
        )
        assert isinstance(state, QueuedTrigger)
        assert state.retry_after >= before + timedelta(seconds=10)
        assert state.error == "boom"
        assert state.attempts == 1

    def test_retry_truncates_error(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        state = mark_trigger_retry(db_session, trigger.entry_id, trigger.request_id, "x" * 2000)
        assert len(state.error) == 512

    def test_failed_terminal(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        state = mark_trigger_failed_terminal(
            db_session, trigger.entry_id, trigger.request_id, "unrecoverable"
        )
        assert state.status == TriggerStatus.failed
        assert state.error == "unrecoverable"
        assert state.processed_at is not None

    def test_canceled_keeps_reason_in_note(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        state = mark_trigger_canceled(
            db_session, trigger.entry_id, trigger.request_id, "no_text_to_rewrite"
        )
        assert state.status == TriggerStatus.canceled
        assert state.note == "no_text_to_rewrite"


# =============================================================================
# Sweeps
# =============================================================================


class TestSweeps:
    def test_watchdog_requeues_stale_processing(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        _set_trigger(
            db_session,
            trigger.entry_id,
            processing_started_at=utc_now() - timedelta(minutes=11),
        )

        assert requeue_stale_triggers(db_session, stale_after=timedelta(minutes=10)) == 1

        state = get_trigger(db_session, trigger.entry_id)
        assert isinstance(state, QueuedTrigger)
        assert state.note == NOTE_REQUEUED_STALE
        assert state.retry_after > utc_now()

        # the abandoned runner can no longer mark it
        with pytest.raises(TriggerMarkNoopError):
            mark_trigger_completed(db_session, trigger.entry_id, trigger.request_id)

    def test_watchdog_ignores_fresh_processing(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        assert requeue_stale_triggers(db_session, stale_after=timedelta(minutes=10)) == 0
        assert isinstance(get_trigger(db_session, trigger.entry_id), ProcessingTrigger)

    def test_watchdog_appends_to_existing_note(self, db_session: Session):
        trigger = _popped_trigger(db_session)
        _set_trigger(
            db_session,
            trigger.entry_id,
            note="runner_requeue_error",
            processing_started_at=utc_now() - timedelta(hours=1),
        )
        requeue_stale_triggers(db_session)
        state = get_trigger(db_session, trigger.entry_id)
        assert state.note == f"runner_requeue_error | {NOTE_REQUEUED_STALE}"

    def test_terminalizer_fails_exhausted_queued(self, db_session: Session):
        _, entry_id = _queued_trigger(db_session)
        _set_trigger(db_session, entry_id, attempts=10)

        assert fail_exhausted_triggers(db_session, max_attempts=10) == 1

        state = get_trigger(db_session, entry_id)
        assert state.status == TriggerStatus.failed
        assert state.error == ERROR_MAX_ATTEMPTS_EXHAUSTED
        assert state.note == NOTE_FAILED_EXHAUSTED

    def test_terminalizer_keeps_last_error(self, db_session: Session):
        _, entry_id = _queued_trigger(db_session)
        _set_trigger(db_session, entry_id, attempts=10, error="classifier_timeout")
        fail_exhausted_triggers(db_session, max_attempts=10)
        assert get_trigger(db_session, entry_id).error == "classifier_timeout"

    def test_terminalizer_skips_entries_with_attempts_left(self, db_session: Session):
        _, entry_id = _queued_trigger(db_session)
        _set_trigger(db_session, entry_id, attempts=9)
        assert fail_exhausted_triggers(db_session, max_attempts=10) == 0
        assert get_trigger(db_session, entry_id).status == TriggerStatus.queued
