"""Tests for the rewrite request/job registry.

Covers enqueue idempotency and validation, submit/collect claims, completion
ownership checks, soft and hard failures, request folding, and claim
exclusivity across concurrent sessions.
"""

import threading
from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from harmony.db.models import (
    ComplaintRewriteJob,
    RecipientPreferenceSnapshot,
    RewriteJobStatus,
    RewriteRequestStatus,
)
from harmony.db.types import utc_now
from harmony.errors import (
    ApiErrorCode,
    InvalidRequestError,
    JobMismatchError,
    LanguageMismatchError,
)
from harmony.services.provider_batches import register_batch
from harmony.services.rewrite_jobs import (
    JobOutput,
    claim_jobs_for_collect,
    claim_jobs_for_submit,
    clamp_backoff,
    complete_job,
    enqueue_rewrite,
    fail_job,
    fail_or_requeue_job,
    fetch_job,
    fetch_request,
    finalize_request,
    list_request_jobs,
    list_request_outputs,
    locale_primary,
    mark_jobs_batch_submitted,
    requeue_jobs_after_submit_failure,
    requeue_jobs_by_provider_batch,
)
from tests.factories import create_household, enqueue_request, make_enqueue_payload
from tests.utils.db import DirectSessionManager

jobs = ComplaintRewriteJob.__table__


def _output(**overrides) -> JobOutput:
    fields = {
        "rewritten_text": "Could you please keep the music a little lower after 10pm?",
        "output_language": "en",
        "target_locale": "en",
        "model": "gpt-5-nano",
        "provider": "openai",
        "prompt_version": "v1",
        "policy_version": "v1",
        "lexicon_version": "complaint_rewrite_lexicon_v1",
        "eval_result": {"lexicon_pass": True},
    }
    fields.update(overrides)
    return JobOutput(**fields)


def _submit(db: Session, job_ids: list[UUID], batch_id: str | None = None) -> str:
    """Drive jobs to batch_submitted under one registered provider batch."""
    batch_id = batch_id or f"batch-{uuid4().hex[:8]}"
    claimed = claim_jobs_for_submit(db, worker_id="test-submitter", limit=100)
    assert set(job_ids) <= {job.job_id for job in claimed}
    register_batch(db, batch_id, "file-in", len(job_ids))
    mark_jobs_batch_submitted(db, job_ids, batch_id)
    return batch_id


def _to_processing(db: Session, job_ids: list[UUID]) -> str:
    batch_id = _submit(db, job_ids)
    claimed = claim_jobs_for_collect(db, worker_id="test-collector", job_ids=job_ids)
    assert {job.job_id for job in claimed} == set(job_ids)
    return batch_id


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    @pytest.mark.parametrize(
        "seconds,expected",
        [(None, 600), (0, 30), (5, 30), (900, 900), (10**7, 6 * 3600)],
    )
    def test_clamp_backoff(self, seconds, expected):
        assert clamp_backoff(seconds) == expected

    @pytest.mark.parametrize(
        "locale,expected",
        [("en-NZ", "en"), ("PT-br", "pt"), ("", None), (None, None), ("zh", "zh")],
    )
    def test_locale_primary(self, locale, expected):
        assert locale_primary(locale) == expected


# =============================================================================
# Enqueue
# =============================================================================


class TestEnqueueRewrite:
    def test_creates_request_snapshots_and_job(self, db_session: Session):
        result = enqueue_request(db_session)

        assert result.inserted_request is True
        assert result.inserted_job is True

        request = fetch_request(db_session, result.rewrite_request_id)
        assert request.status == RewriteRequestStatus.queued
        assert request.topics == ["noise"]
        assert request.recipient_snapshot_id == result.recipient_snapshot_id
        assert request.recipient_preference_snapshot_id == result.recipient_preference_snapshot_id

        job = fetch_job(db_session, result.job_id)
        assert job.status == RewriteJobStatus.queued
        assert job.attempt_count == 0
        assert job.max_attempts == 2
        assert job.language_pair == {"from": "en", "to": "en"}
        assert job.recipient_snapshot_id == result.recipient_snapshot_id

        snapshot = db_session.get(
            RecipientPreferenceSnapshot, result.recipient_preference_snapshot_id
        )
        assert snapshot.preference_payload == {
            "preferences": {"communication_directness": "gentle"}
        }

    def test_enqueue_is_idempotent(self, db_session: Session):
        household = create_household(db_session)
        payload = make_enqueue_payload(
            household.home_id, household.author_id, household.recipient_id
        )

        first = enqueue_rewrite(db_session, payload)
        second = enqueue_rewrite(db_session, payload)

        assert second.inserted_request is False
        assert second.inserted_job is False
        assert second.job_id == first.job_id
        assert second.recipient_snapshot_id == first.recipient_snapshot_id
        assert len(list_request_jobs(db_session, payload.rewrite_request_id)) == 1

    def test_snapshot_is_write_once(self, db_session: Session):
        household = create_household(db_session)
        payload = make_enqueue_payload(
            household.home_id, household.author_id, household.recipient_id
        )
        first = enqueue_rewrite(db_session, payload)

        changed = make_enqueue_payload(
            household.home_id,
            household.author_id,
            household.recipient_id,
            rewrite_request_id=payload.rewrite_request_id,
            preference_payload={"preferences": {"communication_directness": "direct"}},
        )
        enqueue_rewrite(db_session, changed)

        snapshot = db_session.get(
            RecipientPreferenceSnapshot, first.recipient_preference_snapshot_id
        )
        db_session.refresh(snapshot)
        assert snapshot.preference_payload["preferences"]["communication_directness"] == "gentle"

    @pytest.mark.parametrize(
        "overrides,code",
        [
            ({"original_text": "x" * 501}, ApiErrorCode.E_TEXT_TOO_LONG),
            ({"original_text": "   "}, ApiErrorCode.E_INVALID_REQUEST),
            ({"topics": []}, ApiErrorCode.E_INVALID_TOPICS),
            ({"topics": ["noise", "noise"]}, ApiErrorCode.E_INVALID_TOPICS),
            ({"topics": ["noise", "privacy", "guests", "other"]}, ApiErrorCode.E_INVALID_TOPICS),
            ({"topics": ["weather"]}, ApiErrorCode.E_INVALID_TOPICS),
            ({"lane": "sideways"}, ApiErrorCode.E_INVALID_REQUEST),
            ({"surface": "email"}, ApiErrorCode.E_INVALID_REQUEST),
            ({"intent": "threat"}, ApiErrorCode.E_INVALID_REQUEST),
            ({"rewrite_strength": "nuclear"}, ApiErrorCode.E_INVALID_REQUEST),
            ({"language_pair": {"from": "en"}}, ApiErrorCode.E_INVALID_REQUEST),
            ({"preference_payload": ["not", "a", "dict"]}, ApiErrorCode.E_INVALID_REQUEST),
        ],
    )
    def test_validation(self, db_session: Session, overrides, code):
        household = create_household(db_session)
        payload = make_enqueue_payload(
            household.home_id, household.author_id, household.recipient_id, **overrides
        )
        with pytest.raises(InvalidRequestError) as exc:
            enqueue_rewrite(db_session, payload)
        assert exc.value.code == code
        assert fetch_request(db_session, payload.rewrite_request_id) is None

    def test_text_at_limit_accepted(self, db_session: Session):
        result = enqueue_request(db_session, original_text="y" * 500)
        assert result.inserted_request is True


# =============================================================================
# Submit side
# =============================================================================


class TestSubmitClaims:
    def test_claim_for_submit_increments_attempts(self, db_session: Session):
        result = enqueue_request(db_session)

        claimed = claim_jobs_for_submit(db_session, worker_id="submitter-a", limit=10)

        assert [job.job_id for job in claimed] == [result.job_id]
        assert claimed[0].routing_decision["provider"] == "openai"
        job = fetch_job(db_session, result.job_id)
        assert job.status == RewriteJobStatus.processing
        assert job.claimed_by == "submitter-a"
        assert job.attempt_count == 1

    def test_claim_skips_not_before_and_linked_jobs(self, db_session: Session):
        delayed = enqueue_request(db_session)
        linked = enqueue_request(db_session)
        db_session.execute(
            update(jobs)
            .where(jobs.c.job_id == delayed.job_id)
            .values(not_before_at=utc_now() + timedelta(minutes=5))
        )
        register_batch(db_session, "batch-linked", "file-in", 1)
        db_session.execute(
            update(jobs)
            .where(jobs.c.job_id == linked.job_id)
            .values(provider_batch_id="batch-linked")
        )

        assert claim_jobs_for_submit(db_session, limit=10) == []

    def test_zero_limit_claims_nothing(self, db_session: Session):
        enqueue_request(db_session)
        assert claim_jobs_for_submit(db_session, limit=0) == []

    def test_mark_batch_submitted(self, db_session: Session):
        result = enqueue_request(db_session)
        batch_id = _submit(db_session, [result.job_id])

        job = fetch_job(db_session, result.job_id)
        assert job.status == RewriteJobStatus.batch_submitted
        assert job.provider_batch_id == batch_id
        assert job.submitted_at is not None

    def test_requeue_after_submit_failure(self, db_session: Session):
        result = enqueue_request(db_session)
        claim_jobs_for_submit(db_session, limit=10)

        count = requeue_jobs_after_submit_failure(
            db_session, [result.job_id], "openai_batch_submit_failed", backoff_seconds=1
        )

        assert count == 1
        job = fetch_job(db_session, result.job_id)
        assert job.status == RewriteJobStatus.queued
        assert job.claimed_by is None
        assert job.last_error == "openai_batch_submit_failed"
        assert job.not_before_at >= utc_now() + timedelta(seconds=29)


# =============================================================================
# Collect side
# =============================================================================


class TestCollectClaims:
    def test_claim_for_collect_flips_request_to_processing(self, db_session: Session):
        result = enqueue_request(db_session)
        _submit(db_session, [result.job_id])

        claimed = claim_jobs_for_collect(db_session, worker_id="collector-a", limit=10)

        assert [job.job_id for job in claimed] == [result.job_id]
        assert fetch_job(db_session, result.job_id).status == RewriteJobStatus.processing
        request = fetch_request(db_session, result.rewrite_request_id)
        assert request.status == RewriteRequestStatus.processing

    def test_claim_by_ids_requires_batch_submitted(self, db_session: Session):
        result = enqueue_request(db_session)
        assert claim_jobs_for_collect(db_session, job_ids=[result.job_id]) == []
        assert claim_jobs_for_collect(db_session, job_ids=[]) == []

    def test_complete_job_writes_output_and_folds(self, db_session: Session):
        result = enqueue_request(db_session)
        _to_processing(db_session, [result.job_id])

        status = complete_job(
            db_session,
            result.job_id,
            result.rewrite_request_id,
            fetch_job(db_session, result.job_id).recipient_user_id,
            _output(),
        )

        assert status == RewriteRequestStatus.completed
        assert fetch_job(db_session, result.job_id).status == RewriteJobStatus.completed
        request = fetch_request(db_session, result.rewrite_request_id)
        assert request.rewrite_completed_at is not None
        outputs = list_request_outputs(db_session, result.rewrite_request_id)
        assert len(outputs) == 1
        assert outputs[0].rewritten_text.startswith("Could you please")
        assert outputs[0].lexicon_version == "complaint_rewrite_lexicon_v1"

    def test_complete_requires_processing(self, db_session: Session):
        result = enqueue_request(db_session)
        job = fetch_job(db_session, result.job_id)

        with pytest.raises(JobMismatchError) as exc:
            complete_job(
                db_session,
                result.job_id,
                result.rewrite_request_id,
                job.recipient_user_id,
                _output(),
            )
        assert exc.value.code == ApiErrorCode.E_JOB_MISMATCH

    def test_complete_requires_matching_recipient(self, db_session: Session):
        result = enqueue_request(db_session)
        _to_processing(db_session, [result.job_id])

        with pytest.raises(JobMismatchError):
            complete_job(
                db_session, result.job_id, result.rewrite_request_id, uuid4(), _output()
            )
        assert fetch_job(db_session, result.job_id).status == RewriteJobStatus.processing

    def test_complete_rejects_wrong_language(self, db_session: Session):
        result = enqueue_request(db_session, target_locale="pt-BR")
        _to_processing(db_session, [result.job_id])
        job = fetch_job(db_session, result.job_id)

        with pytest.raises(LanguageMismatchError) as exc:
            complete_job(
                db_session,
                result.job_id,
                result.rewrite_request_id,
                job.recipient_user_id,
                _output(output_language="en", target_locale="pt-BR"),
            )
        assert exc.value.code == ApiErrorCode.E_LANG_MISMATCH
        assert list_request_outputs(db_session, result.rewrite_request_id) == []

    def test_complete_accepts_region_variants(self, db_session: Session):
        result = enqueue_request(db_session, target_locale="pt-BR")
        _to_processing(db_session, [result.job_id])
        job = fetch_job(db_session, result.job_id)

        status = complete_job(
            db_session,
            result.job_id,
            result.rewrite_request_id,
            job.recipient_user_id,
            _output(output_language="pt", target_locale="pt-BR"),
        )
        assert status == RewriteRequestStatus.completed


# =============================================================================
# Failures and folding
# =============================================================================


class TestFailuresAndFolding:
    def test_fail_or_requeue_with_attempts_left(self, db_session: Session):
        result = enqueue_request(db_session)
        _to_processing(db_session, [result.job_id])

        status = fail_or_requeue_job(db_session, result.job_id, "empty_rewrite", 5)

        assert status == RewriteJobStatus.queued
        job = fetch_job(db_session, result.job_id)
        assert job.provider_batch_id is None
        assert job.submitted_at is None
        assert job.claimed_at is None
        assert job.last_error == "empty_rewrite"
        assert job.not_before_at >= utc_now() + timedelta(seconds=29)

    def test_fail_or_requeue_exhausted_fails_request(self, db_session: Session):
        result = enqueue_request(db_session, max_attempts=1)
        _to_processing(db_session, [result.job_id])

        status = fail_or_requeue_job(db_session, result.job_id, "provider_item_error")

        assert status == RewriteJobStatus.failed
        request = fetch_request(db_session, result.rewrite_request_id)
        assert request.status == RewriteRequestStatus.failed
        assert request.rewrite_completed_at is not None

    def test_fail_or_requeue_terminal_job_returns_none(self, db_session: Session):
        result = enqueue_request(db_session)
        assert fail_job(db_session, result.job_id, "bad") is True
        assert fail_or_requeue_job(db_session, result.job_id, "again") is None
        assert fail_job(db_session, result.job_id, "again") is False

    def test_two_attempt_budget_then_fail(self, db_session: Session):
        result = enqueue_request(db_session)

        _to_processing(db_session, [result.job_id])
        assert fail_or_requeue_job(db_session, result.job_id, "empty") == RewriteJobStatus.queued

        db_session.execute(
            update(jobs)
            .where(jobs.c.job_id == result.job_id)
            .values(not_before_at=utc_now() - timedelta(seconds=1))
        )
        _to_processing(db_session, [result.job_id])
        assert fetch_job(db_session, result.job_id).attempt_count == 2
        assert fail_or_requeue_job(db_session, result.job_id, "empty") == RewriteJobStatus.failed

    def test_multi_job_fold(self, db_session: Session):
        household = create_household(db_session)
        request_id = uuid4()
        first = enqueue_rewrite(
            db_session,
            make_enqueue_payload(
                household.home_id, household.author_id, household.recipient_id, request_id
            ),
        )
        second_recipient = uuid4()
        second = enqueue_rewrite(
            db_session,
            make_enqueue_payload(
                household.home_id, household.author_id, second_recipient, request_id
            ),
        )
        assert second.inserted_request is False
        assert second.inserted_job is True

        _to_processing(db_session, [first.job_id, second.job_id])

        status = complete_job(
            db_session, first.job_id, request_id, household.recipient_id, _output()
        )
        assert status == RewriteRequestStatus.processing
        assert fetch_request(db_session, request_id).rewrite_completed_at is None

        fail_job(db_session, second.job_id, "eval_failed:blame")
        request = fetch_request(db_session, request_id)
        assert request.status == RewriteRequestStatus.failed
        assert request.rewrite_completed_at is not None

    def test_finalize_missing_request(self, db_session: Session):
        assert finalize_request(db_session, uuid4()) is None

    def test_requeue_by_provider_batch(self, db_session: Session):
        a = enqueue_request(db_session)
        b = enqueue_request(db_session)
        batch_id = _submit(db_session, [a.job_id, b.job_id])

        requeued = requeue_jobs_by_provider_batch(
            db_session, batch_id, reason="output_download_failed", backoff_seconds=1800
        )

        assert {r.job_id for r in requeued} == {a.job_id, b.job_id}
        for item in requeued:
            assert item.prev_status == RewriteJobStatus.batch_submitted
            assert item.new_status == RewriteJobStatus.queued
        job = fetch_job(db_session, a.job_id)
        assert job.provider_batch_id is None
        assert job.last_error == f"output_download_failed: batch={batch_id}"
        assert job.attempt_count == 1

    def test_requeue_by_provider_batch_requires_id(self, db_session: Session):
        with pytest.raises(ValueError):
            requeue_jobs_by_provider_batch(db_session, "  ")


# =============================================================================
# Concurrency
# =============================================================================


class TestClaimExclusivity:
    """Concurrent claimers never receive the same job."""

    JOB_COUNT = 10

    def _seed_jobs(self, direct_db: DirectSessionManager) -> list[UUID]:
        with direct_db.session() as session:
            household = create_household(session)
            direct_db.register_cleanup("homes", "id", household.home_id)
            direct_db.register_cleanup("memberships", "home_id", household.home_id)
            direct_db.register_cleanup("complaint_rewrite_requests", "home_id", household.home_id)
            direct_db.register_cleanup("recipient_snapshots", "home_id", household.home_id)

            job_ids = []
            for _ in range(self.JOB_COUNT):
                result = enqueue_request(session, household)
                direct_db.register_cleanup(
                    "recipient_preference_snapshots",
                    "rewrite_request_id",
                    result.rewrite_request_id,
                )
                direct_db.register_cleanup(
                    "complaint_rewrite_jobs", "rewrite_request_id", result.rewrite_request_id
                )
                job_ids.append(result.job_id)
            session.commit()
        return job_ids

    def test_concurrent_submit_claims_are_disjoint(self, direct_db: DirectSessionManager):
        job_ids = self._seed_jobs(direct_db)
        barrier = threading.Barrier(2)
        claimed: dict[str, list[UUID]] = {}
        errors: list[BaseException] = []

        def worker(worker_id: str) -> None:
            try:
                barrier.wait(timeout=10)
                with direct_db.session() as session:
                    claimed_jobs = claim_jobs_for_submit(session, worker_id=worker_id, limit=6)
                    session.commit()
                claimed[worker_id] = [job.job_id for job in claimed_jobs]
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        first, second = claimed["w0"], claimed["w1"]
        assert set(first).isdisjoint(second)
        assert set(first) | set(second) <= set(job_ids)
        assert len(first) + len(second) == self.JOB_COUNT

        with direct_db.session() as session:
            rows = session.execute(
                select(jobs.c.claimed_by, jobs.c.attempt_count).where(jobs.c.job_id.in_(job_ids))
            ).all()
        assert all(row.attempt_count == 1 for row in rows)
        assert {row.claimed_by for row in rows} == {"w0", "w1"}

    def test_concurrent_collect_claims_are_disjoint(self, direct_db: DirectSessionManager):
        job_ids = self._seed_jobs(direct_db)
        batch_id = f"batch-{uuid4().hex[:8]}"
        direct_db.register_cleanup("rewrite_provider_batches", "provider_batch_id", batch_id)
        with direct_db.session() as session:
            _submit(session, job_ids, batch_id)
            session.commit()

        worker_ids = [f"c{i}" for i in range(3)]
        barrier = threading.Barrier(len(worker_ids))
        claimed: dict[str, list[UUID]] = {}
        errors: list[BaseException] = []

        def worker(worker_id: str) -> None:
            try:
                barrier.wait(timeout=10)
                with direct_db.session() as session:
                    claimed_jobs = claim_jobs_for_collect(session, worker_id=worker_id, limit=4)
                    session.commit()
                claimed[worker_id] = [job.job_id for job in claimed_jobs]
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(w,)) for w in worker_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        all_claimed = [job_id for w in worker_ids for job_id in claimed[w]]
        assert len(all_claimed) == len(set(all_claimed))
        assert set(all_claimed) == set(job_ids)

        with direct_db.session() as session:
            rows = session.execute(
                select(jobs.c.job_id, jobs.c.status, jobs.c.claimed_by, jobs.c.attempt_count)
                .where(jobs.c.job_id.in_(job_ids))
            ).all()
        owner = {job_id: w for w in worker_ids for job_id in claimed[w]}
        for row in rows:
            assert row.status == RewriteJobStatus.processing
            assert row.claimed_by == owner[row.job_id]
            assert row.attempt_count == 1
