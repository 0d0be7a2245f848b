"""Claim-with-timeout queue semantics."""

from datetime import timedelta

from sqlalchemy import select, update

from orderpipe.common.db import utcnow
from orderpipe.common.models import Job
from orderpipe.common.queue import claim_next_job, complete_job, enqueue_job, fail_job


def _enqueue(session_factory, key, job_type="finalize_order", priority=5, max_attempts=3):
    with session_factory() as db:
        return enqueue_job(db, job_type, {"payment_intent_id": key}, key, priority=priority, max_attempts=max_attempts)


def _job(session_factory, key):
    with session_factory() as db:
        return db.execute(select(Job).where(Job.idempotency_key == key)).scalar_one()


def test_duplicate_idempotency_key_is_not_enqueued_twice(session_factory):
    assert _enqueue(session_factory, "payment_esewa_TXN123") is True
    assert _enqueue(session_factory, "payment_esewa_TXN123") is False

    with session_factory() as db:
        assert len(db.execute(select(Job)).scalars().all()) == 1


def test_claim_prefers_higher_priority(session_factory):
    _enqueue(session_factory, "refund_1", job_type="process_refund", priority=3)
    _enqueue(session_factory, "payment_esewa_1", priority=1)

    with session_factory() as db:
        job = claim_next_job(db, "worker_a")

    assert job.idempotency_key == "payment_esewa_1"
    assert job.status == "processing"
    assert job.locked_by == "worker_a"


def test_claimed_job_is_invisible_to_other_workers(session_factory):
    _enqueue(session_factory, "payment_esewa_1")

    with session_factory() as db:
        first = claim_next_job(db, "worker_a")
    with session_factory() as db:
        second = claim_next_job(db, "worker_b")

    assert first is not None
    assert second is None


def test_claim_can_filter_by_job_type(session_factory):
    _enqueue(session_factory, "payment_esewa_1")

    with session_factory() as db:
        assert claim_next_job(db, "worker_a", job_type="process_refund") is None


def test_expired_lock_is_reclaimed_and_old_owner_is_fenced(session_factory):
    _enqueue(session_factory, "payment_esewa_1")
    with session_factory() as db:
        stale = claim_next_job(db, "worker_a")
    with session_factory() as db:
        db.execute(update(Job).values(locked_until=utcnow() - timedelta(seconds=1)))
        db.commit()

    with session_factory() as db:
        reclaimed = claim_next_job(db, "worker_b")
    assert reclaimed.id == stale.id
    assert reclaimed.locked_by == "worker_b"

    with session_factory() as db:
        assert complete_job(db, stale, "worker_a") is False
    with session_factory() as db:
        assert complete_job(db, reclaimed, "worker_b") is True

    job = _job(session_factory, "payment_esewa_1")
    assert job.status == "completed"
    assert job.locked_by is None


def test_retryable_failure_returns_to_pending_until_attempts_run_out(session_factory):
    _enqueue(session_factory, "payment_esewa_1", max_attempts=2)

    with session_factory() as db:
        job = claim_next_job(db, "worker_a")
    with session_factory() as db:
        assert fail_job(db, job, "worker_a", "inventory changed", retryable=True) == "pending"

    with session_factory() as db:
        job = claim_next_job(db, "worker_a")
    assert job.attempts == 1
    with session_factory() as db:
        assert fail_job(db, job, "worker_a", "inventory changed", retryable=True) == "failed"

    job = _job(session_factory, "payment_esewa_1")
    assert job.status == "failed"
    assert job.attempts == 2
    assert job.last_error == "inventory changed"
    assert job.failed_at is not None


def test_permanent_failure_is_terminal_immediately(session_factory):
    _enqueue(session_factory, "payment_esewa_1")

    with session_factory() as db:
        job = claim_next_job(db, "worker_a")
    with session_factory() as db:
        assert fail_job(db, job, "worker_a", "Invalid transition", retryable=False) == "failed"
    with session_factory() as db:
        assert claim_next_job(db, "worker_a") is None
