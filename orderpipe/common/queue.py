"""Durable job queue helpers backed by the `job_queue` table.

Claiming follows the claim-with-timeout pattern: a worker takes the oldest
pending row (or a processing row whose lock expired) by stamping `locked_by`
and `locked_until`. The candidate read uses `FOR UPDATE SKIP LOCKED` where the
engine supports it, and the claim itself is a compare-and-set UPDATE, so at
most one worker holds a job on any SQL engine.
"""

from datetime import timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from orderpipe.common.db import as_utc, utcnow
from orderpipe.common.logging import logger
from orderpipe.common.metrics import job_queue_oldest_pending_age_seconds, job_queue_pending_total
from orderpipe.common.models import Job
from orderpipe.common.state_machine import JOB_TRANSITIONS, validate_transition

JOB_TYPES = ("finalize_order", "handle_payment_failure", "process_refund")

# Claim attempts per call when another worker wins the compare-and-set.
_CLAIM_RACE_RETRIES = 5


def _claimable(now):
    return or_(
        Job.status == "pending",
        (Job.status == "processing") & (Job.locked_until.is_not(None)) & (Job.locked_until < now),
    )


def enqueue_job(
    db,
    job_type: str,
    payload: dict,
    idempotency_key: str,
    priority: int = 5,
    max_attempts: int = 3,
    commit: bool = True,
) -> bool:
    """Insert one job and commit. Returns False when the key already exists.

    A duplicate key means another notification or sweep already queued the same
    work, which is not an error. With `commit=False` the row joins the caller's
    transaction and a duplicate key surfaces as `IntegrityError` at its commit.
    """

    if job_type not in JOB_TYPES:
        raise ValueError(f"unknown job_type {job_type}")
    db.add(
        Job(
            job_type=job_type,
            payload=payload,
            idempotency_key=idempotency_key,
            priority=priority,
            max_attempts=max_attempts,
            status="pending",
        )
    )
    if not commit:
        return True
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("duplicate job skipped idempotency_key=%s", idempotency_key)
        return False
    logger.info("job enqueued job_type=%s idempotency_key=%s", job_type, idempotency_key)
    return True


def claim_next_job(db, worker_id: str, lock_timeout_seconds: int = 30, job_type: str | None = None) -> Job | None:
    """Atomically claim the next runnable job for `worker_id`, or return None."""

    for _ in range(_CLAIM_RACE_RETRIES):
        now = utcnow()
        query = (
            select(Job.id)
            .where(_claimable(now))
            .order_by(Job.priority, Job.created_at, Job.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if job_type:
            query = query.where(Job.job_type == job_type)
        candidate_id = db.execute(query).scalar_one_or_none()
        if candidate_id is None:
            db.rollback()
            return None

        result = db.execute(
            update(Job)
            .where(Job.id == candidate_id, _claimable(now))
            .values(
                status="processing",
                locked_by=worker_id,
                locked_until=now + timedelta(seconds=lock_timeout_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Another worker claimed it between our read and write.
            db.rollback()
            continue
        db.commit()
        job = db.get(Job, candidate_id, populate_existing=True)
        logger.info("job claimed job_id=%s job_type=%s worker_id=%s", job.id, job.job_type, worker_id)
        return job
    return None


def _fenced_update(db, job: Job, worker_id: str, new_status: str, **values) -> bool:
    validate_transition("processing", new_status, JOB_TRANSITIONS)
    result = db.execute(
        update(Job)
        .where(Job.id == job.id, Job.status == "processing", Job.locked_by == worker_id)
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning(
            "job lock lost before finish job_id=%s worker_id=%s target_status=%s", job.id, worker_id, new_status
        )
        return False
    db.commit()
    job.status = new_status
    for key, value in values.items():
        setattr(job, key, value)
    return True


def complete_job(db, job: Job, worker_id: str) -> bool:
    """Mark a claimed job completed. No-op (False) if the lock was reclaimed."""

    return _fenced_update(
        db,
        job,
        worker_id,
        "completed",
        completed_at=utcnow(),
        locked_by=None,
        locked_until=None,
        last_error=None,
    )


def fail_job(db, job: Job, worker_id: str, error: str, retryable: bool) -> str | None:
    """Record one failed attempt and return the resulting status.

    Retryable failures go back to `pending` until `max_attempts` is reached;
    everything else is terminal `failed`. Returns None if the lock was lost.
    """

    attempts = (job.attempts or 0) + 1
    if retryable and attempts < job.max_attempts:
        ok = _fenced_update(
            db, job, worker_id, "pending", attempts=attempts, last_error=error, locked_by=None, locked_until=None
        )
        return "pending" if ok else None
    ok = _fenced_update(
        db,
        job,
        worker_id,
        "failed",
        attempts=attempts,
        last_error=error,
        failed_at=utcnow(),
        locked_by=None,
        locked_until=None,
    )
    return "failed" if ok else None


def update_queue_backlog_metrics(db, service_name: str) -> None:
    """Update gauges for unfinished job depth and oldest unfinished age."""

    unfinished = ("pending", "processing")
    pending_count = db.execute(
        select(func.count()).select_from(Job).where(Job.status.in_(unfinished))
    ).scalar_one()
    oldest = as_utc(db.execute(select(func.min(Job.created_at)).where(Job.status.in_(unfinished))).scalar_one())
    age_seconds = 0.0
    if oldest is not None:
        age_seconds = max(0.0, (utcnow() - oldest).total_seconds())
    job_queue_pending_total.labels(service=service_name).set(float(pending_count))
    job_queue_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
