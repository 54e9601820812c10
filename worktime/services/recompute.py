"""Persistent queue of monthly statistics recomputations.

Writers enqueue a job inside the same transaction as the change that makes a
stats row stale, so the intent survives a crash between commit and recompute.
Jobs are replayed until they succeed: every handler re-derives its rows from
sessions and schedules, so running a job twice is harmless.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from worktime.db import SessionLocal
from worktime.models import StatRecomputeJob, WorkSchedule
from worktime.services import monthly_stats
from worktime.settings import get_settings

JOB_TYPE_USER_MONTH = "USER_MONTH"
JOB_TYPE_SCHEDULE_MONTH = "SCHEDULE_MONTH"
JOB_TYPE_USER_SEED = "USER_SEED"

JOB_STATUS_PENDING = "PENDING"
JOB_STATUS_RUNNING = "RUNNING"
JOB_STATUS_DONE = "DONE"
JOB_STATUS_FAILED = "FAILED"

logger = logging.getLogger("worktime.recompute")


def _build_idempotency_key(*, job_type: str, user_id: int | None, year: int | None, month: int | None) -> str:
    return f"{job_type}:{user_id if user_id is not None else '*'}:{year or '*'}:{month or '*'}"


def _pending_job_in_session(db: Session, idempotency_key: str) -> StatRecomputeJob | None:
    # Only jobs of this unit of work are reused: a stored pending job may already
    # be running against data from before this change.
    for candidate in db.new:
        if isinstance(candidate, StatRecomputeJob) and candidate.idempotency_key == idempotency_key:
            return candidate
    return None


def enqueue_job(
    db: Session,
    *,
    job_type: str,
    user_id: int | None = None,
    year: int | None = None,
    month: int | None = None,
) -> StatRecomputeJob:
    """Add a job to the caller's unit of work without committing it."""
    idempotency_key = _build_idempotency_key(job_type=job_type, user_id=user_id, year=year, month=month)
    existing = _pending_job_in_session(db, idempotency_key)
    if existing is not None:
        return existing

    job = StatRecomputeJob(
        job_type=job_type,
        user_id=user_id,
        year=year,
        month=month,
        status=JOB_STATUS_PENDING,
        attempts=0,
        last_error=None,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    return job


def enqueue_user_month(db: Session, *, user_id: int, day: date) -> StatRecomputeJob:
    return enqueue_job(db, job_type=JOB_TYPE_USER_MONTH, user_id=user_id, year=day.year, month=day.month)


def enqueue_user_months(db: Session, *, user_id: int, days: list[date]) -> list[StatRecomputeJob]:
    months = sorted({(item.year, item.month) for item in days})
    return [
        enqueue_job(db, job_type=JOB_TYPE_USER_MONTH, user_id=user_id, year=year, month=month)
        for year, month in months
    ]


def enqueue_schedule_month(db: Session, *, year: int, month: int) -> StatRecomputeJob:
    return enqueue_job(db, job_type=JOB_TYPE_SCHEDULE_MONTH, year=year, month=month)


def enqueue_user_seed(db: Session, *, user_id: int) -> StatRecomputeJob:
    return enqueue_job(db, job_type=JOB_TYPE_USER_SEED, user_id=user_id)


def _run_job(db: Session, job: StatRecomputeJob) -> None:
    if job.job_type == JOB_TYPE_USER_MONTH:
        if job.user_id is None or job.year is None or job.month is None:
            raise ValueError(f"USER_MONTH job {job.id} is missing user or month")
        monthly_stats.recompute_worked(db, user_id=job.user_id, year=job.year, month=job.month)
    elif job.job_type == JOB_TYPE_SCHEDULE_MONTH:
        schedule = db.scalar(
            select(WorkSchedule).where(
                WorkSchedule.year == job.year,
                WorkSchedule.month == job.month,
            )
        )
        # The schedule may have been deleted since; stats keep their last planned values.
        if schedule is not None:
            monthly_stats.fan_out_schedule_change(db, schedule)
    elif job.job_type == JOB_TYPE_USER_SEED:
        if job.user_id is None:
            raise ValueError(f"USER_SEED job {job.id} is missing user")
        monthly_stats.seed_for_new_user(db, user_id=job.user_id)
    else:
        raise ValueError(f"Unknown recompute job type: {job.job_type}")


def _mark_job_done(db: Session, job: StatRecomputeJob) -> None:
    job.status = JOB_STATUS_DONE
    job.attempts = (job.attempts or 0) + 1
    job.last_error = None
    job.completed_at = datetime.now(timezone.utc)
    db.commit()


def _mark_job_failure(db: Session, *, job_id: int, error: Exception) -> StatRecomputeJob | None:
    job = db.get(StatRecomputeJob, job_id)
    if job is None:
        return None
    # Another processor finished it after a stale claim was taken over.
    if job.status == JOB_STATUS_DONE:
        return job

    next_attempts = (job.attempts or 0) + 1
    job.attempts = next_attempts
    job.last_error = str(error)[:4000]
    if next_attempts >= max(1, get_settings().stats_job_max_attempts):
        job.status = JOB_STATUS_FAILED
    else:
        job.status = JOB_STATUS_PENDING
    db.commit()
    return job


def _claim_pending_jobs(db: Session, *, now_utc: datetime, limit: int) -> list[StatRecomputeJob]:
    """Move due jobs to RUNNING in one committed transaction.

    Rows locked by a concurrent processor are skipped. A RUNNING claim older
    than the claim timeout belongs to a processor that died and is taken over.
    """
    stale_before = now_utc - timedelta(seconds=max(1, get_settings().stats_job_claim_timeout_seconds))
    stmt = (
        select(StatRecomputeJob)
        .where(
            or_(
                StatRecomputeJob.status == JOB_STATUS_PENDING,
                and_(
                    StatRecomputeJob.status == JOB_STATUS_RUNNING,
                    StatRecomputeJob.updated_at < stale_before,
                ),
            )
        )
        .order_by(StatRecomputeJob.id.asc())
        .limit(max(1, limit))
        .with_for_update(skip_locked=True)
    )
    jobs = list(db.scalars(stmt).all())
    for job in jobs:
        job.status = JOB_STATUS_RUNNING
        job.updated_at = now_utc
    db.commit()
    return jobs


def process_pending_jobs(
    limit: int = 100,
    *,
    db: Session | None = None,
    now_utc: datetime | None = None,
) -> list[StatRecomputeJob]:
    if db is None:
        with SessionLocal() as managed_db:
            return process_pending_jobs(limit=limit, db=managed_db, now_utc=now_utc)

    claimed = _claim_pending_jobs(db, now_utc=now_utc or datetime.now(timezone.utc), limit=limit)

    processed: list[StatRecomputeJob] = []
    for job in claimed:
        job_id = job.id
        job_context = {
            "job_id": job_id,
            "job_type": job.job_type,
            "user_id": job.user_id,
            "year": job.year,
            "month": job.month,
        }
        try:
            _run_job(db, job)
            _mark_job_done(db, job)
            processed.append(job)
        except Exception as exc:
            db.rollback()
            logger.exception("stat_recompute_failed", extra=job_context)
            failed = _mark_job_failure(db, job_id=job_id, error=exc)
            if failed is not None:
                processed.append(failed)

    if processed:
        logger.info(
            "stat_recompute_batch_processed",
            extra={
                "processed": len(processed),
                "done": sum(1 for item in processed if item.status == JOB_STATUS_DONE),
            },
        )
    return processed


def dispatch_pending_jobs() -> None:
    """Background-task entry point: drain the queue after a response is sent.

    Failures stay queued for the periodic worker, so they are logged here only.
    """
    try:
        process_pending_jobs()
    except SQLAlchemyError:
        logger.exception("stat_recompute_dispatch_failed")


def count_jobs_by_status(db: Session) -> dict[str, int]:
    rows = db.execute(
        select(StatRecomputeJob.status, func.count(StatRecomputeJob.id)).group_by(StatRecomputeJob.status)
    ).all()
    counts = {JOB_STATUS_PENDING: 0, JOB_STATUS_RUNNING: 0, JOB_STATUS_DONE: 0, JOB_STATUS_FAILED: 0}
    for status, total in rows:
        counts[str(status)] = int(total)
    return counts
