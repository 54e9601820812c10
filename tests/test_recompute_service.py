from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import patch

from db_support import DatabaseTestCase, utc

from worktime.models import SessionStatus, StatRecomputeJob, UserMonthlyStat, WorkSession
from worktime.services.recompute import (
    JOB_STATUS_DONE,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_RUNNING,
    JOB_TYPE_SCHEDULE_MONTH,
    JOB_TYPE_USER_MONTH,
    count_jobs_by_status,
    enqueue_job,
    enqueue_schedule_month,
    enqueue_user_month,
    enqueue_user_months,
    _mark_job_failure,
    process_pending_jobs,
)
from worktime.services.sessions import clock_in, clock_out


class RecomputeQueueTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.make_user(555)

    def test_enqueue_deduplicates_within_one_transaction(self) -> None:
        first = enqueue_user_month(self.db, user_id=self.user.id, day=date(2026, 2, 2))
        second = enqueue_user_month(self.db, user_id=self.user.id, day=date(2026, 2, 20))
        self.assertIs(first, second)

        jobs = enqueue_user_months(
            self.db,
            user_id=self.user.id,
            days=[date(2026, 2, 27), date(2026, 3, 1), date(2026, 3, 2)],
        )
        self.assertEqual([(job.year, job.month) for job in jobs], [(2026, 2), (2026, 3)])
        self.assertIs(jobs[0], first)
        self.db.commit()
        self.assertEqual(self.db.query(StatRecomputeJob).count(), 2)

    def test_stored_pending_job_is_not_reused(self) -> None:
        enqueue_schedule_month(self.db, year=2026, month=2)
        self.db.commit()
        enqueue_schedule_month(self.db, year=2026, month=2)
        self.db.commit()
        self.assertEqual(
            self.db.query(StatRecomputeJob).filter_by(job_type=JOB_TYPE_SCHEDULE_MONTH).count(),
            2,
        )

    def test_jobs_are_replay_safe(self) -> None:
        self.make_schedule(2026, 2, work_days=1, minutes_per_day=520)
        now = utc(2026, 2, 2, 15, 0)
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=now)
        clock_out(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 17, 30), now_utc=now)

        for _ in range(3):
            enqueue_job(self.db, job_type=JOB_TYPE_USER_MONTH, user_id=self.user.id, year=2026, month=2)
            self.db.commit()
            self.drain_jobs()

        stat = self.db.query(UserMonthlyStat).filter_by(user_id=self.user.id, year=2026, month=2).one()
        self.assertEqual(stat.worked_minutes, 510)
        self.assertEqual(stat.deficit_minutes, 10)
        self.assertEqual(count_jobs_by_status(self.db)[JOB_STATUS_DONE], 4)

    def test_failed_job_is_retried_then_marked_failed(self) -> None:
        now = utc(2026, 2, 2, 15, 0)
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=now)
        clock_out(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 17, 30), now_utc=now)
        job = self.db.query(StatRecomputeJob).one()

        limited = SimpleNamespace(stats_job_max_attempts=2, stats_job_claim_timeout_seconds=600)
        with patch(
            "worktime.services.monthly_stats.recompute_worked",
            side_effect=RuntimeError("stats table locked"),
        ), patch("worktime.services.recompute.get_settings", return_value=limited):
            process_pending_jobs(db=self.db)
            self.db.refresh(job)
            self.assertEqual(job.status, JOB_STATUS_PENDING)
            self.assertEqual(job.attempts, 1)
            self.assertIn("stats table locked", job.last_error)

            process_pending_jobs(db=self.db)
            self.db.refresh(job)
            self.assertEqual(job.status, JOB_STATUS_FAILED)
            self.assertEqual(job.attempts, 2)

        # The clock-out itself stays committed.
        session = self.db.query(WorkSession).filter_by(user_id=self.user.id).one()
        self.assertEqual(session.status, SessionStatus.COMPLETED)
        self.assertEqual(process_pending_jobs(db=self.db), [])
        self.assertEqual(count_jobs_by_status(self.db), {"PENDING": 0, "RUNNING": 0, "DONE": 0, "FAILED": 1})

    def test_schedule_job_for_deleted_schedule_is_a_no_op(self) -> None:
        enqueue_schedule_month(self.db, year=2026, month=9)
        self.db.commit()
        processed = self.drain_jobs()
        self.assertEqual([job.status for job in processed], [JOB_STATUS_DONE])
        self.assertEqual(self.db.query(UserMonthlyStat).count(), 0)

    def test_unknown_job_type_fails(self) -> None:
        enqueue_job(self.db, job_type="MYSTERY")
        self.db.commit()
        processed = self.drain_jobs()
        self.assertEqual(processed[0].status, JOB_STATUS_PENDING)
        self.assertIn("MYSTERY", processed[0].last_error)

    def test_job_claimed_by_another_processor_is_skipped(self) -> None:
        job = enqueue_schedule_month(self.db, year=2026, month=2)
        self.db.commit()
        now = utc(2026, 2, 2, 12, 0)
        job.status = JOB_STATUS_RUNNING
        job.updated_at = now - timedelta(seconds=30)
        self.db.commit()

        self.assertEqual(process_pending_jobs(db=self.db, now_utc=now), [])
        self.db.refresh(job)
        self.assertEqual(job.status, JOB_STATUS_RUNNING)
        self.assertEqual(job.attempts, 0)
        self.assertEqual(count_jobs_by_status(self.db)[JOB_STATUS_RUNNING], 1)

    def test_stale_claim_is_taken_over(self) -> None:
        job = enqueue_schedule_month(self.db, year=2026, month=2)
        self.db.commit()
        now = utc(2026, 2, 2, 12, 0)
        job.status = JOB_STATUS_RUNNING
        job.updated_at = now - timedelta(hours=1)
        self.db.commit()

        processed = process_pending_jobs(db=self.db, now_utc=now)

        self.assertEqual([item.id for item in processed], [job.id])
        self.assertEqual(processed[0].status, JOB_STATUS_DONE)
        self.assertEqual(processed[0].attempts, 1)

    def test_failure_does_not_reopen_a_finished_job(self) -> None:
        job = enqueue_schedule_month(self.db, year=2026, month=2)
        self.db.commit()
        job.status = JOB_STATUS_DONE
        job.attempts = 1
        self.db.commit()

        result = _mark_job_failure(self.db, job_id=job.id, error=RuntimeError("duplicate stats row"))

        self.assertIs(result, job)
        self.db.refresh(job)
        self.assertEqual(job.status, JOB_STATUS_DONE)
        self.assertEqual(job.attempts, 1)
        self.assertIsNone(job.last_error)


if __name__ == "__main__":
    unittest.main()
