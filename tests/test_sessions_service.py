from __future__ import annotations

import unittest
from datetime import date, datetime
from unittest.mock import patch

from db_support import DatabaseTestCase, utc

from worktime.errors import ConfirmationRequiredError, ConflictError, NotFoundError, ValidationError
from worktime.models import SessionStatus, UserMonthlyStat, WorkSession
from worktime.services.monthly_stats import get_user_stat
from worktime.services import sessions as sessions_service
from worktime.services.sessions import (
    WARNING_BACKDATED,
    clock_in,
    clock_out,
    get_active_session,
    get_today_session,
    list_history,
    list_month_sessions,
)
from worktime.services.storage import commit_or_raise

# 2026-02-02 18:00 in Moscow.
NOW = utc(2026, 2, 2, 15, 0)


class ClockInTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.make_user(555)

    def test_clock_in_opens_active_session_for_local_day(self) -> None:
        result = clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)

        session = result.session
        self.assertEqual(session.status, SessionStatus.ACTIVE)
        self.assertEqual(session.day_date, date(2026, 2, 2))
        self.assertEqual(session.required_minutes, 520)
        self.assertIsNone(session.clock_out_at)
        self.assertEqual(result.warnings, [])
        self.assertEqual(get_active_session(self.db, self.user.id).id, session.id)
        self.assertEqual(get_today_session(self.db, self.user.id, now_utc=NOW).id, session.id)

    def test_required_minutes_come_from_schedule_or_override(self) -> None:
        self.make_schedule(2026, 2, work_days=19, minutes_per_day=480)
        result = clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)
        self.assertEqual(result.session.required_minutes, 480)

        other = self.make_user(556)
        result = clock_in(
            self.db,
            user_id=other.id,
            at=datetime(2026, 2, 2, 9, 0),
            required_minutes=300,
            now_utc=NOW,
        )
        self.assertEqual(result.session.required_minutes, 300)

    def test_second_clock_in_is_rejected(self) -> None:
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)
        with self.assertRaises(ConflictError) as ctx:
            clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 10, 0), now_utc=NOW)
        self.assertEqual(ctx.exception.code, "ALREADY_ACTIVE")
        self.assertEqual(self.db.query(WorkSession).count(), 1)

    def test_same_day_after_clock_out_is_a_date_conflict(self) -> None:
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)
        clock_out(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 12, 0), now_utc=NOW)
        with self.assertRaises(ConflictError) as ctx:
            clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 13, 0), now_utc=NOW)
        self.assertEqual(ctx.exception.code, "DATE_CONFLICT")

    def test_future_timestamp_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 19, 0), now_utc=NOW)
        self.assertEqual(ctx.exception.code, "FUTURE_TIMESTAMP")

    def test_clock_in_before_epoch_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            clock_in(self.db, user_id=self.user.id, at=datetime(2025, 12, 31, 9, 0), now_utc=NOW)
        self.assertEqual(ctx.exception.code, "BEFORE_EPOCH")

    def test_clock_in_on_non_working_day_is_rejected(self) -> None:
        self.add_non_working_days(date(2026, 2, 1))
        with self.assertRaises(ValidationError) as ctx:
            clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 1, 9, 0), now_utc=NOW)
        self.assertEqual(ctx.exception.code, "NON_WORKING_DAY")

    def test_backdated_clock_in_is_accepted_with_warning(self) -> None:
        result = clock_in(
            self.db,
            user_id=self.user.id,
            at=datetime(2026, 1, 29, 9, 0),
            now_utc=NOW,
        )
        self.assertEqual(result.warnings, [WARNING_BACKDATED])
        self.assertEqual(result.session.day_date, date(2026, 1, 29))

    def test_storage_rejects_second_active_session(self) -> None:
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)
        self.db.add(
            WorkSession(
                user_id=self.user.id,
                day_date=date(2026, 2, 3),
                clock_in_at=utc(2026, 2, 3, 6, 0),
                required_minutes=520,
                status=SessionStatus.ACTIVE,
            )
        )
        with self.assertRaises(ConflictError) as ctx:
            commit_or_raise(self.db, conflict_code="ALREADY_ACTIVE", conflict_message="Already active.")
        self.assertEqual(ctx.exception.code, "ALREADY_ACTIVE")
        self.assertEqual(self.db.query(WorkSession).count(), 1)

    def test_concurrent_day_record_is_reported_as_date_conflict(self) -> None:
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)
        clock_out(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 12, 0), now_utc=NOW)
        existing = sessions_service.get_session_for_day(self.db, self.user.id, date(2026, 2, 2))
        # The first lookup runs before the competing write becomes visible.
        with patch.object(
            sessions_service,
            "get_session_for_day",
            side_effect=[None, existing],
        ):
            with self.assertRaises(ConflictError) as ctx:
                clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 13, 0), now_utc=NOW)
        self.assertEqual(ctx.exception.code, "DATE_CONFLICT")
        self.assertEqual(self.db.query(WorkSession).count(), 1)

    def test_concurrent_active_session_is_reported_as_already_active(self) -> None:
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 1, 9, 0), now_utc=NOW)
        real_active = sessions_service.get_active_session(self.db, self.user.id)
        with patch.object(sessions_service, "get_active_session", side_effect=[None, real_active]):
            with self.assertRaises(ConflictError) as ctx:
                clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)
        self.assertEqual(ctx.exception.code, "ALREADY_ACTIVE")
        self.assertEqual(self.db.query(WorkSession).count(), 1)


class ClockOutTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.make_user(555)

    def test_clock_out_closes_session_and_updates_month(self) -> None:
        self.make_schedule(2026, 2, work_days=1, minutes_per_day=520)
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)

        result = clock_out(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 17, 30), now_utc=NOW)

        session = result.session
        self.assertEqual(session.status, SessionStatus.COMPLETED)
        self.assertEqual(session.worked_minutes, 510)
        self.assertEqual(session.diff_minutes, -10)
        self.assertIsNone(get_active_session(self.db, self.user.id))

        self.drain_jobs()
        stat = get_user_stat(self.db, user_id=self.user.id, year=2026, month=2)
        self.assertEqual(stat.worked_days, 1)
        self.assertEqual(stat.worked_minutes, 510)
        self.assertEqual(stat.planned_minutes, 520)
        self.assertEqual(stat.deficit_minutes, 10)
        self.assertEqual(stat.overtime_minutes, 0)

    def test_clock_out_without_active_session(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            clock_out(self.db, user_id=self.user.id, now_utc=NOW)
        self.assertEqual(ctx.exception.code, "NO_ACTIVE_SESSION")

    def test_clock_out_before_clock_in_is_rejected(self) -> None:
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)
        with self.assertRaises(ValidationError) as ctx:
            clock_out(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 8, 59), now_utc=NOW)
        self.assertEqual(ctx.exception.code, "TIME_BEFORE_CLOCK_IN")
        self.assertEqual(get_active_session(self.db, self.user.id).status, SessionStatus.ACTIVE)

    def test_clock_out_on_non_working_day_needs_confirmation(self) -> None:
        self.add_non_working_days(date(2026, 2, 21))
        now = utc(2026, 2, 21, 9, 0)
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 20, 22, 0), now_utc=now)

        with self.assertRaises(ConfirmationRequiredError) as ctx:
            clock_out(self.db, user_id=self.user.id, at=datetime(2026, 2, 21, 1, 0), now_utc=now)
        self.assertEqual(ctx.exception.code, "NON_WORKING_DAY_CONFIRMATION_REQUIRED")
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertIsNotNone(get_active_session(self.db, self.user.id))

        result = clock_out(
            self.db,
            user_id=self.user.id,
            at=datetime(2026, 2, 21, 1, 0),
            confirm_non_working_day=True,
            now_utc=now,
        )
        self.assertEqual(result.session.worked_minutes, 180)
        self.assertEqual(result.session.day_date, date(2026, 2, 20))

    def test_active_session_does_not_count_toward_stats(self) -> None:
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, 2, 9, 0), now_utc=NOW)
        self.drain_jobs()
        self.assertEqual(self.db.query(UserMonthlyStat).filter_by(user_id=self.user.id, month=2).count(), 0)

    def test_history_and_month_listing(self) -> None:
        for day in (2, 3, 4):
            now = utc(2026, 2, day, 15, 0)
            clock_in(self.db, user_id=self.user.id, at=datetime(2026, 2, day, 9, 0), now_utc=now)
            clock_out(self.db, user_id=self.user.id, at=datetime(2026, 2, day, 17, 0), now_utc=now)

        history = list_history(self.db, self.user.id, limit=2)
        self.assertEqual([item.day_date.day for item in history], [4, 3])
        month = list_month_sessions(self.db, self.user.id, year=2026, month=2)
        self.assertEqual([item.day_date.day for item in month], [2, 3, 4])
        self.assertEqual(list_month_sessions(self.db, self.user.id, year=2026, month=3), [])


if __name__ == "__main__":
    unittest.main()
