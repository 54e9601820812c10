from __future__ import annotations

import unittest
from datetime import date, datetime

from db_support import DatabaseTestCase, utc

from worktime.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from worktime.models import AbsenceKind, AbsencePeriod, AuditActorType, SessionKind, SessionStatus, WorkSession
from worktime.security import Actor, actor_for_user
from worktime.services.absences import (
    add_day_off,
    add_sick_leave,
    add_vacation,
    delete_absence,
    get_current_absence,
    list_for_user,
)
from worktime.services.monthly_stats import get_user_stat
from worktime.services.sessions import clock_in

JUNE_FIRST = utc(2026, 6, 1, 9, 0)


class AbsenceServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.make_user(555)

    def _sessions(self) -> list[WorkSession]:
        return list(
            self.db.query(WorkSession).filter_by(user_id=self.user.id).order_by(WorkSession.day_date.asc()).all()
        )

    def test_vacation_materializes_one_session_per_day(self) -> None:
        self.make_schedule(2026, 7, work_days=23, minutes_per_day=480)

        period = add_vacation(
            self.db,
            user_id=self.user.id,
            start=date(2026, 7, 1),
            end=date(2026, 7, 14),
            now_utc=JUNE_FIRST,
        )

        self.assertEqual(period.kind, AbsenceKind.VACATION)
        self.assertEqual(period.day_count, 14)
        rows = self._sessions()
        self.assertEqual(len(rows), 14)
        for row in rows:
            self.assertEqual(row.status, SessionStatus.ABSENT)
            self.assertEqual(row.kind, SessionKind.VACATION)
            self.assertEqual(row.worked_minutes, 480)
            self.assertEqual(row.required_minutes, 480)
            self.assertEqual(row.diff_minutes, 0)
            self.assertEqual(row.absence_period_id, period.id)
        # 09:00 local in Moscow.
        self.assertEqual(rows[0].clock_in_at.replace(tzinfo=None), datetime(2026, 7, 1, 6, 0))

        self.drain_jobs()
        stat = get_user_stat(self.db, user_id=self.user.id, year=2026, month=7)
        self.assertEqual(stat.worked_days, 14)
        self.assertEqual(stat.worked_minutes, 14 * 480)
        self.assertEqual(stat.planned_minutes, 23 * 480)

    def test_vacation_in_the_past_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            add_vacation(
                self.db,
                user_id=self.user.id,
                start=date(2026, 5, 20),
                end=date(2026, 5, 25),
                now_utc=JUNE_FIRST,
            )
        self.assertEqual(ctx.exception.code, "VACATION_IN_PAST")
        self.assertEqual(self._sessions(), [])

        add_sick_leave(self.db, user_id=self.user.id, start=date(2026, 5, 20), end=date(2026, 5, 22))
        with self.assertRaises(ValidationError):
            add_vacation(
                self.db,
                user_id=self.user.id,
                start=date(2026, 5, 21),
                end=date(2026, 5, 23),
                now_utc=JUNE_FIRST,
            )

    def test_inverted_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            add_sick_leave(self.db, user_id=self.user.id, start=date(2026, 3, 10), end=date(2026, 3, 9))
        self.assertEqual(ctx.exception.code, "INVALID_DATE_RANGE")

    def test_dates_outside_supported_years_are_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            add_day_off(self.db, user_id=self.user.id, day=date(9999, 12, 31))
        self.assertEqual(ctx.exception.code, "INVALID_DATE")

        with self.assertRaises(ValidationError) as ctx:
            add_sick_leave(self.db, user_id=self.user.id, start=date(1, 1, 1), end=date(1, 1, 3))
        self.assertEqual(ctx.exception.code, "INVALID_DATE")
        self.assertEqual(self._sessions(), [])
        self.assertEqual(self.db.query(AbsencePeriod).count(), 0)

    def test_overlap_leaves_no_partial_state(self) -> None:
        add_vacation(self.db, user_id=self.user.id, start=date(2026, 7, 1), end=date(2026, 7, 14), now_utc=JUNE_FIRST)

        with self.assertRaises(ConflictError) as ctx:
            add_sick_leave(self.db, user_id=self.user.id, start=date(2026, 7, 10), end=date(2026, 7, 20))
        self.assertEqual(ctx.exception.code, "ABSENCE_OVERLAP")
        self.assertEqual(len(self._sessions()), 14)
        self.assertEqual(self.db.query(AbsencePeriod).count(), 1)

    def test_absence_over_existing_work_session_is_rejected(self) -> None:
        clock_in(self.db, user_id=self.user.id, at=datetime(2026, 3, 3, 9, 0), now_utc=utc(2026, 3, 3, 12, 0))

        with self.assertRaises(ConflictError) as ctx:
            add_sick_leave(self.db, user_id=self.user.id, start=date(2026, 3, 2), end=date(2026, 3, 4))
        self.assertEqual(ctx.exception.code, "DATE_CONFLICT")
        self.assertEqual(len(self._sessions()), 1)

    def test_clock_in_on_absence_day_is_a_date_conflict(self) -> None:
        add_day_off(self.db, user_id=self.user.id, day=date(2026, 3, 3))
        with self.assertRaises(ConflictError) as ctx:
            clock_in(self.db, user_id=self.user.id, at=datetime(2026, 3, 3, 9, 0), now_utc=utc(2026, 3, 3, 12, 0))
        self.assertEqual(ctx.exception.code, "DATE_CONFLICT")

    def test_absence_covers_non_working_days(self) -> None:
        self.add_non_working_days(date(2026, 3, 7), date(2026, 3, 8))
        period = add_sick_leave(self.db, user_id=self.user.id, start=date(2026, 3, 6), end=date(2026, 3, 9))
        self.assertEqual(period.day_count, 4)
        self.assertEqual(len(self._sessions()), 4)

    def test_period_spanning_months_updates_both(self) -> None:
        add_sick_leave(self.db, user_id=self.user.id, start=date(2026, 3, 30), end=date(2026, 4, 2))
        self.drain_jobs()
        self.assertEqual(get_user_stat(self.db, user_id=self.user.id, year=2026, month=3).worked_days, 2)
        self.assertEqual(get_user_stat(self.db, user_id=self.user.id, year=2026, month=4).worked_minutes, 2 * 520)

    def test_delete_removes_sessions_and_worked_time(self) -> None:
        period = add_sick_leave(self.db, user_id=self.user.id, start=date(2026, 3, 2), end=date(2026, 3, 4))
        self.drain_jobs()
        self.assertEqual(get_user_stat(self.db, user_id=self.user.id, year=2026, month=3).worked_days, 3)

        delete_absence(self.db, actor_for_user(self.user), period.id)
        self.drain_jobs()
        self.db.expire_all()

        self.assertEqual(self._sessions(), [])
        stat = get_user_stat(self.db, user_id=self.user.id, year=2026, month=3)
        self.assertEqual(stat.worked_days, 0)
        self.assertEqual(stat.worked_minutes, 0)
        with self.assertRaises(NotFoundError):
            delete_absence(self.db, actor_for_user(self.user), period.id)

    def test_only_owner_or_admin_can_delete(self) -> None:
        period = add_day_off(self.db, user_id=self.user.id, day=date(2026, 3, 3))
        stranger = self.make_user(777, first_name="Petr")
        with self.assertRaises(ForbiddenError):
            delete_absence(self.db, actor_for_user(stranger), period.id)

        admin = Actor(actor_type=AuditActorType.ADMIN, actor_id="1", user_id=None, is_admin=True)
        delete_absence(self.db, admin, period.id)
        self.assertEqual(self.db.query(AbsencePeriod).count(), 0)

    def test_list_groups_by_kind_with_day_totals(self) -> None:
        add_vacation(self.db, user_id=self.user.id, start=date(2026, 7, 1), end=date(2026, 7, 14), now_utc=JUNE_FIRST)
        add_vacation(self.db, user_id=self.user.id, start=date(2026, 8, 3), end=date(2026, 8, 5), now_utc=JUNE_FIRST)
        add_day_off(self.db, user_id=self.user.id, day=date(2026, 3, 3))

        groups = {group.kind: group for group in list_for_user(self.db, self.user.id)}
        self.assertEqual(set(groups), {AbsenceKind.VACATION, AbsenceKind.DAY_OFF})
        self.assertEqual(groups[AbsenceKind.VACATION].total_days, 17)
        self.assertEqual(len(groups[AbsenceKind.VACATION].periods), 2)
        self.assertEqual(groups[AbsenceKind.DAY_OFF].total_days, 1)

        current = get_current_absence(self.db, self.user.id, date(2026, 7, 5))
        self.assertEqual(current.kind, AbsenceKind.VACATION)
        self.assertIsNone(get_current_absence(self.db, self.user.id, date(2026, 7, 15)))


if __name__ == "__main__":
    unittest.main()
