"""Vacation, sick leave and day-off periods.

Each stored period is materialized as one ``ABSENT`` work session per covered
date, credited with the day's full required minutes. Periods and their
sessions are written in a single transaction and share the one-record-per-date
rule with ordinary clock sessions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from worktime.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from worktime.models import ABSENCE_SESSION_KIND, AbsenceKind, AbsencePeriod, SessionStatus, WorkSession
from worktime.security import Actor
from worktime.services.clock import combine_local, iter_dates, local_today, parse_hhmm
from worktime.services.recompute import enqueue_user_months
from worktime.services.schedules import MAX_YEAR, MIN_YEAR, required_minutes_for_day
from worktime.services.storage import commit_or_raise
from worktime.settings import get_settings

logger = logging.getLogger("worktime.absences")


@dataclass
class AbsenceGroup:
    kind: AbsenceKind
    total_days: int = 0
    periods: list[AbsencePeriod] = field(default_factory=list)


def _find_overlapping_period(db: Session, *, user_id: int, start: date, end: date) -> AbsencePeriod | None:
    return db.scalar(
        select(AbsencePeriod)
        .where(
            AbsencePeriod.user_id == user_id,
            AbsencePeriod.start_date <= end,
            AbsencePeriod.end_date >= start,
        )
        .order_by(AbsencePeriod.start_date.asc())
        .limit(1)
    )


def _find_session_in_range(db: Session, *, user_id: int, start: date, end: date) -> WorkSession | None:
    return db.scalar(
        select(WorkSession)
        .where(
            WorkSession.user_id == user_id,
            WorkSession.day_date >= start,
            WorkSession.day_date <= end,
        )
        .order_by(WorkSession.day_date.asc())
        .limit(1)
    )


def _build_absence_sessions(db: Session, period: AbsencePeriod) -> list[WorkSession]:
    settings = get_settings()
    start_time = parse_hhmm(settings.absence_clock_in)
    end_time = parse_hhmm(settings.absence_clock_out)
    session_kind = ABSENCE_SESSION_KIND[period.kind]

    required_by_month: dict[tuple[int, int], int] = {}
    sessions: list[WorkSession] = []
    for day in iter_dates(period.start_date, period.end_date):
        month_key = (day.year, day.month)
        if month_key not in required_by_month:
            required_by_month[month_key] = required_minutes_for_day(db, day)
        required = required_by_month[month_key]
        sessions.append(
            WorkSession(
                user_id=period.user_id,
                day_date=day,
                clock_in_at=combine_local(day, start_time),
                clock_out_at=combine_local(day, end_time),
                required_minutes=required,
                worked_minutes=required,
                diff_minutes=0,
                status=SessionStatus.ABSENT,
                kind=session_kind,
            )
        )
    return sessions


def _add_absence_period(
    db: Session,
    *,
    user_id: int,
    kind: AbsenceKind,
    start: date,
    end: date,
) -> AbsencePeriod:
    for value in (start, end):
        if value.year < MIN_YEAR or value.year > MAX_YEAR:
            raise ValidationError(
                code="INVALID_DATE",
                message=f"Absence dates must fall between {MIN_YEAR} and {MAX_YEAR}.",
            )
    if end < start:
        raise ValidationError(code="INVALID_DATE_RANGE", message="End date cannot be before start date.")

    overlapping = _find_overlapping_period(db, user_id=user_id, start=start, end=end)
    if overlapping is not None:
        raise ConflictError(
            code="ABSENCE_OVERLAP",
            message=(
                f"Period overlaps an existing absence "
                f"{overlapping.start_date.isoformat()}..{overlapping.end_date.isoformat()}."
            ),
        )
    taken = _find_session_in_range(db, user_id=user_id, start=start, end=end)
    if taken is not None:
        raise ConflictError(
            code="DATE_CONFLICT",
            message=f"A record for {taken.day_date.isoformat()} already exists.",
        )

    period = AbsencePeriod(user_id=user_id, start_date=start, end_date=end, kind=kind)
    period.work_sessions = _build_absence_sessions(db, period)
    db.add(period)
    enqueue_user_months(db, user_id=user_id, days=list(iter_dates(start, end)))
    commit_or_raise(
        db,
        conflict_code="DATE_CONFLICT",
        conflict_message="Absence period overlaps an existing record.",
    )

    logger.info(
        "absence_period_created",
        extra={
            "user_id": user_id,
            "absence_period_id": period.id,
            "kind": kind.value,
            "start_date": start,
            "end_date": end,
            "sessions": period.day_count,
        },
    )
    return period


def add_vacation(
    db: Session,
    *,
    user_id: int,
    start: date,
    end: date,
    now_utc: datetime | None = None,
) -> AbsencePeriod:
    if start < local_today(now_utc):
        raise ValidationError(code="VACATION_IN_PAST", message="Vacation can only be added for future dates.")
    return _add_absence_period(db, user_id=user_id, kind=AbsenceKind.VACATION, start=start, end=end)


def add_sick_leave(db: Session, *, user_id: int, start: date, end: date) -> AbsencePeriod:
    return _add_absence_period(db, user_id=user_id, kind=AbsenceKind.SICK_LEAVE, start=start, end=end)


def add_day_off(db: Session, *, user_id: int, day: date) -> AbsencePeriod:
    return _add_absence_period(db, user_id=user_id, kind=AbsenceKind.DAY_OFF, start=day, end=day)


def list_periods(db: Session, user_id: int) -> list[AbsencePeriod]:
    return list(
        db.scalars(
            select(AbsencePeriod)
            .where(AbsencePeriod.user_id == user_id)
            .order_by(AbsencePeriod.start_date.asc(), AbsencePeriod.id.asc())
        ).all()
    )


def list_for_user(db: Session, user_id: int) -> list[AbsenceGroup]:
    groups = {kind: AbsenceGroup(kind=kind) for kind in AbsenceKind}
    for period in list_periods(db, user_id):
        group = groups[period.kind]
        group.periods.append(period)
        group.total_days += period.day_count
    return [group for group in groups.values() if group.periods]


def get_current_absence(db: Session, user_id: int, day: date) -> AbsencePeriod | None:
    return db.scalar(
        select(AbsencePeriod).where(
            AbsencePeriod.user_id == user_id,
            AbsencePeriod.start_date <= day,
            AbsencePeriod.end_date >= day,
        )
    )


def get_period(db: Session, period_id: int) -> AbsencePeriod:
    period = db.get(AbsencePeriod, period_id)
    if period is None:
        raise NotFoundError(code="ABSENCE_NOT_FOUND", message="Absence period not found.")
    return period


def delete_absence(db: Session, actor: Actor, period_id: int) -> AbsencePeriod:
    """Delete a period together with its synthesized sessions.

    Owners may delete their own periods; admins may delete any.
    """
    period = get_period(db, period_id)
    if not actor.is_admin and actor.user_id != period.user_id:
        raise ForbiddenError()

    user_id = period.user_id
    db.delete(period)
    enqueue_user_months(db, user_id=user_id, days=list(iter_dates(period.start_date, period.end_date)))
    commit_or_raise(db)

    logger.info(
        "absence_period_deleted",
        extra={
            "user_id": user_id,
            "absence_period_id": period_id,
            "kind": period.kind.value,
            "start_date": period.start_date,
            "end_date": period.end_date,
            "actor_id": actor.actor_id,
        },
    )
    return period
