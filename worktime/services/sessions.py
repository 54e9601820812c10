from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from worktime.errors import ConfirmationRequiredError, ConflictError, NotFoundError, ValidationError
from worktime.models import SessionKind, SessionStatus, WorkSession
from worktime.services.calendar import is_non_working_day
from worktime.services.clock import (
    as_utc,
    local_date,
    local_to_utc,
    local_today,
    minutes_between,
    month_bounds,
    to_utc,
    utcnow,
)
from worktime.services.recompute import enqueue_user_month
from worktime.services.schedules import required_minutes_for_day
from worktime.services.storage import commit_or_raise
from worktime.settings import get_settings

logger = logging.getLogger("worktime.sessions")

WARNING_BACKDATED = "BACKDATED"
DEFAULT_HISTORY_LIMIT = 30


@dataclass
class ClockResult:
    session: WorkSession
    warnings: list[str] = field(default_factory=list)


def _resolve_timestamps(at: datetime | None, now_utc: datetime | None) -> tuple[datetime, datetime]:
    reference_utc = to_utc(now_utc) or utcnow()
    ts_utc = local_to_utc(at) if at is not None else reference_utc
    if ts_utc > reference_utc:
        raise ValidationError(code="FUTURE_TIMESTAMP", message="Time cannot be in the future.")
    return ts_utc, reference_utc


def _backdate_warnings(ts_utc: datetime, reference_utc: datetime) -> list[str]:
    threshold = timedelta(hours=get_settings().backdate_warning_hours)
    if reference_utc - ts_utc > threshold:
        return [WARNING_BACKDATED]
    return []


def get_active_session(db: Session, user_id: int) -> WorkSession | None:
    return db.scalar(
        select(WorkSession).where(
            WorkSession.user_id == user_id,
            WorkSession.status == SessionStatus.ACTIVE,
        )
    )


def get_session_for_day(db: Session, user_id: int, day: date) -> WorkSession | None:
    return db.scalar(
        select(WorkSession).where(
            WorkSession.user_id == user_id,
            WorkSession.day_date == day,
        )
    )


def get_today_session(db: Session, user_id: int, *, now_utc: datetime | None = None) -> WorkSession | None:
    return get_session_for_day(db, user_id, local_today(now_utc))


def list_history(db: Session, user_id: int, *, limit: int = DEFAULT_HISTORY_LIMIT) -> list[WorkSession]:
    return list(
        db.scalars(
            select(WorkSession)
            .where(WorkSession.user_id == user_id)
            .order_by(WorkSession.day_date.desc())
            .limit(max(1, limit))
        ).all()
    )


def list_month_sessions(db: Session, user_id: int, *, year: int, month: int) -> list[WorkSession]:
    start, end = month_bounds(year, month)
    return list(
        db.scalars(
            select(WorkSession)
            .where(
                WorkSession.user_id == user_id,
                WorkSession.day_date >= start,
                WorkSession.day_date <= end,
            )
            .order_by(WorkSession.day_date.asc())
        ).all()
    )


def _check_clock_in_slot(db: Session, *, user_id: int, day: date) -> None:
    if get_active_session(db, user_id) is not None:
        raise ConflictError(code="ALREADY_ACTIVE", message="A work session is already active.")
    if get_session_for_day(db, user_id, day) is not None:
        raise ConflictError(code="DATE_CONFLICT", message=f"A record for {day.isoformat()} already exists.")


def clock_in(
    db: Session,
    *,
    user_id: int,
    at: datetime | None = None,
    required_minutes: int | None = None,
    now_utc: datetime | None = None,
) -> ClockResult:
    ts_utc, reference_utc = _resolve_timestamps(at, now_utc)
    day = local_date(ts_utc)

    epoch_year = get_settings().clock_epoch_year
    if day.year < epoch_year:
        raise ValidationError(code="BEFORE_EPOCH", message=f"Clock-in before {epoch_year} is not allowed.")
    if is_non_working_day(db, day):
        raise ValidationError(code="NON_WORKING_DAY", message=f"{day.isoformat()} is a non-working day.")
    if required_minutes is not None and (required_minutes < 1 or required_minutes > 1440):
        raise ValidationError(code="INVALID_REQUIRED_MINUTES", message="Required minutes must be between 1 and 1440.")

    _check_clock_in_slot(db, user_id=user_id, day=day)

    session = WorkSession(
        user_id=user_id,
        day_date=day,
        clock_in_at=ts_utc,
        clock_out_at=None,
        required_minutes=required_minutes or required_minutes_for_day(db, day),
        worked_minutes=0,
        diff_minutes=0,
        status=SessionStatus.ACTIVE,
        kind=SessionKind.WORK,
    )
    db.add(session)
    try:
        commit_or_raise(db)
    except ConflictError:
        # A concurrent write won the race; report which constraint it took.
        _check_clock_in_slot(db, user_id=user_id, day=day)
        raise

    warnings = _backdate_warnings(ts_utc, reference_utc)
    logger.info(
        "clock_in_completed",
        extra={
            "user_id": user_id,
            "session_id": session.id,
            "day": day,
            "required_minutes": session.required_minutes,
            "warnings": warnings,
        },
    )
    return ClockResult(session=session, warnings=warnings)


def clock_out(
    db: Session,
    *,
    user_id: int,
    at: datetime | None = None,
    confirm_non_working_day: bool = False,
    now_utc: datetime | None = None,
) -> ClockResult:
    ts_utc, reference_utc = _resolve_timestamps(at, now_utc)

    session = get_active_session(db, user_id)
    if session is None:
        raise NotFoundError(code="NO_ACTIVE_SESSION", message="No active work session.")

    clock_in_utc = as_utc(session.clock_in_at)
    if ts_utc < clock_in_utc:
        raise ValidationError(code="TIME_BEFORE_CLOCK_IN", message="Clock-out time is before clock-in time.")

    out_day = local_date(ts_utc)
    if not confirm_non_working_day and (is_non_working_day(db, out_day) or is_non_working_day(db, session.day_date)):
        raise ConfirmationRequiredError(
            code="NON_WORKING_DAY_CONFIRMATION_REQUIRED",
            message=f"{out_day.isoformat()} is a non-working day. Confirm to clock out.",
        )

    worked = minutes_between(clock_in_utc, ts_utc)
    session.clock_out_at = ts_utc
    session.worked_minutes = worked
    session.diff_minutes = worked - session.required_minutes
    session.status = SessionStatus.COMPLETED
    enqueue_user_month(db, user_id=user_id, day=session.day_date)
    commit_or_raise(db)

    warnings = _backdate_warnings(ts_utc, reference_utc)
    logger.info(
        "clock_out_completed",
        extra={
            "user_id": user_id,
            "session_id": session.id,
            "day": session.day_date,
            "worked_minutes": worked,
            "diff_minutes": session.diff_minutes,
            "confirmed_non_working_day": confirm_non_working_day,
            "warnings": warnings,
        },
    )
    return ClockResult(session=session, warnings=warnings)
