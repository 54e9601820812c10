"""Per-user monthly rollups of planned versus worked time.

Planned figures come from the month's ``WorkSchedule``; worked figures are a
full re-sum of the user's closed sessions, so every function here is safe to
replay. Functions flush but never commit: the recompute queue commits each job
together with its completion marker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from worktime.errors import NotFoundError
from worktime.models import CLOSED_SESSION_STATUSES, User, UserMonthlyStat, WorkSchedule, WorkSession
from worktime.services.clock import month_bounds

logger = logging.getLogger("worktime.monthly_stats")


@dataclass(frozen=True)
class StatProgress:
    completion_percentage: float
    remaining_days: int
    remaining_minutes: int


def _schedule_for_month(db: Session, year: int, month: int) -> WorkSchedule | None:
    return db.scalar(
        select(WorkSchedule).where(
            WorkSchedule.year == year,
            WorkSchedule.month == month,
        )
    )


def _find_stat(db: Session, *, user_id: int, year: int, month: int) -> UserMonthlyStat | None:
    return db.scalar(
        select(UserMonthlyStat).where(
            UserMonthlyStat.user_id == user_id,
            UserMonthlyStat.year == year,
            UserMonthlyStat.month == month,
        )
    )


def get_or_create_stat(db: Session, *, user_id: int, year: int, month: int) -> UserMonthlyStat:
    stat = _find_stat(db, user_id=user_id, year=year, month=month)
    if stat is not None:
        return stat

    stat = UserMonthlyStat(
        user_id=user_id,
        year=year,
        month=month,
        planned_days=0,
        planned_minutes=0,
        worked_days=0,
        worked_minutes=0,
        overtime_minutes=0,
        deficit_minutes=0,
    )
    schedule = _schedule_for_month(db, year, month)
    if schedule is not None:
        stat.apply_schedule(schedule)
    db.add(stat)
    db.flush()
    return stat


def sum_worked(db: Session, *, user_id: int, year: int, month: int) -> tuple[int, int]:
    start, end = month_bounds(year, month)
    row = db.execute(
        select(
            func.count(func.distinct(WorkSession.day_date)),
            func.coalesce(func.sum(WorkSession.worked_minutes), 0),
        ).where(
            WorkSession.user_id == user_id,
            WorkSession.day_date >= start,
            WorkSession.day_date <= end,
            WorkSession.status.in_(CLOSED_SESSION_STATUSES),
        )
    ).one()
    return int(row[0] or 0), int(row[1] or 0)


def recompute_worked(db: Session, *, user_id: int, year: int, month: int) -> UserMonthlyStat:
    stat = get_or_create_stat(db, user_id=user_id, year=year, month=month)
    worked_days, worked_minutes = sum_worked(db, user_id=user_id, year=year, month=month)

    schedule = _schedule_for_month(db, year, month)
    if schedule is not None:
        stat.planned_days = schedule.work_days
        stat.planned_minutes = schedule.work_days * schedule.minutes_per_day
    stat.apply_worked(worked_days=worked_days, worked_minutes=worked_minutes)
    db.flush()

    logger.info(
        "monthly_stat_worked_recomputed",
        extra={
            "user_id": user_id,
            "year": year,
            "month": month,
            "worked_days": worked_days,
            "worked_minutes": worked_minutes,
            "overtime_minutes": stat.overtime_minutes,
            "deficit_minutes": stat.deficit_minutes,
        },
    )
    return stat


def seed_for_new_user(db: Session, *, user_id: int) -> int:
    """Give a user a zero-worked row for every month that has a schedule."""
    schedules = list(db.scalars(select(WorkSchedule).order_by(WorkSchedule.year, WorkSchedule.month)).all())
    existing_months = {
        (year, month)
        for year, month in db.execute(
            select(UserMonthlyStat.year, UserMonthlyStat.month).where(UserMonthlyStat.user_id == user_id)
        ).all()
    }

    created = 0
    for schedule in schedules:
        if (schedule.year, schedule.month) in existing_months:
            continue
        stat = UserMonthlyStat(
            user_id=user_id,
            year=schedule.year,
            month=schedule.month,
            worked_days=0,
            worked_minutes=0,
        )
        stat.apply_schedule(schedule)
        db.add(stat)
        created += 1
    db.flush()

    logger.info("monthly_stats_seeded_for_user", extra={"user_id": user_id, "created": created})
    return created


def fan_out_schedule_change(db: Session, schedule: WorkSchedule) -> int:
    """Upsert the planned side of every user's row for the schedule's month."""
    user_ids = list(db.scalars(select(User.id).order_by(User.id)).all())
    stats_by_user = {
        stat.user_id: stat
        for stat in db.scalars(
            select(UserMonthlyStat).where(
                UserMonthlyStat.year == schedule.year,
                UserMonthlyStat.month == schedule.month,
            )
        ).all()
    }

    touched = 0
    for user_id in user_ids:
        stat = stats_by_user.get(user_id)
        if stat is None:
            stat = UserMonthlyStat(
                user_id=user_id,
                year=schedule.year,
                month=schedule.month,
                worked_days=0,
                worked_minutes=0,
            )
            db.add(stat)
        stat.apply_schedule(schedule)
        touched += 1
    db.flush()

    logger.info(
        "monthly_stats_planned_fanned_out",
        extra={
            "year": schedule.year,
            "month": schedule.month,
            "work_days": schedule.work_days,
            "planned_minutes": schedule.work_days * schedule.minutes_per_day,
            "users": touched,
        },
    )
    return touched


def list_user_stats(db: Session, *, user_id: int) -> list[UserMonthlyStat]:
    return list(
        db.scalars(
            select(UserMonthlyStat)
            .where(UserMonthlyStat.user_id == user_id)
            .order_by(UserMonthlyStat.year.asc(), UserMonthlyStat.month.asc())
        ).all()
    )


def get_user_stat(db: Session, *, user_id: int, year: int, month: int) -> UserMonthlyStat:
    stat = _find_stat(db, user_id=user_id, year=year, month=month)
    if stat is None:
        raise NotFoundError(code="STAT_NOT_FOUND", message=f"No statistics for {year}-{month:02d}.")
    return stat


def stat_progress(stat: UserMonthlyStat) -> StatProgress:
    if stat.planned_minutes <= 0:
        percentage = 0.0
    else:
        percentage = min(100.0, stat.worked_minutes / stat.planned_minutes * 100)
    return StatProgress(
        completion_percentage=round(percentage, 2),
        remaining_days=max(0, stat.planned_days - stat.worked_days),
        remaining_minutes=max(0, stat.planned_minutes - stat.worked_minutes),
    )
