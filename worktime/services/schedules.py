from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from worktime.errors import ApiError, ConflictError, NotFoundError, ValidationError
from worktime.models import UserMonthlyStat, WorkSchedule
from worktime.security import Actor, require_admin_capability
from worktime.services.calendar import count_non_working_days_in_month
from worktime.services.clock import days_in_month
from worktime.services.recompute import enqueue_schedule_month
from worktime.services.storage import commit_or_raise
from worktime.settings import get_settings

logger = logging.getLogger("worktime.schedules")

MIN_YEAR = 2000
MAX_YEAR = 2100
MAX_WORK_DAYS = 31
MAX_MINUTES_PER_DAY = 1440


@dataclass
class GenerationResult:
    year: int
    schedules: list[WorkSchedule] = field(default_factory=list)
    failed_months: list[int] = field(default_factory=list)


def _validate_year(year: int) -> None:
    if year < MIN_YEAR or year > MAX_YEAR:
        raise ValidationError(code="INVALID_YEAR", message=f"Year must be between {MIN_YEAR} and {MAX_YEAR}.")


def validate_schedule_values(*, year: int, month: int, work_days: int, minutes_per_day: int) -> None:
    _validate_year(year)
    if month < 1 or month > 12:
        raise ValidationError(code="INVALID_MONTH", message="Month must be between 1 and 12.")
    if work_days < 0 or work_days > MAX_WORK_DAYS:
        raise ValidationError(code="INVALID_WORK_DAYS", message=f"Work days must be between 0 and {MAX_WORK_DAYS}.")
    if minutes_per_day < 1 or minutes_per_day > MAX_MINUTES_PER_DAY:
        raise ValidationError(
            code="INVALID_MINUTES_PER_DAY",
            message=f"Minutes per day must be between 1 and {MAX_MINUTES_PER_DAY}.",
        )


def list_schedules(db: Session, *, year: int | None = None) -> list[WorkSchedule]:
    stmt = select(WorkSchedule)
    if year is not None:
        stmt = stmt.where(WorkSchedule.year == year)
    return list(db.scalars(stmt.order_by(WorkSchedule.year.asc(), WorkSchedule.month.asc())).all())


def get_schedule(db: Session, schedule_id: int) -> WorkSchedule:
    schedule = db.get(WorkSchedule, schedule_id)
    if schedule is None:
        raise NotFoundError(code="SCHEDULE_NOT_FOUND", message="Schedule not found.")
    return schedule


def get_schedule_for_month(db: Session, year: int, month: int) -> WorkSchedule | None:
    return db.scalar(
        select(WorkSchedule).where(
            WorkSchedule.year == year,
            WorkSchedule.month == month,
        )
    )


def required_minutes_for_day(db: Session, day: date) -> int:
    schedule = get_schedule_for_month(db, day.year, day.month)
    if schedule is not None:
        return schedule.minutes_per_day
    return get_settings().default_minutes_per_day


def working_days_for_month(db: Session, year: int, month: int) -> int:
    return days_in_month(year, month) - count_non_working_days_in_month(db, year, month)


def create_schedule(
    db: Session,
    actor: Actor,
    *,
    year: int,
    month: int,
    work_days: int,
    minutes_per_day: int,
) -> WorkSchedule:
    require_admin_capability(actor)
    validate_schedule_values(year=year, month=month, work_days=work_days, minutes_per_day=minutes_per_day)
    if get_schedule_for_month(db, year, month) is not None:
        raise ConflictError(code="DUPLICATE_SCHEDULE", message=f"Schedule for {year}-{month:02d} already exists.")

    schedule = WorkSchedule(year=year, month=month, work_days=work_days, minutes_per_day=minutes_per_day)
    schedule.recalculate_total()
    db.add(schedule)
    enqueue_schedule_month(db, year=year, month=month)
    commit_or_raise(
        db,
        conflict_code="DUPLICATE_SCHEDULE",
        conflict_message=f"Schedule for {year}-{month:02d} already exists.",
    )

    logger.info(
        "schedule_created",
        extra={
            "schedule_id": schedule.id,
            "year": year,
            "month": month,
            "work_days": work_days,
            "minutes_per_day": minutes_per_day,
            "actor_id": actor.actor_id,
        },
    )
    return schedule


def update_schedule(
    db: Session,
    actor: Actor,
    schedule_id: int,
    *,
    work_days: int | None = None,
    minutes_per_day: int | None = None,
) -> WorkSchedule:
    require_admin_capability(actor)
    schedule = get_schedule(db, schedule_id)
    next_work_days = schedule.work_days if work_days is None else work_days
    next_minutes = schedule.minutes_per_day if minutes_per_day is None else minutes_per_day
    validate_schedule_values(
        year=schedule.year,
        month=schedule.month,
        work_days=next_work_days,
        minutes_per_day=next_minutes,
    )

    schedule.work_days = next_work_days
    schedule.minutes_per_day = next_minutes
    schedule.recalculate_total()
    enqueue_schedule_month(db, year=schedule.year, month=schedule.month)
    commit_or_raise(db)

    logger.info(
        "schedule_updated",
        extra={
            "schedule_id": schedule.id,
            "year": schedule.year,
            "month": schedule.month,
            "work_days": schedule.work_days,
            "minutes_per_day": schedule.minutes_per_day,
            "actor_id": actor.actor_id,
        },
    )
    return schedule


def delete_schedule(db: Session, actor: Actor, schedule_id: int, *, force: bool = False) -> WorkSchedule:
    """Delete a schedule; monthly statistics are kept with their last planned values.

    Months that already hold worked time are protected unless ``force`` is set.
    """
    require_admin_capability(actor)
    schedule = get_schedule(db, schedule_id)

    worked_stat_id = db.scalar(
        select(UserMonthlyStat.id).where(
            UserMonthlyStat.year == schedule.year,
            UserMonthlyStat.month == schedule.month,
            UserMonthlyStat.worked_minutes > 0,
        )
    )
    if worked_stat_id is not None and not force:
        raise ConflictError(
            code="SCHEDULE_HAS_WORKED_STATS",
            message=f"Statistics for {schedule.year}-{schedule.month:02d} already contain worked time.",
        )

    db.delete(schedule)
    commit_or_raise(db)

    logger.info(
        "schedule_deleted",
        extra={
            "schedule_id": schedule_id,
            "year": schedule.year,
            "month": schedule.month,
            "forced": force,
            "actor_id": actor.actor_id,
        },
    )
    return schedule


def generate_for_month(
    db: Session,
    actor: Actor,
    *,
    year: int,
    month: int,
    minutes_per_day: int,
) -> tuple[WorkSchedule, bool]:
    """Create or update one month's schedule from the calendar.

    An existing schedule keeps its own minutes per day; only work days follow
    the calendar. Returns the schedule and whether anything was written.
    """
    require_admin_capability(actor)
    work_days = working_days_for_month(db, year, month)
    schedule = get_schedule_for_month(db, year, month)
    if schedule is None:
        return create_schedule(
            db,
            actor,
            year=year,
            month=month,
            work_days=work_days,
            minutes_per_day=minutes_per_day,
        ), True
    if schedule.work_days == work_days:
        return schedule, False
    return update_schedule(db, actor, schedule.id, work_days=work_days), True


def generate_for_year(db: Session, actor: Actor, *, year: int, minutes_per_day: int) -> GenerationResult:
    require_admin_capability(actor)
    _validate_year(year)
    result = GenerationResult(year=year)
    for month in range(1, 13):
        try:
            schedule, _changed = generate_for_month(
                db,
                actor,
                year=year,
                month=month,
                minutes_per_day=minutes_per_day,
            )
        except ApiError as exc:
            db.rollback()
            logger.warning(
                "schedule_generation_month_failed",
                extra={"year": year, "month": month, "code": exc.code, "error": exc.message},
            )
            result.failed_months.append(month)
            continue
        result.schedules.append(schedule)

    logger.info(
        "schedule_year_generated",
        extra={
            "year": year,
            "minutes_per_day": minutes_per_day,
            "generated": len(result.schedules),
            "failed_months": result.failed_months,
        },
    )
    return result


def reconcile_all_from_calendar(db: Session, actor: Actor) -> int:
    """Re-derive work days of every stored schedule; returns how many changed."""
    require_admin_capability(actor)
    changed = 0
    for schedule in list_schedules(db):
        work_days = working_days_for_month(db, schedule.year, schedule.month)
        if schedule.work_days == work_days:
            continue
        update_schedule(db, actor, schedule.id, work_days=work_days)
        changed += 1

    logger.info("schedules_reconciled_from_calendar", extra={"changed": changed})
    return changed
