from __future__ import annotations

from calendar import monthrange
from collections.abc import Iterator
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from worktime.errors import ValidationError
from worktime.settings import get_settings

DEFAULT_TIMEZONE = "Europe/Moscow"


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except ZoneInfoNotFoundError:
        return ZoneInfo(DEFAULT_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored timestamp; naive values are UTC (SQLite drops tzinfo)."""
    if value is None:
        return None
    return as_utc(value)


def local_to_utc(value: datetime) -> datetime:
    """Normalize caller input; naive values are wall-clock time in the attendance zone."""
    if value.tzinfo is None:
        return value.replace(tzinfo=attendance_timezone()).astimezone(timezone.utc)
    return value.astimezone(timezone.utc)


def local_date(ts_utc: datetime) -> date:
    return as_utc(ts_utc).astimezone(attendance_timezone()).date()


def local_today(now_utc: datetime | None = None) -> date:
    return local_date(now_utc or utcnow())


def combine_local(day: date, value: time) -> datetime:
    return datetime.combine(day, value, tzinfo=attendance_timezone()).astimezone(timezone.utc)


def parse_hhmm(value: str) -> time:
    try:
        hour_str, minute_str = value.strip().split(":")
        hour = int(hour_str)
        minute = int(minute_str)
        if hour < 0 or hour > 23 or minute < 0 or minute > 59:
            raise ValueError
    except ValueError as exc:
        raise ValidationError(code="INVALID_TIME", message=f"Invalid time '{value}'. Use HH:MM.") from exc
    return time(hour=hour, minute=minute)


def days_in_month(year: int, month: int) -> int:
    return monthrange(year, month)[1]


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, days_in_month(year, month))


def iter_dates(start: date, end: date) -> Iterator[date]:
    if end < start:
        return
    current = start
    while True:
        yield current
        if current >= end:
            return
        current += timedelta(days=1)


def minutes_between(start_utc: datetime, end_utc: datetime) -> int:
    return int((as_utc(end_utc) - as_utc(start_utc)).total_seconds() // 60)
