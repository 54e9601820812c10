from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import date
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from worktime.errors import ValidationError
from worktime.models import NonWorkingDay
from worktime.schemas import CalendarFeed
from worktime.services.clock import month_bounds
from worktime.services.storage import commit_or_raise

logger = logging.getLogger("worktime.calendar")

# Feed day markers: "+" pre-holiday shortened day, "*" transferred day.
_DAY_MARKERS = "+*"


def _parse_feed_days(year: int, month: int, raw_days: str) -> list[date]:
    days: list[date] = []
    for chunk in raw_days.split(","):
        token = chunk.strip().rstrip(_DAY_MARKERS)
        if not token:
            continue
        try:
            days.append(date(year, month, int(token)))
        except ValueError as exc:
            raise ValidationError(
                code="INVALID_CALENDAR_FEED",
                message=f"Invalid day '{chunk.strip()}' in month {month} of {year}.",
            ) from exc
    return days


def parse_calendar_feed(raw: Mapping[str, Any] | str | bytes) -> list[date]:
    """Parse a production-calendar feed into a sorted list of non-working dates."""
    try:
        if isinstance(raw, (str, bytes)):
            feed = CalendarFeed.model_validate_json(raw)
        else:
            feed = CalendarFeed.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(code="INVALID_CALENDAR_FEED", message=str(exc.errors())) from exc

    collected: set[date] = set()
    for item in feed.months:
        collected.update(_parse_feed_days(feed.year, item.month, item.days))
    return sorted(collected)


def load_calendar_file(path: str | Path) -> list[date]:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(code="CALENDAR_FEED_UNREADABLE", message=f"Cannot read calendar feed: {path}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(code="INVALID_CALENDAR_FEED", message=f"Calendar feed is not valid JSON: {exc}") from exc
    return parse_calendar_feed(payload)


def load_snapshot(db: Session, days: Iterable[date]) -> int:
    """Replace the stored non-working day set with ``days`` in one transaction."""
    unique_days = sorted(set(days))
    db.execute(delete(NonWorkingDay))
    db.add_all(
        NonWorkingDay(day_date=item, year=item.year, month=item.month, day=item.day)
        for item in unique_days
    )
    commit_or_raise(db, conflict_code="CALENDAR_CONFLICT", conflict_message="Calendar snapshot contains duplicates.")

    logger.info(
        "calendar_snapshot_loaded",
        extra={
            "count": len(unique_days),
            "years": sorted({item.year for item in unique_days}),
        },
    )
    return len(unique_days)


def is_non_working_day(db: Session, day: date) -> bool:
    return db.scalar(select(NonWorkingDay.id).where(NonWorkingDay.day_date == day)) is not None


def is_working_day(db: Session, day: date) -> bool:
    return not is_non_working_day(db, day)


def count_non_working_days_in_month(db: Session, year: int, month: int) -> int:
    start, end = month_bounds(year, month)
    value = db.scalar(
        select(func.count(NonWorkingDay.id)).where(
            NonWorkingDay.day_date >= start,
            NonWorkingDay.day_date <= end,
        )
    )
    return int(value or 0)


def list_non_working_days(db: Session, *, year: int, month: int | None = None) -> list[NonWorkingDay]:
    stmt = select(NonWorkingDay).where(NonWorkingDay.year == year)
    if month is not None:
        stmt = stmt.where(NonWorkingDay.month == month)
    return list(db.scalars(stmt.order_by(NonWorkingDay.day_date.asc())).all())
