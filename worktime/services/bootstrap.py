from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from worktime.db import SessionLocal
from worktime.security import SYSTEM_ACTOR
from worktime.services.calendar import load_calendar_file, load_snapshot
from worktime.services.schedules import generate_for_year, reconcile_all_from_calendar
from worktime.services.users import initialize_admin
from worktime.settings import get_settings

logger = logging.getLogger("worktime.bootstrap")


def run_startup_bootstrap(db: Session | None = None) -> None:
    """Load the configured calendar feed, sync schedules with it, promote the base admin."""
    if db is None:
        with SessionLocal() as managed_db:
            run_startup_bootstrap(managed_db)
            return

    settings = get_settings()
    if settings.calendar_feed_path:
        days = load_calendar_file(settings.calendar_feed_path)
        loaded = load_snapshot(db, days)
        generation = generate_for_year(
            db,
            SYSTEM_ACTOR,
            year=settings.calendar_generate_year,
            minutes_per_day=settings.calendar_generate_minutes_per_day,
        )
        changed = reconcile_all_from_calendar(db, SYSTEM_ACTOR)
        logger.info(
            "calendar_bootstrap_completed",
            extra={
                "path": settings.calendar_feed_path,
                "loaded_days": loaded,
                "generated": len(generation.schedules),
                "failed_months": generation.failed_months,
                "reconciled": changed,
            },
        )

    initialize_admin(db, settings.base_admin_chat_id)
