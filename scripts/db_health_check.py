#!/usr/bin/env python
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection

from worktime.settings import get_settings

EXPECTED_HEAD = "0001_initial_schema"

# Each query returns a sample of rows violating the named invariant.
INVARIANT_QUERIES: dict[str, str] = {
    "stats_overtime_and_deficit_both_set": """
        select id, user_id, year, month
        from user_monthly_stats
        where overtime_minutes > 0 and deficit_minutes > 0
        limit 20
    """,
    "stats_balance_mismatch": """
        select id, user_id, year, month
        from user_monthly_stats
        where overtime_minutes - deficit_minutes <> worked_minutes - planned_minutes
        limit 20
    """,
    "schedule_total_mismatch": """
        select id, year, month
        from work_schedules
        where total_minutes <> work_days * minutes_per_day
        limit 20
    """,
    "multiple_active_sessions": """
        select user_id, count(*)
        from work_sessions
        where status = 'ACTIVE'
        group by user_id
        having count(*) > 1
        limit 20
    """,
    "orphan_absence_sessions": """
        select s.id, s.user_id, s.day_date
        from work_sessions s
        left join absence_periods p on p.id = s.absence_period_id
        where s.kind <> 'WORK' and p.id is null
        limit 20
    """,
    "failed_recompute_jobs": """
        select id, job_type, user_id, year, month, attempts
        from stat_recompute_jobs
        where status = 'FAILED'
        limit 20
    """,
}

REQUIRED_TABLES = (
    "users",
    "work_schedules",
    "work_sessions",
    "absence_periods",
    "user_monthly_stats",
    "non_working_days",
    "stat_recompute_jobs",
    "audit_logs",
)


def run_checks(conn: Connection) -> list[dict[str, Any]]:
    checks: list[dict[str, Any]] = []

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        checks.append({"name": name, "status": status, "details": details})

    tables = set(inspect(conn).get_table_names())

    current_versions: list[str] = []
    if "alembic_version" in tables:
        current_versions = [row[0] for row in conn.execute(text("select version_num from alembic_version")).fetchall()]
    add(
        "migration_up_to_date",
        "ok" if EXPECTED_HEAD in current_versions else "warn",
        {"expected_head": EXPECTED_HEAD, "current": current_versions},
    )

    missing = [table for table in REQUIRED_TABLES if table not in tables]
    add("missing_tables", "fail" if missing else "ok", {"tables": missing})
    if missing:
        return checks

    for name, query in INVARIANT_QUERIES.items():
        rows = conn.execute(text(query)).fetchall()
        add(name, "fail" if rows else "ok", {"rows": [[str(value) for value in row] for row in rows]})

    return checks


def run() -> dict[str, Any]:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }
    with engine.connect() as conn:
        report["checks"] = run_checks(conn)
    report["ok"] = all(check["status"] != "fail" for check in report["checks"])
    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
