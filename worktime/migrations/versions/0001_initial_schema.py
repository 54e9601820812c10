"""Initial worktime schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-02-01 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = postgresql.ENUM("CLIENT", "ADMIN", name="user_role", create_type=False)
work_session_status = postgresql.ENUM(
    "ACTIVE",
    "COMPLETED",
    "ABSENT",
    name="work_session_status",
    create_type=False,
)
work_session_kind = postgresql.ENUM(
    "WORK",
    "VACATION",
    "SICK_LEAVE",
    "DAY_OFF",
    name="work_session_kind",
    create_type=False,
)
absence_kind = postgresql.ENUM("VACATION", "SICK_LEAVE", "DAY_OFF", name="absence_kind", create_type=False)
audit_actor_type = postgresql.ENUM("ADMIN", "USER", "SYSTEM", name="audit_actor_type", create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (user_role, work_session_status, work_session_kind, absence_kind, audit_actor_type):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("first_name", sa.String(length=255), nullable=False),
        sa.Column("last_name", sa.String(length=255), nullable=True),
        sa.Column("role", user_role, nullable=False, server_default=sa.text("'CLIENT'")),
        *_timestamps(),
    )
    op.create_index("ix_users_chat_id", "users", ["chat_id"], unique=True)

    op.create_table(
        "work_schedules",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("work_days", sa.Integer(), nullable=False),
        sa.Column("minutes_per_day", sa.Integer(), nullable=False),
        sa.Column("total_minutes", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("year", "month", name="uq_work_schedules_year_month"),
        sa.CheckConstraint("month >= 1 AND month <= 12", name="ck_work_schedules_month"),
        sa.CheckConstraint("work_days >= 0 AND work_days <= 31", name="ck_work_schedules_work_days"),
        sa.CheckConstraint(
            "minutes_per_day >= 1 AND minutes_per_day <= 1440",
            name="ck_work_schedules_minutes_per_day",
        ),
    )
    op.create_index("ix_work_schedules_year", "work_schedules", ["year"], unique=False)

    op.create_table(
        "absence_periods",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("kind", absence_kind, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.CheckConstraint("end_date >= start_date", name="ck_absence_periods_range"),
    )
    op.create_index("ix_absence_periods_user_id", "absence_periods", ["user_id"], unique=False)

    op.create_table(
        "work_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("clock_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("clock_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("required_minutes", sa.Integer(), nullable=False),
        sa.Column("worked_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("diff_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", work_session_status, nullable=False),
        sa.Column("kind", work_session_kind, nullable=False),
        sa.Column("absence_period_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["absence_period_id"], ["absence_periods.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "day_date", name="uq_work_sessions_user_day"),
    )
    op.create_index("ix_work_sessions_user_id", "work_sessions", ["user_id"], unique=False)
    op.create_index("ix_work_sessions_day_date", "work_sessions", ["day_date"], unique=False)
    op.create_index("ix_work_sessions_status", "work_sessions", ["status"], unique=False)
    op.create_index("ix_work_sessions_absence_period_id", "work_sessions", ["absence_period_id"], unique=False)
    op.create_index(
        "uq_work_sessions_active_user",
        "work_sessions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "user_monthly_stats",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("planned_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("planned_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("worked_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("worked_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("overtime_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("deficit_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "year", "month", name="uq_user_monthly_stats_user_month"),
        sa.CheckConstraint("month >= 1 AND month <= 12", name="ck_user_monthly_stats_month"),
        sa.CheckConstraint(
            "overtime_minutes >= 0 AND deficit_minutes >= 0",
            name="ck_user_monthly_stats_balance_non_negative",
        ),
    )
    op.create_index("ix_user_monthly_stats_user_id", "user_monthly_stats", ["user_id"], unique=False)

    op.create_table(
        "non_working_days",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("day", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_non_working_days_day_date", "non_working_days", ["day_date"], unique=True)
    op.create_index("ix_non_working_days_year", "non_working_days", ["year"], unique=False)
    op.create_index("ix_non_working_days_month", "non_working_days", ["month"], unique=False)

    op.create_table(
        "stat_recompute_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("job_type", sa.String(length=40), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("month", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_stat_recompute_jobs_user_id", "stat_recompute_jobs", ["user_id"], unique=False)
    op.create_index("ix_stat_recompute_jobs_status", "stat_recompute_jobs", ["status"], unique=False)
    op.create_index(
        "ix_stat_recompute_jobs_idempotency_key",
        "stat_recompute_jobs",
        ["idempotency_key"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", sa.JSON(), nullable=False),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("stat_recompute_jobs")
    op.drop_table("non_working_days")
    op.drop_table("user_monthly_stats")
    op.drop_index("uq_work_sessions_active_user", table_name="work_sessions")
    op.drop_table("work_sessions")
    op.drop_table("absence_periods")
    op.drop_table("work_schedules")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in (audit_actor_type, absence_kind, work_session_kind, work_session_status, user_role):
        enum_type.drop(bind, checkfirst=True)
