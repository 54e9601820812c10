from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from worktime.db import Base


class UserRole(str, enum.Enum):
    CLIENT = "CLIENT"
    ADMIN = "ADMIN"


class SessionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ABSENT = "ABSENT"


class SessionKind(str, enum.Enum):
    WORK = "WORK"
    VACATION = "VACATION"
    SICK_LEAVE = "SICK_LEAVE"
    DAY_OFF = "DAY_OFF"


class AbsenceKind(str, enum.Enum):
    VACATION = "VACATION"
    SICK_LEAVE = "SICK_LEAVE"
    DAY_OFF = "DAY_OFF"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    USER = "USER"
    SYSTEM = "SYSTEM"


ABSENCE_SESSION_KIND: dict[AbsenceKind, SessionKind] = {
    AbsenceKind.VACATION: SessionKind.VACATION,
    AbsenceKind.SICK_LEAVE: SessionKind.SICK_LEAVE,
    AbsenceKind.DAY_OFF: SessionKind.DAY_OFF,
}

# Statuses that count toward worked totals.
CLOSED_SESSION_STATUSES: tuple[SessionStatus, ...] = (SessionStatus.COMPLETED, SessionStatus.ABSENT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True, index=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role"),
        nullable=False,
        default=UserRole.CLIENT,
        server_default=text("'CLIENT'"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    work_sessions: Mapped[list[WorkSession]] = relationship(
        back_populates="user",
        cascade="all",
        passive_deletes=True,
    )
    absence_periods: Mapped[list[AbsencePeriod]] = relationship(
        back_populates="user",
        cascade="all",
        passive_deletes=True,
    )
    monthly_stats: Mapped[list[UserMonthlyStat]] = relationship(
        back_populates="user",
        cascade="all",
        passive_deletes=True,
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class WorkSchedule(Base):
    __tablename__ = "work_schedules"
    __table_args__ = (
        UniqueConstraint("year", "month", name="uq_work_schedules_year_month"),
        CheckConstraint("month >= 1 AND month <= 12", name="ck_work_schedules_month"),
        CheckConstraint("work_days >= 0 AND work_days <= 31", name="ck_work_schedules_work_days"),
        CheckConstraint(
            "minutes_per_day >= 1 AND minutes_per_day <= 1440",
            name="ck_work_schedules_minutes_per_day",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    work_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minutes_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=480)
    total_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    def recalculate_total(self) -> int:
        self.total_minutes = (self.work_days or 0) * (self.minutes_per_day or 0)
        return self.total_minutes


@event.listens_for(WorkSchedule, "before_insert")
@event.listens_for(WorkSchedule, "before_update")
def _schedule_total_before_write(_mapper, _connection, target: WorkSchedule) -> None:  # type: ignore[no-untyped-def]
    target.recalculate_total()


class AbsencePeriod(Base):
    __tablename__ = "absence_periods"
    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_absence_periods_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    kind: Mapped[AbsenceKind] = mapped_column(Enum(AbsenceKind, name="absence_kind"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped[User] = relationship(back_populates="absence_periods")
    work_sessions: Mapped[list[WorkSession]] = relationship(
        back_populates="absence_period",
        cascade="all",
        passive_deletes=True,
    )

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1


class WorkSession(Base):
    __tablename__ = "work_sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "day_date", name="uq_work_sessions_user_day"),
        Index(
            "uq_work_sessions_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    clock_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    clock_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    required_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=480)
    worked_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    diff_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="work_session_status"),
        nullable=False,
        default=SessionStatus.ACTIVE,
        index=True,
    )
    kind: Mapped[SessionKind] = mapped_column(
        Enum(SessionKind, name="work_session_kind"),
        nullable=False,
        default=SessionKind.WORK,
    )
    absence_period_id: Mapped[int | None] = mapped_column(
        ForeignKey("absence_periods.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    user: Mapped[User] = relationship(back_populates="work_sessions")
    absence_period: Mapped[AbsencePeriod | None] = relationship(back_populates="work_sessions")

    @property
    def is_absence(self) -> bool:
        return self.kind != SessionKind.WORK


class UserMonthlyStat(Base):
    __tablename__ = "user_monthly_stats"
    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_user_monthly_stats_user_month"),
        CheckConstraint("month >= 1 AND month <= 12", name="ck_user_monthly_stats_month"),
        CheckConstraint(
            "overtime_minutes >= 0 AND deficit_minutes >= 0",
            name="ck_user_monthly_stats_balance_non_negative",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    planned_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    planned_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    worked_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    worked_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    overtime_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    deficit_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    user: Mapped[User] = relationship(back_populates="monthly_stats")

    def recalculate_balance(self) -> None:
        diff = (self.worked_minutes or 0) - (self.planned_minutes or 0)
        if diff > 0:
            self.overtime_minutes = diff
            self.deficit_minutes = 0
        else:
            self.overtime_minutes = 0
            self.deficit_minutes = -diff

    def apply_schedule(self, schedule: WorkSchedule) -> None:
        self.planned_days = schedule.work_days
        self.planned_minutes = schedule.work_days * schedule.minutes_per_day
        self.recalculate_balance()

    def apply_worked(self, *, worked_days: int, worked_minutes: int) -> None:
        self.worked_days = worked_days
        self.worked_minutes = worked_minutes
        self.recalculate_balance()


class NonWorkingDay(Base):
    __tablename__ = "non_working_days"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    month: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    day: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class StatRecomputeJob(Base):
    __tablename__ = "stat_recompute_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_type: Mapped[str] = mapped_column(String(40), nullable=False)
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        server_default=text("'PENDING'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
