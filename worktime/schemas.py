from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from worktime.models import AbsenceKind, SessionKind, SessionStatus, UserRole


class CalendarFeedMonth(BaseModel):
    month: int = Field(ge=1, le=12)
    days: str = ""


class CalendarFeed(BaseModel):
    year: int = Field(ge=2000, le=2100)
    months: list[CalendarFeedMonth] = Field(default_factory=list)


class CalendarLoadResponse(BaseModel):
    loaded_days: int
    schedules_changed: int


class NonWorkingDayRead(BaseModel):
    day_date: date
    year: int
    month: int
    day: int

    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    chat_id: int
    first_name: str = Field(min_length=1, max_length=255)
    last_name: str | None = Field(default=None, max_length=255)
    username: str | None = Field(default=None, max_length=255)


class UserRead(BaseModel):
    id: int
    chat_id: int
    username: str | None
    first_name: str
    last_name: str | None
    role: UserRole
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    username: str | None = Field(default=None, max_length=255)
    first_name: str | None = Field(default=None, max_length=255)
    last_name: str | None = Field(default=None, max_length=255)


class UserCountsRead(BaseModel):
    total: int
    admins: int
    clients: int


class UserRoleUpdate(BaseModel):
    role: UserRole


class ClockInRequest(BaseModel):
    at: datetime | None = None
    required_minutes: int | None = Field(default=None, ge=1, le=1440)


class ClockOutRequest(BaseModel):
    at: datetime | None = None
    confirm_non_working_day: bool = False


class WorkSessionRead(BaseModel):
    id: int
    user_id: int
    day_date: date
    clock_in_at: datetime
    clock_out_at: datetime | None
    required_minutes: int
    worked_minutes: int
    diff_minutes: int
    status: SessionStatus
    kind: SessionKind
    absence_period_id: int | None
    notes: str | None

    model_config = ConfigDict(from_attributes=True)


class ClockResponse(BaseModel):
    session: WorkSessionRead
    warnings: list[str] = Field(default_factory=list)


class MeStatusResponse(BaseModel):
    user: UserRead
    active_session: WorkSessionRead | None = None
    today_session: WorkSessionRead | None = None
    current_absence_kind: AbsenceKind | None = None
    is_non_working_day: bool


class AbsenceCreate(BaseModel):
    start_date: date
    end_date: date | None = None

    @model_validator(mode="after")
    def validate_range(self) -> "AbsenceCreate":
        for value in (self.start_date, self.end_date):
            if value is not None and not 2000 <= value.year <= 2100:
                raise ValueError("absence dates must fall between 2000 and 2100")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class AbsencePeriodRead(BaseModel):
    id: int
    user_id: int
    start_date: date
    end_date: date
    kind: AbsenceKind
    day_count: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AbsenceKindSummary(BaseModel):
    kind: AbsenceKind
    total_days: int
    periods: list[AbsencePeriodRead] = Field(default_factory=list)


class AbsenceListResponse(BaseModel):
    user_id: int
    groups: list[AbsenceKindSummary] = Field(default_factory=list)


class WorkScheduleCreate(BaseModel):
    year: int
    month: int
    work_days: int
    minutes_per_day: int


class WorkScheduleUpdate(BaseModel):
    work_days: int | None = None
    minutes_per_day: int | None = None

    @model_validator(mode="after")
    def validate_non_empty(self) -> "WorkScheduleUpdate":
        if self.work_days is None and self.minutes_per_day is None:
            raise ValueError("work_days or minutes_per_day is required")
        return self


class WorkScheduleRead(BaseModel):
    id: int
    year: int
    month: int
    work_days: int
    minutes_per_day: int
    total_minutes: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ScheduleGenerateRequest(BaseModel):
    year: int = Field(ge=2000, le=2100)
    minutes_per_day: int = Field(ge=1, le=1440)


class ScheduleGenerateResponse(BaseModel):
    year: int
    schedules: list[WorkScheduleRead] = Field(default_factory=list)
    failed_months: list[int] = Field(default_factory=list)


class ScheduleReconcileResponse(BaseModel):
    changed: int


class MonthlyStatRead(BaseModel):
    id: int
    user_id: int
    year: int
    month: int
    planned_days: int
    planned_minutes: int
    worked_days: int
    worked_minutes: int
    overtime_minutes: int
    deficit_minutes: int
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MonthlyStatProgressRead(MonthlyStatRead):
    completion_percentage: float
    remaining_days: int
    remaining_minutes: int


class StatsRecomputeRequest(BaseModel):
    user_id: int | None = Field(default=None, ge=1)
    year: int = Field(ge=2000, le=2100)
    month: int = Field(ge=1, le=12)


class StatsRecomputeResponse(BaseModel):
    queued_jobs: int


class HealthResponse(BaseModel):
    status: str
    recompute_jobs: dict[str, int] = Field(default_factory=dict)
