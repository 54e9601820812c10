from datetime import date
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Query, Request, status
from sqlalchemy.orm import Session

from worktime.audit import record_audit
from worktime.db import get_db
from worktime.models import AbsencePeriod, User, UserMonthlyStat
from worktime.schemas import (
    AbsenceCreate,
    AbsenceKindSummary,
    AbsenceListResponse,
    AbsencePeriodRead,
    ClockInRequest,
    ClockOutRequest,
    ClockResponse,
    MeStatusResponse,
    MonthlyStatProgressRead,
    MonthlyStatRead,
    UserCreate,
    UserRead,
    UserUpdate,
    WorkSessionRead,
)
from worktime.security import Actor, get_current_actor, get_current_user
from worktime.services import absences, monthly_stats, sessions, users
from worktime.services.calendar import is_non_working_day
from worktime.services.clock import local_today
from worktime.services.recompute import dispatch_pending_jobs
from worktime.services.sessions import ClockResult

router = APIRouter(tags=["attendance"])

YearParam = Annotated[int, Path(ge=2000, le=2100)]
MonthParam = Annotated[int, Path(ge=1, le=12)]


def _clock_response(result: ClockResult) -> ClockResponse:
    return ClockResponse(
        session=WorkSessionRead.model_validate(result.session),
        warnings=result.warnings,
    )


def _absence_created(
    *,
    request: Request,
    db: Session,
    actor: Actor,
    period: AbsencePeriod,
    background_tasks: BackgroundTasks,
) -> AbsencePeriodRead:
    background_tasks.add_task(dispatch_pending_jobs)
    record_audit(
        db,
        actor,
        request=request,
        action="ABSENCE_PERIOD_CREATED",
        entity_type="absence_period",
        entity_id=period.id,
        details={
            "kind": period.kind.value,
            "start_date": period.start_date.isoformat(),
            "end_date": period.end_date.isoformat(),
        },
    )
    return AbsencePeriodRead.model_validate(period)


def _progress_read(stat: UserMonthlyStat) -> MonthlyStatProgressRead:
    progress = monthly_stats.stat_progress(stat)
    return MonthlyStatProgressRead(
        **MonthlyStatRead.model_validate(stat).model_dump(),
        completion_percentage=progress.completion_percentage,
        remaining_days=progress.remaining_days,
        remaining_minutes=progress.remaining_minutes,
    )


@router.post("/api/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register_user(
    payload: UserCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> UserRead:
    user = users.create_user(
        db,
        chat_id=payload.chat_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        username=payload.username,
    )
    request.state.actor = "user"
    request.state.actor_id = str(user.chat_id)
    background_tasks.add_task(dispatch_pending_jobs)
    return UserRead.model_validate(user)


@router.get("/api/me", response_model=UserRead)
def read_me(user: User = Depends(get_current_user)) -> UserRead:
    return UserRead.model_validate(user)


@router.put("/api/me", response_model=UserRead)
def update_me(
    payload: UserUpdate,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> UserRead:
    user = users.update_user(
        db,
        actor.user_id,
        username=payload.username,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    record_audit(
        db,
        actor,
        request=request,
        action="USER_PROFILE_UPDATED",
        entity_type="user",
        entity_id=user.id,
        details=payload.model_dump(exclude_none=True),
    )
    return UserRead.model_validate(user)


@router.delete("/api/me", response_model=UserRead)
def delete_me(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> UserRead:
    deleted = UserRead.model_validate(users.get_user(db, actor.user_id))
    users.delete_user(db, actor.user_id)
    record_audit(
        db,
        actor,
        request=request,
        action="USER_DELETED",
        entity_type="user",
        entity_id=deleted.id,
        details={"chat_id": deleted.chat_id},
    )
    return deleted


@router.get("/api/me/status", response_model=MeStatusResponse)
def read_my_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MeStatusResponse:
    today = local_today()
    active = sessions.get_active_session(db, user.id)
    today_session = sessions.get_session_for_day(db, user.id, today)
    absence = absences.get_current_absence(db, user.id, today)
    return MeStatusResponse(
        user=UserRead.model_validate(user),
        active_session=WorkSessionRead.model_validate(active) if active is not None else None,
        today_session=WorkSessionRead.model_validate(today_session) if today_session is not None else None,
        current_absence_kind=absence.kind if absence is not None else None,
        is_non_working_day=is_non_working_day(db, today),
    )


@router.post("/api/sessions/clock-in", response_model=ClockResponse, status_code=status.HTTP_201_CREATED)
def clock_in(
    payload: ClockInRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> ClockResponse:
    result = sessions.clock_in(
        db,
        user_id=actor.user_id,
        at=payload.at,
        required_minutes=payload.required_minutes,
    )
    record_audit(
        db,
        actor,
        request=request,
        action="CLOCK_IN",
        entity_type="work_session",
        entity_id=result.session.id,
        details={"day": result.session.day_date.isoformat(), "warnings": result.warnings},
    )
    return _clock_response(result)


@router.post("/api/sessions/clock-out", response_model=ClockResponse)
def clock_out(
    payload: ClockOutRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> ClockResponse:
    result = sessions.clock_out(
        db,
        user_id=actor.user_id,
        at=payload.at,
        confirm_non_working_day=payload.confirm_non_working_day,
    )
    background_tasks.add_task(dispatch_pending_jobs)
    record_audit(
        db,
        actor,
        request=request,
        action="CLOCK_OUT",
        entity_type="work_session",
        entity_id=result.session.id,
        details={
            "day": result.session.day_date.isoformat(),
            "worked_minutes": result.session.worked_minutes,
            "diff_minutes": result.session.diff_minutes,
            "warnings": result.warnings,
        },
    )
    return _clock_response(result)


@router.get("/api/sessions", response_model=list[WorkSessionRead])
def list_my_sessions(
    limit: int = Query(default=sessions.DEFAULT_HISTORY_LIMIT, ge=1, le=366),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[WorkSessionRead]:
    rows = sessions.list_history(db, user.id, limit=limit)
    return [WorkSessionRead.model_validate(item) for item in rows]


@router.get("/api/sessions/{year}/{month}", response_model=list[WorkSessionRead])
def list_my_month_sessions(
    year: YearParam,
    month: MonthParam,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[WorkSessionRead]:
    rows = sessions.list_month_sessions(db, user.id, year=year, month=month)
    return [WorkSessionRead.model_validate(item) for item in rows]


@router.post("/api/absences/vacation", response_model=AbsencePeriodRead, status_code=status.HTTP_201_CREATED)
def create_vacation(
    payload: AbsenceCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> AbsencePeriodRead:
    period = absences.add_vacation(
        db,
        user_id=actor.user_id,
        start=payload.start_date,
        end=payload.end_date or payload.start_date,
    )
    return _absence_created(request=request, db=db, actor=actor, period=period, background_tasks=background_tasks)


@router.post("/api/absences/sick-leave", response_model=AbsencePeriodRead, status_code=status.HTTP_201_CREATED)
def create_sick_leave(
    payload: AbsenceCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> AbsencePeriodRead:
    period = absences.add_sick_leave(
        db,
        user_id=actor.user_id,
        start=payload.start_date,
        end=payload.end_date or payload.start_date,
    )
    return _absence_created(request=request, db=db, actor=actor, period=period, background_tasks=background_tasks)


@router.post("/api/absences/day-off", response_model=AbsencePeriodRead, status_code=status.HTTP_201_CREATED)
def create_day_off(
    payload: AbsenceCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> AbsencePeriodRead:
    period = absences.add_day_off(db, user_id=actor.user_id, day=payload.start_date)
    return _absence_created(request=request, db=db, actor=actor, period=period, background_tasks=background_tasks)


@router.get("/api/absences", response_model=AbsenceListResponse)
def list_my_absences(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AbsenceListResponse:
    groups = absences.list_for_user(db, user.id)
    return AbsenceListResponse(
        user_id=user.id,
        groups=[
            AbsenceKindSummary(
                kind=group.kind,
                total_days=group.total_days,
                periods=[AbsencePeriodRead.model_validate(item) for item in group.periods],
            )
            for group in groups
        ],
    )


@router.delete("/api/absences/{period_id}", response_model=AbsencePeriodRead)
def delete_absence(
    period_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
) -> AbsencePeriodRead:
    period = absences.delete_absence(db, actor, period_id)
    background_tasks.add_task(dispatch_pending_jobs)
    record_audit(
        db,
        actor,
        request=request,
        action="ABSENCE_PERIOD_DELETED",
        entity_type="absence_period",
        entity_id=period_id,
        details={
            "user_id": period.user_id,
            "kind": period.kind.value,
            "start_date": period.start_date.isoformat(),
            "end_date": period.end_date.isoformat(),
        },
    )
    return AbsencePeriodRead.model_validate(period)


@router.get("/api/stats", response_model=list[MonthlyStatRead])
def list_my_stats(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[MonthlyStatRead]:
    return [MonthlyStatRead.model_validate(item) for item in monthly_stats.list_user_stats(db, user_id=user.id)]


@router.get("/api/stats/current", response_model=MonthlyStatProgressRead)
def read_current_stat(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MonthlyStatProgressRead:
    today: date = local_today()
    stat = monthly_stats.get_user_stat(db, user_id=user.id, year=today.year, month=today.month)
    return _progress_read(stat)


@router.get("/api/stats/{year}/{month}", response_model=MonthlyStatProgressRead)
def read_month_stat(
    year: YearParam,
    month: MonthParam,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MonthlyStatProgressRead:
    stat = monthly_stats.get_user_stat(db, user_id=user.id, year=year, month=month)
    return _progress_read(stat)

