from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Query, Request, status
from sqlalchemy.orm import Session

from worktime.audit import record_audit
from worktime.db import get_db
from worktime.schemas import (
    CalendarFeed,
    CalendarLoadResponse,
    NonWorkingDayRead,
    ScheduleGenerateRequest,
    ScheduleGenerateResponse,
    ScheduleReconcileResponse,
    StatsRecomputeRequest,
    StatsRecomputeResponse,
    UserCountsRead,
    UserRead,
    UserRoleUpdate,
    WorkScheduleCreate,
    WorkScheduleRead,
    WorkScheduleUpdate,
)
from worktime.security import Actor, require_admin_actor
from worktime.services import recompute, schedules, users
from worktime.services.calendar import list_non_working_days, load_snapshot, parse_calendar_feed
from worktime.services.storage import commit_or_raise

router = APIRouter(tags=["admin"])


@router.get("/api/admin/schedules", response_model=list[WorkScheduleRead])
def list_schedules(
    year: int | None = Query(default=None, ge=2000, le=2100),
    _actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> list[WorkScheduleRead]:
    return [WorkScheduleRead.model_validate(item) for item in schedules.list_schedules(db, year=year)]


@router.post("/api/admin/schedules", response_model=WorkScheduleRead, status_code=status.HTTP_201_CREATED)
def create_schedule(
    payload: WorkScheduleCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> WorkScheduleRead:
    schedule = schedules.create_schedule(
        db,
        actor,
        year=payload.year,
        month=payload.month,
        work_days=payload.work_days,
        minutes_per_day=payload.minutes_per_day,
    )
    background_tasks.add_task(recompute.dispatch_pending_jobs)
    record_audit(
        db,
        actor,
        request=request,
        action="SCHEDULE_CREATED",
        entity_type="work_schedule",
        entity_id=schedule.id,
        details=payload.model_dump(),
    )
    return WorkScheduleRead.model_validate(schedule)


@router.get("/api/admin/schedules/{schedule_id}", response_model=WorkScheduleRead)
def read_schedule(
    schedule_id: int,
    _actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> WorkScheduleRead:
    return WorkScheduleRead.model_validate(schedules.get_schedule(db, schedule_id))


@router.put("/api/admin/schedules/{schedule_id}", response_model=WorkScheduleRead)
def update_schedule(
    schedule_id: int,
    payload: WorkScheduleUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> WorkScheduleRead:
    schedule = schedules.update_schedule(
        db,
        actor,
        schedule_id,
        work_days=payload.work_days,
        minutes_per_day=payload.minutes_per_day,
    )
    background_tasks.add_task(recompute.dispatch_pending_jobs)
    record_audit(
        db,
        actor,
        request=request,
        action="SCHEDULE_UPDATED",
        entity_type="work_schedule",
        entity_id=schedule.id,
        details={"work_days": schedule.work_days, "minutes_per_day": schedule.minutes_per_day},
    )
    return WorkScheduleRead.model_validate(schedule)


@router.delete("/api/admin/schedules/{schedule_id}", response_model=WorkScheduleRead)
def delete_schedule(
    schedule_id: int,
    request: Request,
    force: bool = Query(default=False),
    actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> WorkScheduleRead:
    schedule = schedules.delete_schedule(db, actor, schedule_id, force=force)
    record_audit(
        db,
        actor,
        request=request,
        action="SCHEDULE_DELETED",
        entity_type="work_schedule",
        entity_id=schedule_id,
        details={"year": schedule.year, "month": schedule.month, "force": force},
    )
    return WorkScheduleRead.model_validate(schedule)


@router.post("/api/admin/schedules/generate", response_model=ScheduleGenerateResponse)
def generate_schedules(
    payload: ScheduleGenerateRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> ScheduleGenerateResponse:
    result = schedules.generate_for_year(db, actor, year=payload.year, minutes_per_day=payload.minutes_per_day)
    background_tasks.add_task(recompute.dispatch_pending_jobs)
    record_audit(
        db,
        actor,
        request=request,
        action="SCHEDULES_GENERATED",
        entity_type="work_schedule",
        details={
            "year": payload.year,
            "minutes_per_day": payload.minutes_per_day,
            "failed_months": result.failed_months,
        },
    )
    return ScheduleGenerateResponse(
        year=result.year,
        schedules=[WorkScheduleRead.model_validate(item) for item in result.schedules],
        failed_months=result.failed_months,
    )


@router.post("/api/admin/schedules/reconcile", response_model=ScheduleReconcileResponse)
def reconcile_schedules(
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> ScheduleReconcileResponse:
    changed = schedules.reconcile_all_from_calendar(db, actor)
    background_tasks.add_task(recompute.dispatch_pending_jobs)
    record_audit(
        db,
        actor,
        request=request,
        action="SCHEDULES_RECONCILED",
        entity_type="work_schedule",
        details={"changed": changed},
    )
    return ScheduleReconcileResponse(changed=changed)


@router.post("/api/admin/calendar", response_model=CalendarLoadResponse)
def upload_calendar(
    payload: CalendarFeed,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> CalendarLoadResponse:
    days = parse_calendar_feed(payload.model_dump())
    loaded = load_snapshot(db, days)
    changed = schedules.reconcile_all_from_calendar(db, actor)
    background_tasks.add_task(recompute.dispatch_pending_jobs)
    record_audit(
        db,
        actor,
        request=request,
        action="CALENDAR_SNAPSHOT_LOADED",
        entity_type="non_working_day",
        details={"year": payload.year, "loaded_days": loaded, "schedules_changed": changed},
    )
    return CalendarLoadResponse(loaded_days=loaded, schedules_changed=changed)


@router.get("/api/admin/calendar/{year}", response_model=list[NonWorkingDayRead])
def read_calendar(
    year: Annotated[int, Path(ge=2000, le=2100)],
    month: int | None = Query(default=None, ge=1, le=12),
    _actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> list[NonWorkingDayRead]:
    return [NonWorkingDayRead.model_validate(item) for item in list_non_working_days(db, year=year, month=month)]


@router.get("/api/admin/users", response_model=list[UserRead])
def list_users(
    _actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in users.list_users(db)]


@router.get("/api/admin/users/summary", response_model=UserCountsRead)
def read_user_counts(
    _actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> UserCountsRead:
    counts = users.count_users(db)
    return UserCountsRead(total=counts.total, admins=counts.admins, clients=counts.clients)


@router.put("/api/admin/users/{user_id}/role", response_model=UserRead)
def update_user_role(
    user_id: int,
    payload: UserRoleUpdate,
    request: Request,
    actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> UserRead:
    user = users.set_role(db, actor, user_id, payload.role)
    record_audit(
        db,
        actor,
        request=request,
        action="USER_ROLE_CHANGED",
        entity_type="user",
        entity_id=user.id,
        details={"role": payload.role.value},
    )
    return UserRead.model_validate(user)


@router.post("/api/admin/stats/recompute", response_model=StatsRecomputeResponse)
def recompute_stats(
    payload: StatsRecomputeRequest,
    request: Request,
    actor: Actor = Depends(require_admin_actor),
    db: Session = Depends(get_db),
) -> StatsRecomputeResponse:
    if payload.user_id is not None:
        target_ids = [users.get_user(db, payload.user_id).id]
    else:
        target_ids = [item.id for item in users.list_users(db)]

    for user_id in target_ids:
        recompute.enqueue_job(
            db,
            job_type=recompute.JOB_TYPE_USER_MONTH,
            user_id=user_id,
            year=payload.year,
            month=payload.month,
        )
    commit_or_raise(db)
    recompute.process_pending_jobs(limit=max(100, len(target_ids)), db=db)

    record_audit(
        db,
        actor,
        request=request,
        action="STATS_RECOMPUTED",
        entity_type="user_monthly_stat",
        details={"user_id": payload.user_id, "year": payload.year, "month": payload.month, "users": len(target_ids)},
    )
    return StatsRecomputeResponse(queued_jobs=len(target_ids))
