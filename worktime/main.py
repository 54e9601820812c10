import asyncio
from contextlib import suppress
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from worktime.db import SessionLocal
from worktime.errors import ApiError, error_response
from worktime.logging_utils import setup_json_logging
from worktime.routers import admin, attendance
from worktime.schemas import HealthResponse
from worktime.services.bootstrap import run_startup_bootstrap
from worktime.services.recompute import count_jobs_by_status, process_pending_jobs
from worktime.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("worktime.request")
stats_worker_logger = logging.getLogger("worktime.stats_worker")

MIN_STATS_WORKER_INTERVAL_SECONDS = 5

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(SQLAlchemyError)
async def handle_storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception(
        "storage_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=503,
        code="STORAGE_ERROR",
        message="Storage is temporarily unavailable.",
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(attendance.router)
app.include_router(admin.router)


def _stats_worker_interval_seconds() -> int:
    return max(MIN_STATS_WORKER_INTERVAL_SECONDS, int(settings.stats_worker_interval_seconds))


async def _stats_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = _stats_worker_interval_seconds()
    while not stop_event.is_set():
        try:
            processed_jobs = await asyncio.to_thread(process_pending_jobs, 100)
        except Exception:
            stats_worker_logger.exception("stats_worker_tick_failed")
        else:
            if processed_jobs:
                stats_worker_logger.info(
                    "stats_worker_tick",
                    extra={"processed_jobs": len(processed_jobs)},
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_bootstrap() -> None:
    await asyncio.to_thread(run_startup_bootstrap)


@app.on_event("startup")
async def start_stats_worker() -> None:
    if not settings.stats_worker_enabled:
        return
    if getattr(app.state, "stats_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_stats_worker_loop(stop_event))
    app.state.stats_worker_stop_event = stop_event
    app.state.stats_worker_task = task
    stats_worker_logger.info(
        "stats_worker_started",
        extra={"interval_seconds": _stats_worker_interval_seconds()},
    )


@app.on_event("shutdown")
async def stop_stats_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "stats_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "stats_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.stats_worker_stop_event = None
    app.state.stats_worker_task = None


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    with SessionLocal() as db:
        job_counts = count_jobs_by_status(db)
    return HealthResponse(status="ok", recompute_jobs=job_counts)
