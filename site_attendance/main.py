import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from site_attendance.db import engine
from site_attendance.errors import ApiError, ScheduleFeedUnavailableError, error_response
from site_attendance.logging_utils import setup_json_logging
from site_attendance.routers import site_attendance
from site_attendance.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from site_attendance.services.time_aggregation import process_pending_attendance
from site_attendance.settings import get_cors_origins, get_settings, is_float_configured

settings = get_settings()
setup_json_logging(settings.log_level, service=settings.app_name)
logger = logging.getLogger("site_attendance.request")
processing_worker_logger = logging.getLogger("site_attendance.processing_worker")

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
                "tenant_id": getattr(request.state, "tenant_id", None),
                "event_id": getattr(request.state, "event_id", None),
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


@app.exception_handler(ScheduleFeedUnavailableError)
async def handle_schedule_feed_unavailable(request: Request, exc: ScheduleFeedUnavailableError) -> JSONResponse:
    logger.warning(
        "schedule_feed_unavailable",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "error": exc.message,
            "upstream_status_code": exc.status_code,
        },
    )
    return error_response(
        request,
        status_code=503,
        code="SCHEDULE_FEED_UNAVAILABLE",
        message="Schedule feed is unavailable, try again later.",
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
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


app.include_router(site_attendance.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def _worker_interval_seconds() -> int:
    return max(60, int(settings.processing_worker_interval_seconds))


async def _processing_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = _worker_interval_seconds()
    while not stop_event.is_set():
        app.state.processing_worker_last_tick_utc = datetime.now(timezone.utc)
        try:
            results = await asyncio.to_thread(process_pending_attendance, datetime.now(timezone.utc))
        except Exception:
            processing_worker_logger.exception("processing_worker_tick_failed")
        else:
            if results:
                processing_worker_logger.info(
                    "processing_worker_tick",
                    extra={
                        "dates_processed": len(results),
                        "events_processed": sum(item.events_processed for item in results),
                        "summaries_created": sum(item.summaries_created for item in results),
                        "summaries_updated": sum(item.summaries_updated for item in results),
                        "summaries_deleted": sum(item.summaries_deleted for item in results),
                        "error_count": sum(len(item.errors) for item in results),
                    },
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        processing_worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_processing_worker() -> None:
    if not settings.processing_worker_enabled:
        return
    if getattr(app.state, "processing_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_processing_worker_loop(stop_event))
    app.state.processing_worker_stop_event = stop_event
    app.state.processing_worker_task = task
    if not is_float_configured():
        processing_worker_logger.warning("float_not_configured", extra={"resource": "startup"})
    processing_worker_logger.info(
        "processing_worker_started",
        extra={"interval_seconds": _worker_interval_seconds()},
    )


@app.on_event("shutdown")
async def stop_processing_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "processing_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "processing_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.processing_worker_stop_event = None
    app.state.processing_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    worker_task: asyncio.Task[None] | None = getattr(app.state, "processing_worker_task", None)
    last_tick: datetime | None = getattr(app.state, "processing_worker_last_tick_utc", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "processing_worker": {
            "enabled": settings.processing_worker_enabled,
            "running": worker_task is not None and not worker_task.done(),
            "interval_seconds": _worker_interval_seconds(),
            "last_tick_utc": last_tick.isoformat() if last_tick else None,
        },
        "float": {
            "enabled": settings.float_enabled,
            "configured": is_float_configured(),
        },
    }
