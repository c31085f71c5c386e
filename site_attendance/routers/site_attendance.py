from collections.abc import Iterator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from site_attendance.db import get_db
from site_attendance.errors import ApiError
from site_attendance.schemas import (
    DashboardKpisRead,
    EmployeePerformanceRead,
    FloatStatusRead,
    GeofenceCheckRead,
    NearestSiteRead,
    NoiseCheckRead,
    ProcessDateRequest,
    ProcessingResultRead,
    ProcessingStatusRead,
    ProcessRangeRequest,
    ProcessRangeResponse,
    SiteAttendanceReportRead,
    WorkingDaysRead,
)
from site_attendance.services.analytics import get_dashboard_kpis, get_employee_performance
from site_attendance.services.event_store import get_event
from site_attendance.services.float_client import FloatApiClient
from site_attendance.services.geofence import find_nearest_site, flag_noise, is_within_geofence, point_within_site
from site_attendance.services.site_attendance_report import (
    ScheduleProvider,
    generate_site_attendance_report_async,
)
from site_attendance.services.tenant_config import TenantAttendanceConfig, load_tenant_config
from site_attendance.services.time_aggregation import (
    get_processing_status,
    process_attendance_range,
    process_daily_attendance,
    working_days_between,
)
from site_attendance.settings import get_settings

router = APIRouter(tags=["site-attendance"])


def get_tenant_id(x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id")) -> int:
    raw_value = (x_tenant_id or "").strip()
    if not raw_value:
        raise ApiError(status_code=400, code="TENANT_REQUIRED", message="X-Tenant-Id header is required.")
    try:
        tenant_id = int(raw_value)
    except ValueError as exc:
        raise ApiError(status_code=400, code="INVALID_TENANT", message="X-Tenant-Id must be an integer.") from exc
    if tenant_id < 1:
        raise ApiError(status_code=400, code="INVALID_TENANT", message="X-Tenant-Id must be positive.")
    return tenant_id


def get_tenant_config(
    request: Request,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> TenantAttendanceConfig:
    request.state.tenant_id = tenant_id
    return load_tenant_config(db, tenant_id)


def get_float_client() -> Iterator[FloatApiClient]:
    client = FloatApiClient.from_settings()
    try:
        yield client
    finally:
        client.close()


def _local_today(config: TenantAttendanceConfig) -> date:
    return config.local_date(datetime.now(timezone.utc))


@router.get("/api/site-attendance/report", response_model=SiteAttendanceReportRead)
async def site_attendance_report(
    report_date: date | None = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
    provider: ScheduleProvider = Depends(get_float_client),
) -> SiteAttendanceReportRead:
    report = await generate_site_attendance_report_async(
        db,
        config,
        day=report_date or _local_today(config),
        provider=provider,
        degrade_to_actual_only=get_settings().float_degrade_to_actual_only,
    )
    return SiteAttendanceReportRead.model_validate(report)


@router.post("/api/site-attendance/process", response_model=ProcessingResultRead)
def process_date(
    payload: ProcessDateRequest,
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> ProcessingResultRead:
    if payload.date > _local_today(config):
        raise ApiError(
            status_code=422,
            code="FUTURE_DATE_NOT_ALLOWED",
            message="Cannot process attendance for a future date.",
        )
    result = process_daily_attendance(db, config, day=payload.date, force=payload.force)
    return ProcessingResultRead.model_validate(result)


@router.post("/api/site-attendance/process-range", response_model=ProcessRangeResponse)
def process_range(
    payload: ProcessRangeRequest,
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> ProcessRangeResponse:
    results = process_attendance_range(db, config, from_date=payload.from_date, to_date=payload.to_date)
    return ProcessRangeResponse(
        from_date=payload.from_date,
        to_date=payload.to_date,
        dates_processed=len(results),
        events_processed=sum(item.events_processed for item in results),
        summaries_created=sum(item.summaries_created for item in results),
        summaries_updated=sum(item.summaries_updated for item in results),
        summaries_deleted=sum(item.summaries_deleted for item in results),
        results=[ProcessingResultRead.model_validate(item) for item in results],
    )


@router.get("/api/site-attendance/processing-status", response_model=ProcessingStatusRead)
def processing_status(
    days_back: int = Query(default=30, ge=0, le=366),
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> ProcessingStatusRead:
    today = _local_today(config)
    status = get_processing_status(db, config, from_date=today - timedelta(days=days_back), to_date=today)
    return ProcessingStatusRead.model_validate(status)


@router.get("/api/site-attendance/working-days", response_model=WorkingDaysRead)
def working_days(
    from_date: date = Query(),
    to_date: date = Query(),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> WorkingDaysRead:
    return WorkingDaysRead(
        from_date=from_date,
        to_date=to_date,
        working_days=working_days_between(config, from_date, to_date),
    )


@router.get("/api/site-attendance/nearest-site", response_model=NearestSiteRead)
def nearest_site(
    lat: Decimal = Query(ge=-90, le=90),
    lon: Decimal = Query(ge=-180, le=180),
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> NearestSiteRead:
    result = find_nearest_site(db, config, lat=lat, lon=lon)
    if result is None:
        return NearestSiteRead(found=False)
    return NearestSiteRead(
        found=True,
        site_id=result.site.id,
        site_name=result.site.site_name,
        site_code=result.site.site_code,
        distance_m=round(result.distance_m, 2),
        within_geofence=point_within_site(result.site, config, lat, lon),
    )


@router.get("/api/site-attendance/sites/{site_id}/geofence-check", response_model=GeofenceCheckRead)
def geofence_check(
    site_id: int,
    lat: Decimal = Query(ge=-90, le=90),
    lon: Decimal = Query(ge=-180, le=180),
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> GeofenceCheckRead:
    return GeofenceCheckRead(
        site_id=site_id,
        latitude=lat,
        longitude=lon,
        within_geofence=is_within_geofence(db, config, site_id=site_id, lat=lat, lon=lon),
    )


@router.post("/api/site-attendance/events/{event_id}/noise-check", response_model=NoiseCheckRead)
def noise_check(
    event_id: int,
    request: Request,
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> NoiseCheckRead:
    event = get_event(db, tenant_id=config.tenant_id, event_id=event_id)
    if event is None:
        raise ApiError(status_code=404, code="EVENT_NOT_FOUND", message="Attendance event not found.")
    request.state.event_id = event.id
    result = flag_noise(db, config, event)
    return NoiseCheckRead(event_id=event.id, is_noise=result.is_noise, distance_m=result.distance_m)


@router.get("/api/site-attendance/dashboard", response_model=DashboardKpisRead)
def dashboard(
    from_date: date = Query(),
    to_date: date = Query(),
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> DashboardKpisRead:
    kpis = get_dashboard_kpis(db, config, from_date=from_date, to_date=to_date)
    return DashboardKpisRead.model_validate(kpis)


@router.get("/api/site-attendance/performance", response_model=list[EmployeePerformanceRead])
def employee_performance(
    from_date: date = Query(),
    to_date: date = Query(),
    db: Session = Depends(get_db),
    config: TenantAttendanceConfig = Depends(get_tenant_config),
) -> list[EmployeePerformanceRead]:
    rows = get_employee_performance(db, config, from_date=from_date, to_date=to_date)
    return [EmployeePerformanceRead.model_validate(item) for item in rows]


@router.get("/api/float/status", response_model=FloatStatusRead)
def float_status(client: FloatApiClient = Depends(get_float_client)) -> FloatStatusRead:
    return FloatStatusRead.model_validate(client.check_connection())
