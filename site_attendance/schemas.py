from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from site_attendance.models import ReportStatus, SummaryStatus


class ReportEntryRead(BaseModel):
    status: ReportStatus
    employee_id: int
    employee_name: str
    site_id: int
    site_name: str
    site_code: str | None = None
    planned_arrival: datetime | None = None
    actual_arrival: datetime | None = None
    spa_completed: bool = False
    spa_id: int | None = None
    spa_image_url: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ReportTotalsRead(BaseModel):
    planned_count: int
    arrived_count: int
    unplanned_count: int

    model_config = ConfigDict(from_attributes=True)


class SiteAttendanceReportRead(BaseModel):
    report_date: date
    entries: list[ReportEntryRead]
    totals: ReportTotalsRead
    schedule_feed_available: bool
    warnings: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ProcessDateRequest(BaseModel):
    date: date
    force: bool = False


class ProcessRangeRequest(BaseModel):
    from_date: date
    to_date: date


class ProcessingResultRead(BaseModel):
    tenant_id: int
    summary_date: date
    events_processed: int
    summaries_created: int
    summaries_updated: int
    summaries_deleted: int = 0
    errors: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ProcessRangeResponse(BaseModel):
    from_date: date
    to_date: date
    dates_processed: int
    events_processed: int
    summaries_created: int
    summaries_updated: int
    summaries_deleted: int = 0
    results: list[ProcessingResultRead]


class EventsByDateRead(BaseModel):
    date: date
    total_events: int
    processed_events: int
    unprocessed_events: int


class SummariesByDateRead(BaseModel):
    date: date
    count: int


class ProcessingStatusRead(BaseModel):
    from_date: date
    to_date: date
    total_events: int
    processed_events: int
    unprocessed_events: int
    total_summaries: int
    events_by_date: list[EventsByDateRead]
    summaries_by_date: list[SummariesByDateRead]


class WorkingDaysRead(BaseModel):
    from_date: date
    to_date: date
    working_days: int


class NearestSiteRead(BaseModel):
    found: bool
    site_id: int | None = None
    site_name: str | None = None
    site_code: str | None = None
    distance_m: float | None = None
    within_geofence: bool | None = None


class GeofenceCheckRead(BaseModel):
    site_id: int
    latitude: Decimal
    longitude: Decimal
    within_geofence: bool


class NoiseCheckRead(BaseModel):
    event_id: int
    is_noise: bool
    distance_m: Decimal | None = None


class DashboardKpisRead(BaseModel):
    from_date: date
    to_date: date
    overall_utilization: Decimal
    average_hours_per_day: Decimal
    total_active_employees: int
    total_active_sites: int
    excellent_count: int
    good_count: int
    below_target_count: int
    absent_count: int
    incomplete_count: int
    expected_hours: Decimal
    actual_hours: Decimal
    variance_hours: Decimal
    working_days: int

    model_config = ConfigDict(from_attributes=True)


class EmployeePerformanceRead(BaseModel):
    employee_id: int
    employee_name: str
    total_hours: Decimal
    expected_hours: Decimal
    utilization_percent: Decimal
    variance_hours: Decimal
    status: SummaryStatus
    days_present: int
    days_absent: int
    spa_count: int

    model_config = ConfigDict(from_attributes=True)


class FloatStatusRead(BaseModel):
    enabled: bool
    configured: bool
    connection_test: dict[str, Any] | None = None
